"""
Analysis orchestration.

`start_analysis` validates preconditions, inserts the job and returns at once;
the evaluation itself runs as a supervised background task. A job that dies
outside the per-control handling is marked failed by its completion callback,
and if even that write fails, subscribers still receive a terminal event.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from . import lifecycle, tables
from .corpus import CorpusOrganizer, processed_document_ids
from .errors import FrameworkNotFound, NoDocuments, NoEvidenceAvailable, NoMatchingControls
from .evaluator import ControlEvaluator
from .models import AnalysisRecord, AnalysisRequest, ControlRecord, FrameworkRecord
from .ollama_client import OLLAMA_MODEL
from .progress import ProgressRegistry
from .prompts import framework_family
from .store import RetryableStore

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Analysis interrupted by service restart"

# Percentage band used by the per-control loop.
PROGRESS_START = 10
PROGRESS_END = 95


def ordered_controls(session: Session, framework_id: int) -> list[ControlRecord]:
    rows = session.execute(
        select(tables.Control)
        .where(tables.Control.framework_id == framework_id)
        .order_by(tables.Control.control_id, tables.Control.id)
    ).scalars()
    return [ControlRecord.model_validate(row) for row in rows]


def select_controls(controls: list[ControlRecord], request: AnalysisRequest) -> list[ControlRecord]:
    if request.control_ids:
        wanted = set(request.control_ids)
        controls = [c for c in controls if c.control_id in wanted]
    if request.control_limit:
        controls = controls[:request.control_limit]
    return controls


def control_progress(completed: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_END
    return PROGRESS_START + int((PROGRESS_END - PROGRESS_START) * completed / total)


@dataclass
class _Plan:
    framework: FrameworkRecord
    controls: list[ControlRecord]
    document_ids: list[int]


class AnalysisOrchestrator:
    def __init__(
        self,
        store: RetryableStore,
        progress: ProgressRegistry,
        organizer: CorpusOrganizer,
        evaluator: ControlEvaluator,
        default_model: str = OLLAMA_MODEL,
    ):
        self.store = store
        self.progress = progress
        self.organizer = organizer
        self.evaluator = evaluator
        self.default_model = default_model
        self._tasks: dict[int, asyncio.Task] = {}
        self._continuations: dict[int, asyncio.Task] = {}

    # ---------- Job creation ----------
    def _plan(self, session: Session, organization_id: int, request: AnalysisRequest) -> _Plan:
        framework = session.get(tables.Framework, request.framework_id)
        if framework is None:
            raise FrameworkNotFound(f"Framework {request.framework_id} not found")

        controls = select_controls(ordered_controls(session, framework.id), request)
        if not controls:
            raise NoMatchingControls(f"No controls selected for framework '{framework.name}'")

        if request.document_ids:
            document_ids = sorted(set(session.execute(
                select(tables.Document.id)
                .where(tables.Document.organization_id == organization_id)
                .where(tables.Document.id.in_(request.document_ids))
            ).scalars()))
        else:
            document_ids = processed_document_ids(session, organization_id)
        if not document_ids:
            raise NoDocuments(f"No processed documents found for organization {organization_id}")

        chunk_count = session.execute(
            select(func.count(tables.ClassifiedChunk.id))
            .where(tables.ClassifiedChunk.document_id.in_(document_ids))
        ).scalar_one()
        if not chunk_count:
            raise NoEvidenceAvailable("Selected documents have no classified content to analyze")

        return _Plan(FrameworkRecord.model_validate(framework), controls, document_ids)

    async def start_analysis(self, organization_id: int, request: AnalysisRequest) -> int:
        """Validate, insert a pending job, spawn its task and return the job id."""
        plan = await self.store.transaction(
            lambda s: self._plan(s, organization_id, request), "validate analysis request"
        )

        request_key = uuid.uuid4().hex

        def insert(session: Session) -> AnalysisRecord:
            existing = session.execute(
                select(tables.Analysis).where(tables.Analysis.request_key == request_key)
            ).scalar_one_or_none()
            if existing is not None:
                return AnalysisRecord.model_validate(existing)
            job = tables.Analysis(
                request_key=request_key,
                organization_id=organization_id,
                framework_id=plan.framework.id,
                framework_name=plan.framework.name,
                framework_family=framework_family(plan.framework.family, plan.framework.name).value,
                name=f"{plan.framework.name} Analysis - {date.today().isoformat()}",
                model_id=request.model_id or self.default_model,
                document_ids=request.document_ids,
                status="pending",
                total_controls=len(plan.controls),
            )
            session.add(job)
            session.flush()
            return AnalysisRecord.model_validate(job)

        job = await self.store.transaction(insert, "create analysis")
        logger.info(
            "Created analysis %s: framework '%s', %d controls, %d documents",
            job.id, job.framework_name, len(plan.controls), len(plan.document_ids),
        )
        self.progress.publish(job.id, {
            "stage": "initializing",
            "progress": 0,
            "currentStep": "Loading analysis configuration...",
            "totalSteps": len(plan.controls),
            "completedSteps": 0,
        })

        task = asyncio.create_task(self._run(job, plan.controls, request.document_ids))
        self._tasks[job.id] = task
        task.add_done_callback(lambda t, job_id=job.id: self._on_done(job_id, t))
        return job.id

    # ---------- Background run ----------
    async def _transition(self, job_id: int, trigger: str, description: str, **fields) -> AnalysisRecord:
        def apply(session: Session) -> AnalysisRecord:
            job = session.get(tables.Analysis, job_id)
            if not lifecycle.advance(job, trigger):
                logger.info("Analysis %s already %s; skipping %s", job_id, job.status, trigger)
            for key, value in fields.items():
                setattr(job, key, value)
            return AnalysisRecord.model_validate(job)

        return await self.store.transaction(apply, description)

    async def _run(self, job: AnalysisRecord, controls: list[ControlRecord], document_ids: list[int] | None):
        started = time.monotonic()
        job = await self._transition(job.id, "start", f"start analysis {job.id}")
        logger.info("Analysis %s started", job.id)

        self.progress.publish(job.id, {
            "stage": "organizing",
            "progress": 5,
            "currentStep": "Organizing documents into a master corpus...",
        })
        corpus = await self.organizer.organize(job.organization_id, document_ids)
        attributions = await self.organizer.attributions(corpus.id)

        total = len(controls)
        totals = {"compliant": 0, "partial": 0, "missing": 0}
        confidence_sum = 0.0
        self.progress.publish(job.id, {
            "stage": "analyzing",
            "progress": PROGRESS_START,
            "currentStep": f"Analyzing {total} controls...",
            "totalSteps": total,
        })

        for index, control in enumerate(controls):
            self.progress.publish(job.id, {
                "currentControl": {"controlId": control.control_id, "title": control.title},
                "currentStep": f"Analyzing control {index + 1} of {total}: {control.control_id}",
            })
            try:
                mapping = await self.evaluator.evaluate(job, control, corpus, attributions)
            except Exception as e:
                logger.warning("Control %s degraded in analysis %s: %s", control.control_id, job.id, e)
                mapping = await self.evaluator.record_degraded(job, control, f"Error analyzing control: {str(e)[:200]}")

            totals[mapping.status] += 1
            confidence_sum += mapping.confidence_score
            self.progress.append_interim_result(job.id, {
                "controlId": control.control_id,
                "title": control.title,
                "status": mapping.status,
                "confidence": mapping.confidence_score,
            })
            self.progress.publish(job.id, {
                "progress": control_progress(index + 1, total),
                "completedSteps": index + 1,
                "totals": dict(totals),
            })

        self.progress.publish(job.id, {
            "stage": "finalizing",
            "progress": PROGRESS_END,
            "currentStep": "Saving analysis results...",
            "currentControl": None,
        })
        average = round(confidence_sum / total, 2) if total else 0
        job = await self._transition(
            job.id, "complete", f"complete analysis {job.id}",
            total_controls=total,
            compliant_controls=totals["compliant"],
            partial_controls=totals["partial"],
            missing_controls=totals["missing"],
            average_confidence=average,
        )
        self.progress.publish(job.id, {
            "stage": "completed",
            "progress": 100,
            "currentStep": "Analysis complete",
            "completedSteps": total,
            "totals": dict(totals),
        })
        logger.info(
            "Analysis %s completed in %.1fs: %d compliant, %d partial, %d missing, average confidence %s",
            job.id, time.monotonic() - started,
            totals["compliant"], totals["partial"], totals["missing"], average,
        )

    # ---------- Supervision ----------
    def _on_done(self, job_id: int, task: asyncio.Task) -> None:
        if task.cancelled():
            error = "Analysis task was cancelled"
        elif task.exception() is None:
            return
        else:
            error = str(task.exception()) or type(task.exception()).__name__
            logger.error("Analysis %s failed: %s", job_id, error, exc_info=task.exception())
        self._continuations[job_id] = asyncio.get_running_loop().create_task(self._mark_failed(job_id, error))

    async def _mark_failed(self, job_id: int, error: str) -> None:
        try:
            await self._transition(job_id, "fail", f"mark analysis {job_id} failed", error=error)
        except Exception as e:
            logger.error("Could not record failure of analysis %s: %s", job_id, e)
        self.progress.publish(job_id, {
            "stage": "failed",
            "progress": 100,
            "currentStep": "Analysis failed",
            "currentControl": None,
            "error": error,
        })

    async def wait(self, job_id: int) -> None:
        """Wait for a job's task and, if it failed, its failure handling."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
            # Let the done callback schedule the continuation.
            await asyncio.sleep(0)
        continuation = self._continuations.get(job_id)
        if continuation is not None:
            await continuation

    async def recover_interrupted(self) -> list[int]:
        """Mark jobs left pending or processing by a previous process as failed."""
        def recover(session: Session) -> list[int]:
            jobs = session.execute(
                select(tables.Analysis).where(tables.Analysis.status.in_(["pending", "processing"]))
            ).scalars().all()
            for job in jobs:
                lifecycle.attach(job)
                job.fail()
                job.error = INTERRUPTED_ERROR
            return [job.id for job in jobs]

        recovered = await self.store.transaction(recover, "recover interrupted analyses")
        if recovered:
            logger.warning("Marked %d interrupted analyses as failed: %s", len(recovered), recovered)
        return recovered


@dataclass
class Pipeline:
    store: RetryableStore
    progress: ProgressRegistry
    organizer: CorpusOrganizer
    evaluator: ControlEvaluator
    orchestrator: AnalysisOrchestrator


def build_pipeline(
    session_factory: sessionmaker,
    oracle,
    progress: ProgressRegistry = None,
    store: RetryableStore = None,
) -> Pipeline:
    store = store or RetryableStore(session_factory)
    progress = progress or ProgressRegistry()
    organizer = CorpusOrganizer(store)
    evaluator = ControlEvaluator(store, oracle)
    orchestrator = AnalysisOrchestrator(
        store, progress, organizer, evaluator, default_model=getattr(oracle, "model", None) or OLLAMA_MODEL,
    )
    return Pipeline(store, progress, organizer, evaluator, orchestrator)
