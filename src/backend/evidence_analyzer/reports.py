import logging
import os
from collections import Counter

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from . import tables
from .errors import AnalysisNotFound
from .models import (
    AnalysisRecord, AnalysisResults, CitedDocument, EvidenceMappingRecord, GapControl,
    GapSummary, LowConfidenceControl,
)
from .store import RetryableStore

load_dotenv()

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = float(os.getenv("LOW_CONFIDENCE_THRESHOLD", "70"))


# ---------- Gap summary (pure) ----------
def build_gap_summary(
    mappings: list[EvidenceMappingRecord], threshold: float = LOW_CONFIDENCE_THRESHOLD
) -> GapSummary:
    missing = [
        GapControl(control_id=m.control_id, title=m.control_title, description=m.control_description)
        for m in mappings if m.status == "missing"
    ]
    low_confidence = [
        LowConfidenceControl(
            control_id=m.control_id, title=m.control_title,
            confidence=m.confidence_score, reasoning=m.reasoning,
        )
        for m in mappings if m.status != "missing" and m.confidence_score < threshold
    ]
    partial = sum(1 for m in mappings if m.status == "partial")

    recommendations = []
    if missing:
        recommendations.append(
            f"{len(missing)} controls have no supporting evidence. "
            "Review and provide documentation for these controls."
        )
    if low_confidence:
        recommendations.append(
            f"{len(low_confidence)} controls have low confidence scores. Additional evidence may be needed."
        )
    if partial:
        recommendations.append(
            f"{partial} controls are partially compliant. Review gaps and provide additional documentation."
        )
    return GapSummary(
        missing_controls=missing,
        low_confidence_controls=low_confidence,
        recommendations=recommendations,
    )


def cited_documents(mappings: list[EvidenceMappingRecord]) -> list[CitedDocument]:
    counts = Counter()
    names = {}
    for mapping in mappings:
        for item in mapping.items:
            if item.document_id is None:
                continue
            counts[item.document_id] += 1
            names.setdefault(item.document_id, item.document_name)
    return [
        CitedDocument(document_id=doc_id, document_name=names[doc_id], evidence_count=count)
        for doc_id, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]


# ---------- Reads ----------
async def get_analysis_results(store: RetryableStore, analysis_id: int) -> AnalysisResults:
    def load(session: Session):
        job = session.get(tables.Analysis, analysis_id)
        if job is None:
            raise AnalysisNotFound(f"Analysis {analysis_id} not found")
        rows = session.execute(
            select(tables.EvidenceMapping)
            .options(selectinload(tables.EvidenceMapping.items))
            .where(tables.EvidenceMapping.analysis_id == analysis_id)
            .order_by(tables.EvidenceMapping.control_id, tables.EvidenceMapping.id)
        ).scalars()
        return AnalysisRecord.model_validate(job), [EvidenceMappingRecord.model_validate(m) for m in rows]

    analysis, mappings = await store.transaction(load, f"load analysis {analysis_id}")
    for mapping in mappings:
        mapping.items.sort(key=lambda item: -item.relevance_score)
    return AnalysisResults(
        analysis=analysis,
        evidence_mappings=mappings,
        documents=cited_documents(mappings),
        gap_summary=build_gap_summary(mappings),
    )


async def list_analyses(store: RetryableStore, organization_id: int) -> list[AnalysisRecord]:
    def load(session: Session) -> list[AnalysisRecord]:
        rows = session.execute(
            select(tables.Analysis)
            .where(tables.Analysis.organization_id == organization_id)
            .order_by(tables.Analysis.created_at.desc(), tables.Analysis.id.desc())
        ).scalars()
        return [AnalysisRecord.model_validate(row) for row in rows]

    return await store.transaction(load, "list analyses")


async def delete_analysis(store: RetryableStore, analysis_id: int) -> None:
    def delete(session: Session) -> None:
        job = session.get(tables.Analysis, analysis_id)
        if job is None:
            raise AnalysisNotFound(f"Analysis {analysis_id} not found")
        session.delete(job)

    await store.transaction(delete, f"delete analysis {analysis_id}")
    logger.info("Deleted analysis %s", analysis_id)


# ---------- Markdown export ----------
_STATUS_LABELS = {"compliant": "Compliant", "partial": "Partial", "missing": "Missing"}


def render_markdown(results: AnalysisResults) -> str:
    a = results.analysis
    lines = [
        f"# {a.name}",
        "",
        f"- **Framework:** {a.framework_name}",
        f"- **Status:** {a.status}",
        f"- **Model:** {a.model_id}",
        f"- **Controls:** {a.total_controls} "
        f"({a.compliant_controls} compliant, {a.partial_controls} partial, {a.missing_controls} missing)",
        f"- **Average confidence:** {a.average_confidence}%",
        "",
    ]
    if results.gap_summary.recommendations:
        lines += ["## Recommendations", ""]
        lines += [f"- {r}" for r in results.gap_summary.recommendations]
        lines.append("")

    lines += ["## Controls", ""]
    for m in results.evidence_mappings:
        lines += [
            f"### {m.control_id} {m.control_title}",
            "",
            f"**{_STATUS_LABELS.get(m.status, m.status)}** ({m.confidence_score}% confidence)",
            "",
            m.reasoning,
            "",
        ]
        for item in m.items:
            source = item.document_name or "Unattributed"
            if item.page_number:
                source += f", page {item.page_number}"
            lines.append("> " + " ".join(item.evidence_text.split()))
            lines += [">", f"> *{source}*", ""]
    return "\n".join(lines)
