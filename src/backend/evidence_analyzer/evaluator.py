import asyncio
import logging
import os
import re

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import tables
from .models import (
    AnalysisRecord, AttributionRecord, Citation, ControlRecord, CorpusRecord,
    EvidenceMappingRecord, Verdict,
)
from .ollama_client import ORACLE_MAX_OUTPUT_TOKENS
from .prompts import render_prompt, resolve_template
from .store import RetryableStore
from .verdict_parser import degraded_verdict, parse_verdict

load_dotenv()

logger = logging.getLogger(__name__)

EVIDENCE_TEXT_MAX_CHARS = int(os.getenv("EVIDENCE_TEXT_MAX_CHARS", "1500"))
# Entry-inside-quote matches need a minimum entry length to mean anything.
MIN_CONTAINED_ENTRY_CHARS = 20


# ---------- Citation resolution (pure) ----------
def normalise_text(text: str) -> str:
    text = re.sub(r"(?m)^\s*\d+:\s?", "", text or "")
    text = text.replace("…", " ").replace("...", " ")
    text = re.sub(r"[\"'“”‘’`*]", "", text)
    return re.sub(r"\s+", " ", text).strip().lower()


def _hint_matches(hint: str | None, entry: AttributionRecord) -> bool:
    if not hint:
        return False
    hint, name = hint.strip().lower(), entry.document_name.lower()
    return bool(hint) and (hint in name or name in hint)


def resolve_citation(citation: Citation, attributions: list[AttributionRecord]) -> list[AttributionRecord]:
    """
    Attribution entries a quoted passage came from. Text containment in either
    direction wins; entries from the hinted document come first. With no text
    match, entries covering the cited line range are used. May be empty.
    """
    quote = normalise_text(citation.text)
    if not quote:
        return []

    matches = []
    for entry in attributions:
        original = normalise_text(entry.original_text)
        if not original:
            continue
        if quote in original or (len(original) >= MIN_CONTAINED_ENTRY_CHARS and original in quote):
            matches.append(entry)

    if not matches and citation.line_start is not None:
        end = citation.line_end if citation.line_end is not None else citation.line_start
        matches = [e for e in attributions if e.line_start <= end and citation.line_start <= e.line_end]

    preferred = [e for e in matches if _hint_matches(citation.document_hint, e)]
    return preferred + [e for e in matches if e not in preferred]


def _evidence_item(citation: Citation, matches: list[AttributionRecord]) -> tables.EvidenceItem:
    text = citation.text[:EVIDENCE_TEXT_MAX_CHARS]
    if not matches:
        return tables.EvidenceItem(
            evidence_text=text,
            line_start=citation.line_start,
            line_end=citation.line_end,
            confidence=citation.confidence,
            relevance_score=citation.relevance,
            attributed=False,
        )
    source = matches[0]
    return tables.EvidenceItem(
        document_id=source.document_id,
        document_name=source.document_name,
        page_number=source.page_number,
        chunk_index=source.chunk_index,
        line_start=source.line_start,
        line_end=source.line_end,
        evidence_text=text,
        confidence=citation.confidence,
        relevance_score=citation.relevance,
        attributed=True,
    )


def save_mapping(
    session: Session,
    job: AnalysisRecord,
    control: ControlRecord,
    verdict: Verdict,
    attributions: list[AttributionRecord],
) -> EvidenceMappingRecord:
    # A retry after a commit that looked failed finds the row already there.
    existing = session.execute(
        select(tables.EvidenceMapping)
        .where(tables.EvidenceMapping.analysis_id == job.id)
        .where(tables.EvidenceMapping.control_pk == control.id)
    ).scalar_one_or_none()
    if existing is not None:
        return EvidenceMappingRecord.model_validate(existing)

    mapping = tables.EvidenceMapping(
        analysis_id=job.id,
        control_pk=control.id,
        control_id=control.control_id,
        control_title=control.title,
        control_description=control.requirement_text,
        status=verdict.status,
        confidence_score=verdict.confidence,
        reasoning=verdict.reasoning,
        items=[_evidence_item(c, resolve_citation(c, attributions)) for c in verdict.evidence],
    )
    session.add(mapping)
    session.flush()
    return EvidenceMappingRecord.model_validate(mapping)


class ControlEvaluator:
    def __init__(self, store: RetryableStore, oracle, max_output_tokens: int = ORACLE_MAX_OUTPUT_TOKENS):
        self.store = store
        self.oracle = oracle
        self.max_output_tokens = max_output_tokens

    async def evaluate(
        self,
        job: AnalysisRecord,
        control: ControlRecord,
        corpus: CorpusRecord,
        attributions: list[AttributionRecord],
    ) -> EvidenceMappingRecord:
        """
        Ask the model about one control against the organized corpus, resolve
        its citations to source documents and persist the mapping.
        Oracle and storage errors propagate to the caller.
        """
        template = await resolve_template(self.store, job.framework_family)
        prompt = render_prompt(template, control, corpus)
        raw = await asyncio.to_thread(self.oracle.generate, prompt, job.model_id, self.max_output_tokens)

        verdict = parse_verdict(raw)
        if verdict is None:
            logger.warning("Unparseable model response for control %s", control.control_id)
            verdict = degraded_verdict(f"Failed to parse AI analysis response: {raw.strip()[:200]}")

        mapping = await self.store.transaction(
            lambda s: save_mapping(s, job, control, verdict, attributions),
            f"save evidence mapping for {control.control_id}",
        )
        attributed = sum(1 for item in mapping.items if item.attributed)
        logger.info(
            "Control %s: %s (%s%%), %d/%d citations attributed",
            control.control_id, mapping.status, mapping.confidence_score, attributed, len(mapping.items),
        )
        return mapping

    async def record_degraded(self, job: AnalysisRecord, control: ControlRecord, reason: str) -> EvidenceMappingRecord:
        verdict = degraded_verdict(reason)
        return await self.store.transaction(
            lambda s: save_mapping(s, job, control, verdict, []),
            f"save degraded mapping for {control.control_id}",
        )
