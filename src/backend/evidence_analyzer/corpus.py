import logging
from itertools import groupby

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import tables
from .errors import NoEvidenceAvailable
from .models import AttributionRecord, ChunkRecord, CorpusRecord
from .store import RetryableStore

logger = logging.getLogger(__name__)

CORPUS_TITLE = "# Compliance Evidence Corpus"
PROBE_CHARS = 50


# ---------- Corpus text (pure) ----------
def display_name(category: str) -> str:
    return " ".join(word.capitalize() for word in category.replace("_", " ").split())


def order_chunks(chunks: list[ChunkRecord]) -> list[ChunkRecord]:
    """Category ascending, topic ascending, relevance descending. Attribution lines depend on it."""
    return sorted(
        chunks,
        key=lambda c: (c.category or "other", c.topic or "General", -c.relevance_score, c.document_id, c.chunk_index),
    )


def build_corpus_text(chunks: list[ChunkRecord]) -> str:
    lines = [
        CORPUS_TITLE,
        "",
        "*Consolidated compliance content from the selected documents, grouped by category and topic.*",
        "",
    ]
    ordered = order_chunks(chunks)
    for category, in_category in groupby(ordered, key=lambda c: c.category or "other"):
        lines += [f"## {display_name(category)}", ""]
        for topic, in_topic in groupby(in_category, key=lambda c: c.topic or "General"):
            lines += [f"### {topic}", ""]
            for chunk in in_topic:
                source = f"*Source: {chunk.document_name}"
                if chunk.page_number:
                    source += f", Page {chunk.page_number}"
                lines += [chunk.text.strip(), "", source + "*", "", "---", ""]
    return "\n".join(lines)


def _probe(text: str) -> str:
    for line in text.strip().splitlines():
        if line.strip():
            return line.strip()[:PROBE_CHARS]
    return ""


def _skip_past(lines: list[str], heading: str, cursor: int) -> int:
    for i in range(cursor, len(lines)):
        if lines[i] == heading:
            return i + 1
    return cursor


def build_attributions(corpus_text: str, chunks: list[ChunkRecord]) -> list[AttributionRecord]:
    """
    Locate each chunk in the corpus by the line starting with its first 50
    characters, scanning forward from the previous match and past the
    chunk's own category and topic headings. Chunks that cannot be found
    are left out.
    """
    lines = corpus_text.split("\n")
    cursor = 0
    entries: list[AttributionRecord] = []
    section = None
    for chunk in order_chunks(chunks):
        category, topic = chunk.category or "other", chunk.topic or "General"
        if (category, topic) != section:
            headings = [f"### {topic}"]
            if section is None or section[0] != category:
                headings.insert(0, f"## {display_name(category)}")
            for heading in headings:
                cursor = _skip_past(lines, heading, cursor)
            section = (category, topic)
        probe = _probe(chunk.text)
        if not probe:
            continue
        for i in range(cursor, len(lines)):
            if lines[i].startswith(probe):
                span = len(chunk.text.strip().split("\n"))
                entries.append(AttributionRecord(
                    original_text=chunk.text.strip(),
                    document_id=chunk.document_id,
                    document_name=chunk.document_name,
                    page_number=chunk.page_number,
                    chunk_index=chunk.chunk_index,
                    line_start=i + 1,
                    line_end=i + span,
                ))
                cursor = i + span
                break
    return entries


# ---------- Queries ----------
def processed_document_ids(session: Session, organization_id: int) -> list[int]:
    rows = session.execute(
        select(tables.Document.id)
        .where(tables.Document.organization_id == organization_id)
        .where(tables.Document.processed_at.isnot(None))
        .order_by(tables.Document.id)
    ).scalars()
    return list(rows)


def fetch_chunks(session: Session, organization_id: int, document_ids: list[int]) -> list[ChunkRecord]:
    if not document_ids:
        return []
    rows = session.execute(
        select(tables.ClassifiedChunk, tables.Document.display_name)
        .join(tables.Document, tables.ClassifiedChunk.document_id == tables.Document.id)
        .where(tables.Document.organization_id == organization_id)
        .where(tables.Document.id.in_(document_ids))
    ).all()
    return [
        ChunkRecord(
            id=chunk.id,
            document_id=chunk.document_id,
            document_name=name,
            chunk_index=chunk.chunk_index,
            page_number=chunk.page_number,
            topic=chunk.topic,
            category=chunk.category,
            relevance_score=chunk.relevance_score or 0,
            text=chunk.text,
        )
        for chunk, name in rows
    ]


def latest_corpus(session: Session, organization_id: int, selection: list[int]) -> tables.OrganizedCorpus | None:
    """Newest corpus of the organization built from exactly `selection`."""
    rows = session.execute(
        select(tables.OrganizedCorpus)
        .where(tables.OrganizedCorpus.organization_id == organization_id)
        .order_by(tables.OrganizedCorpus.created_at.desc(), tables.OrganizedCorpus.id.desc())
    ).scalars()
    for corpus in rows:
        if sorted(corpus.document_selection or []) == selection:
            return corpus
    return None


class CorpusOrganizer:
    def __init__(self, store: RetryableStore):
        self.store = store

    async def organize(self, organization_id: int, document_ids: list[int] | None = None) -> CorpusRecord:
        """
        When no document subset is requested, reuse the organization's corpus
        if it was built from exactly its current processed documents;
        otherwise build one from the documents' classified chunks.
        """
        if not document_ids:
            def reusable(session: Session) -> tables.OrganizedCorpus | None:
                return latest_corpus(session, organization_id, processed_document_ids(session, organization_id))

            existing = await self.store.transaction(reusable, "load organized corpus")
            if existing is not None:
                logger.info("Reusing organized corpus %s for organization %s", existing.id, organization_id)
                return CorpusRecord.model_validate(existing)

        def load(session: Session) -> tuple[list[int], list[ChunkRecord]]:
            ids = sorted(set(document_ids)) if document_ids else processed_document_ids(session, organization_id)
            return ids, fetch_chunks(session, organization_id, ids)

        selection, chunks = await self.store.transaction(load, "load classified chunks")
        if not chunks:
            raise NoEvidenceAvailable(
                f"No classified chunks found for documents {selection} of organization {organization_id}"
            )

        text = build_corpus_text(chunks)
        entries = build_attributions(text, chunks)
        categories = sorted({c.category or "other" for c in chunks})
        if len(entries) < len(chunks):
            logger.warning("Attributed %d of %d chunks in organized corpus", len(entries), len(chunks))

        def persist(session: Session) -> CorpusRecord:
            corpus = tables.OrganizedCorpus(
                organization_id=organization_id,
                text=text,
                categories=categories,
                chunk_count=len(chunks),
                document_count=len({c.document_id for c in chunks}),
                document_selection=selection,
            )
            session.add(corpus)
            session.flush()
            session.add_all(
                tables.AttributionEntry(corpus_id=corpus.id, **entry.model_dump(exclude={"id", "corpus_id"}))
                for entry in entries
            )
            return CorpusRecord.model_validate(corpus)

        corpus = await self.store.transaction(persist, "persist organized corpus")
        logger.info(
            "Built organized corpus %s: %d chunks, %d categories, %d attributions",
            corpus.id, corpus.chunk_count, len(categories), len(entries),
        )
        return corpus

    async def attributions(self, corpus_id: int) -> list[AttributionRecord]:
        def load(session: Session) -> list[AttributionRecord]:
            rows = session.execute(
                select(tables.AttributionEntry)
                .where(tables.AttributionEntry.corpus_id == corpus_id)
                .order_by(tables.AttributionEntry.line_start)
            ).scalars()
            return [AttributionRecord.model_validate(row) for row in rows]

        return await self.store.transaction(load, "load attributions")
