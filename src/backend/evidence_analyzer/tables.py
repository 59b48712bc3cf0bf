"""
Relational tables.

Catalog tables (frameworks, controls), documents and classified chunks are
read-only inputs owned by upstream collaborators. Analyses, organized corpora,
attribution entries, evidence mappings and evidence items are written by the
pipeline.
"""
import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


# ---------- Catalog ----------
class Framework(Base):
    __tablename__ = "frameworks"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    version = Column(String(50), nullable=True)
    # FrameworkFamily value; selects the evaluation template.
    family = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    controls = relationship("Control", back_populates="framework", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Framework(id={self.id}, name='{self.name}')>"


class Control(Base):
    __tablename__ = "controls"
    __table_args__ = (UniqueConstraint("framework_id", "control_id"),)

    id = Column(Integer, primary_key=True)
    framework_id = Column(Integer, ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False)
    # Stable textual identifier, e.g. "A.5.15"
    control_id = Column(String(100), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    requirement_text = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)

    framework = relationship("Framework", back_populates="controls")

    def __repr__(self):
        return f"<Control(id={self.id}, control_id='{self.control_id}')>"


class PromptTemplate(Base):
    """Operator override for an embedded evaluation template."""
    __tablename__ = "prompt_templates"

    id = Column(Integer, primary_key=True)
    template_id = Column(String(100), nullable=False, index=True)
    body = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


# ---------- Documents ----------
class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    chunks = relationship("ClassifiedChunk", back_populates="document", cascade="all, delete-orphan")


class ClassifiedChunk(Base):
    """Semantically classified chunk produced by the document-intelligence collaborator."""
    __tablename__ = "classified_chunks"

    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    page_number = Column(Integer, nullable=True)
    topic = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True)
    relevance_score = Column(Float, default=0, nullable=False)
    text = Column(Text, nullable=False)

    document = relationship("Document", back_populates="chunks")


# ---------- Organized corpus ----------
class OrganizedCorpus(Base):
    __tablename__ = "organized_corpora"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, nullable=False, index=True)
    text = Column(Text, nullable=False)
    categories = Column(JSON, nullable=False, default=list)
    chunk_count = Column(Integer, nullable=False, default=0)
    document_count = Column(Integer, nullable=False, default=0)
    # Sorted document ids the corpus was built from.
    document_selection = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    attributions = relationship(
        "AttributionEntry", back_populates="corpus", cascade="all, delete-orphan",
        order_by="AttributionEntry.line_start",
    )


class AttributionEntry(Base):
    __tablename__ = "attribution_entries"

    id = Column(Integer, primary_key=True)
    corpus_id = Column(Integer, ForeignKey("organized_corpora.id", ondelete="CASCADE"), nullable=False, index=True)
    original_text = Column(Text, nullable=False)
    document_id = Column(Integer, nullable=False)
    document_name = Column(String(255), nullable=False)
    page_number = Column(Integer, nullable=True)
    chunk_index = Column(Integer, nullable=False)
    line_start = Column(Integer, nullable=False)
    line_end = Column(Integer, nullable=False)

    corpus = relationship("OrganizedCorpus", back_populates="attributions")


# ---------- Analyses ----------
class Analysis(Base):
    __tablename__ = "analyses"

    id = Column(Integer, primary_key=True)
    # Per-request key; a replayed insert finds the row it already committed.
    request_key = Column(String(32), nullable=True, unique=True)
    organization_id = Column(Integer, nullable=False, index=True)
    framework_id = Column(Integer, ForeignKey("frameworks.id"), nullable=False)
    framework_name = Column(String(255), nullable=False)
    framework_family = Column(String(50), nullable=False, default="general")
    name = Column(String(255), nullable=False)
    model_id = Column(String(100), nullable=False)
    document_ids = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)

    total_controls = Column(Integer, nullable=False, default=0)
    compliant_controls = Column(Integer, nullable=False, default=0)
    partial_controls = Column(Integer, nullable=False, default=0)
    missing_controls = Column(Integer, nullable=False, default=0)
    average_confidence = Column(Float, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)

    mappings = relationship("EvidenceMapping", back_populates="analysis", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Analysis(id={self.id}, status='{self.status}')>"


class EvidenceMapping(Base):
    __tablename__ = "evidence_mappings"
    # Natural idempotency key for retried writes.
    __table_args__ = (UniqueConstraint("analysis_id", "control_pk"),)

    id = Column(Integer, primary_key=True)
    analysis_id = Column(Integer, ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False, index=True)
    control_pk = Column(Integer, nullable=False)
    control_id = Column(String(100), nullable=False)
    control_title = Column(String(500), nullable=False)
    control_description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False)
    confidence_score = Column(Float, nullable=False, default=0)
    reasoning = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    analysis = relationship("Analysis", back_populates="mappings")
    items = relationship(
        "EvidenceItem", back_populates="mapping", cascade="all, delete-orphan",
        order_by="EvidenceItem.id",
    )


class EvidenceItem(Base):
    __tablename__ = "evidence_items"

    id = Column(Integer, primary_key=True)
    mapping_id = Column(Integer, ForeignKey("evidence_mappings.id", ondelete="CASCADE"), nullable=False, index=True)
    document_id = Column(Integer, nullable=True)
    document_name = Column(String(255), nullable=True)
    page_number = Column(Integer, nullable=True)
    chunk_index = Column(Integer, nullable=True)
    line_start = Column(Integer, nullable=True)
    line_end = Column(Integer, nullable=True)
    evidence_text = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False, default=0)
    relevance_score = Column(Float, nullable=False, default=0)
    attributed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    mapping = relationship("EvidenceMapping", back_populates="items")
