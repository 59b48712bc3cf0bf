from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Status = Literal["compliant", "partial", "missing"]
JobStatus = Literal["pending", "processing", "completed", "failed"]


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------- Catalog / inputs ----------
class FrameworkRecord(_Record):
    id: int
    name: str
    version: str | None = None
    family: str | None = None


class ControlRecord(_Record):
    id: int
    framework_id: int
    control_id: str
    title: str
    requirement_text: str | None = None
    category: str | None = None


class ChunkRecord(_Record):
    id: int
    document_id: int
    document_name: str
    chunk_index: int
    page_number: int | None = None
    topic: str | None = None
    category: str | None = None
    relevance_score: float = 0
    text: str


# ---------- Corpus ----------
class CorpusRecord(_Record):
    id: int
    organization_id: int
    text: str
    categories: list[str] = []
    chunk_count: int
    document_count: int
    document_selection: list[int] = []
    created_at: datetime | None = None


class AttributionRecord(_Record):
    id: int | None = None
    corpus_id: int | None = None
    original_text: str
    document_id: int
    document_name: str
    page_number: int | None = None
    chunk_index: int
    line_start: int
    line_end: int


# ---------- Analysis ----------
class AnalysisRecord(_Record):
    id: int
    organization_id: int
    framework_id: int
    framework_name: str
    framework_family: str = "general"
    name: str
    model_id: str
    document_ids: list[int] | None = None
    status: JobStatus
    total_controls: int = 0
    compliant_controls: int = 0
    partial_controls: int = 0
    missing_controls: int = 0
    average_confidence: float = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time_ms: int | None = None
    error: str | None = None


class EvidenceItemRecord(_Record):
    id: int
    mapping_id: int
    document_id: int | None = None
    document_name: str | None = None
    page_number: int | None = None
    chunk_index: int | None = None
    line_start: int | None = None
    line_end: int | None = None
    evidence_text: str
    confidence: float = Field(0, ge=0, le=100)
    relevance_score: float = Field(0, ge=0, le=100)
    attributed: bool = False


class EvidenceMappingRecord(_Record):
    id: int
    analysis_id: int
    control_pk: int
    control_id: str
    control_title: str
    control_description: str | None = None
    status: Status
    confidence_score: float = Field(ge=0, le=100)
    reasoning: str
    items: list[EvidenceItemRecord] = []


# ---------- Model verdict ----------
class Citation(BaseModel):
    text: str
    document_hint: str | None = None
    page_hint: int | None = None
    line_start: int | None = None
    line_end: int | None = None
    confidence: int = Field(0, ge=0, le=100)
    relevance: int = Field(0, ge=0, le=100)


class Verdict(BaseModel):
    status: Status
    confidence: int = Field(ge=0, le=100)
    reasoning: str
    evidence: list[Citation] = []


# ---------- API ----------
class AnalysisRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    framework_id: int = Field(alias="frameworkId")
    document_ids: list[int] | None = Field(None, alias="documentIds")
    model_id: str | None = Field(None, alias="modelId")
    control_ids: list[str] | None = Field(None, alias="controlIds")
    # Test mode: evaluate only the first N controls in catalog order.
    control_limit: int | None = Field(None, alias="controlLimit", ge=1)


class AnalysisCreated(BaseModel):
    jobId: int


class GapControl(BaseModel):
    control_id: str
    title: str
    description: str | None = None
    importance: Literal["high", "medium", "low"] = "high"


class LowConfidenceControl(BaseModel):
    control_id: str
    title: str
    confidence: float
    reasoning: str


class GapSummary(BaseModel):
    missing_controls: list[GapControl] = []
    low_confidence_controls: list[LowConfidenceControl] = []
    recommendations: list[str] = []


class CitedDocument(BaseModel):
    document_id: int
    document_name: str | None = None
    evidence_count: int


class AnalysisResults(BaseModel):
    analysis: AnalysisRecord
    evidence_mappings: list[EvidenceMappingRecord]
    documents: list[CitedDocument]
    gap_summary: GapSummary
