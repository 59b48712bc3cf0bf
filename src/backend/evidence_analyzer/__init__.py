"""Evidence analysis pipeline: corpus organization, control evaluation and progress streaming."""

from .orchestrator import AnalysisOrchestrator, Pipeline, build_pipeline
from .progress import ProgressRegistry
from .store import RetryableStore

__all__ = ["AnalysisOrchestrator", "Pipeline", "ProgressRegistry", "RetryableStore", "build_pipeline"]
