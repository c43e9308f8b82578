"""Multi-phase ingestion pipeline.

Sequences the ingestion phases across sites:
pre-sync → rss-retrieval → audio-transcription → local-indexing →
post-sync → index-refresh.
"""

from archive_ingest.workflow.config import PipelineConfig
from archive_ingest.workflow.orchestrator import PipelineOrchestrator
from archive_ingest.workflow.results import (
    Phase,
    PhaseMetrics,
    PhaseResult,
    RunReport,
    SiteProcessingResult,
)

__all__ = [
    "Phase",
    "PhaseMetrics",
    "PhaseResult",
    "PipelineConfig",
    "PipelineOrchestrator",
    "RunReport",
    "SiteProcessingResult",
]
