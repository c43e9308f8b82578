"""Result types for pipeline runs.

PhaseResult records one (site, phase) outcome, SiteProcessingResult
accumulates them for one site, and RunReport collects every site of a run.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


class Phase(Enum):
    """Pipeline phases in canonical execution order."""

    PRE_SYNC = "pre-sync"
    RSS_RETRIEVAL = "rss-retrieval"
    AUDIO_TRANSCRIPTION = "audio-transcription"
    LOCAL_INDEXING = "local-indexing"
    POST_SYNC = "post-sync"
    INDEX_REFRESH = "index-refresh"

    @property
    def label(self) -> str:
        return self.value.replace("-", " ").capitalize()


PHASE_ORDER: List[Phase] = list(Phase)


@dataclass
class PhaseMetrics:
    """Side-effect counts reported by a phase."""

    new_audio_files: int = 0
    new_transcripts: int = 0
    new_search_entries: int = 0
    files_transferred: int = 0

    def __add__(self, other: "PhaseMetrics") -> "PhaseMetrics":
        return PhaseMetrics(
            new_audio_files=self.new_audio_files + other.new_audio_files,
            new_transcripts=self.new_transcripts + other.new_transcripts,
            new_search_entries=self.new_search_entries + other.new_search_entries,
            files_transferred=self.files_transferred + other.files_transferred,
        )


@dataclass
class PhaseResult:
    """Outcome of one phase for one site.

    Attributes:
        site_id: Site the phase ran for.
        phase: Phase that ran.
        success: Whether the phase completed without error.
        duration_ms: Wall-clock duration in milliseconds.
        metrics: Counts extracted from the phase.
        error_message: Short failure description when unsuccessful.
        skipped: True when gating decided no work was needed.
        detail: Human-readable note, e.g. the dry-run plan.
    """

    site_id: str
    phase: Phase
    success: bool
    duration_ms: int = 0
    metrics: PhaseMetrics = field(default_factory=PhaseMetrics)
    error_message: Optional[str] = None
    skipped: bool = False
    detail: Optional[str] = None


@dataclass
class SiteProcessingResult:
    """Per-site accumulator, mutated as each phase completes."""

    site_id: str
    site_title: str = ""
    phase_results: Dict[Phase, PhaseResult] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    # Folders whose artifacts must not be uploaded this run
    withheld_folders: set = field(default_factory=set)
    # Diff-gated uploads of post-sync (planned uploads in dry run)
    uploaded_content_files: int = 0

    def record(self, result: PhaseResult) -> None:
        """Store a phase result and collect its error, if any."""
        self.phase_results[result.phase] = result
        if not result.success:
            self.errors.append(f"{result.phase.value}: {result.error_message or 'failed'}")

    def metric(self, phase: Phase) -> PhaseMetrics:
        result = self.phase_results.get(phase)
        return result.metrics if result else PhaseMetrics()

    @property
    def has_new_files(self) -> bool:
        """True iff RSS retrieval downloaded audio or transcription produced transcripts."""
        return (
            self.metric(Phase.RSS_RETRIEVAL).new_audio_files > 0
            or self.metric(Phase.AUDIO_TRANSCRIPTION).new_transcripts > 0
        )

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def total_duration_ms(self) -> int:
        return sum(result.duration_ms for result in self.phase_results.values())


@dataclass
class RunReport:
    """Report for a whole pipeline run."""

    sites: List[SiteProcessingResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stopped_at: Optional[datetime] = None
    dry_run: bool = False
    cancelled: bool = False
    enabled_phases: List[Phase] = field(default_factory=lambda: list(PHASE_ORDER))

    @property
    def duration_seconds(self) -> float:
        """Duration of the run in seconds."""
        end = self.stopped_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def has_errors(self) -> bool:
        return any(site.has_errors for site in self.sites)

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        return EXIT_FAILURE if self.has_errors else EXIT_SUCCESS

    def site(self, site_id: str) -> SiteProcessingResult:
        for result in self.sites:
            if result.site_id == site_id:
                return result
        raise KeyError(site_id)

    def totals(self) -> PhaseMetrics:
        total = PhaseMetrics()
        for site in self.sites:
            for result in site.phase_results.values():
                total = total + result.metrics
        return total
