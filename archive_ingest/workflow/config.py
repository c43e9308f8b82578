"""Configuration for the ingestion pipeline.

Provides environment-based configuration for phase commands, timeouts
and concurrency, overlaid with the per-run choices made on the command
line (selected phases, sync folders, dry run).
"""

import os
import shlex
from dataclasses import dataclass, field
from typing import List, Optional

from archive_ingest.sync.folders import ALL_SYNC_FOLDERS, SyncFolder
from archive_ingest.workflow.results import PHASE_ORDER, Phase

DEFAULT_RSS_RETRIEVAL_COMMAND = (
    "pnpm --filter @browse-dot-show/rss-retrieval-lambda run run:local"
)
DEFAULT_AUDIO_TRANSCRIPTION_COMMAND = (
    "pnpm --filter @browse-dot-show/process-audio-lambda run run:local"
)
DEFAULT_LOCAL_INDEXING_COMMAND = (
    "tsx packages/ingestion/srt-indexing-lambda/convert-srts-indexed-search.ts"
)


def _get_int_env(
    name: str,
    default: Optional[int],
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> Optional[int]:
    """Parse an integer from an environment variable with validation.

    Args:
        name: Environment variable name.
        default: Default value if env var is not set or empty.
        min_val: Minimum allowed value (inclusive), or None for no minimum.
        max_val: Maximum allowed value (inclusive), or None for no maximum.

    Returns:
        The parsed and validated integer value.

    Raises:
        ValueError: If the value cannot be parsed as an integer or is out of range.
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default

    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid value for {name}: '{raw}' is not a valid integer"
        )

    if min_val is not None and value < min_val:
        raise ValueError(
            f"Invalid value for {name}: {value} must be >= {min_val}"
        )

    if max_val is not None and value > max_val:
        raise ValueError(
            f"Invalid value for {name}: {value} must be <= {max_val}"
        )

    return value


def _get_command_env(name: str, default: str) -> List[str]:
    return shlex.split(os.getenv(name) or default)


@dataclass
class PipelineConfig:
    """Configuration for one pipeline run.

    Environment-backed settings come from ``from_env()``; the CLI then sets
    the run-specific fields.
    """

    # Run selection
    enabled_phases: List[Phase] = field(default_factory=lambda: list(PHASE_ORDER))
    sync_folders: List[SyncFolder] = field(default_factory=lambda: list(ALL_SYNC_FOLDERS))
    dry_run: bool = False
    force_local_indexing: bool = False
    max_episodes: Optional[int] = None  # Exported as MAX_EPISODES to RSS retrieval

    # Phase commands (argv lists, no shell)
    rss_retrieval_command: List[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_RSS_RETRIEVAL_COMMAND)
    )
    audio_transcription_command: List[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_AUDIO_TRANSCRIPTION_COMMAND)
    )
    local_indexing_command: List[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_LOCAL_INDEXING_COMMAND)
    )

    # Timeouts
    network_timeout_seconds: int = 300  # Listing and refresh trigger
    transfer_timeout_seconds: int = 3600  # One folder transfer
    phase_timeout_seconds: Optional[int] = None  # Local phases, unbounded by default
    cancel_grace_seconds: int = 10  # Time children get to exit after Ctrl-C

    # Output and concurrency
    progress_interval_seconds: int = 10
    max_parallel_sites: int = 1
    prefix_output: bool = False

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create configuration from environment variables.

        Returns:
            PipelineConfig instance with values from environment or defaults.

        Raises:
            ValueError: If any environment variable has an invalid value.
        """
        return cls(
            rss_retrieval_command=_get_command_env(
                "PIPELINE_RSS_RETRIEVAL_COMMAND", DEFAULT_RSS_RETRIEVAL_COMMAND
            ),
            audio_transcription_command=_get_command_env(
                "PIPELINE_AUDIO_TRANSCRIPTION_COMMAND", DEFAULT_AUDIO_TRANSCRIPTION_COMMAND
            ),
            local_indexing_command=_get_command_env(
                "PIPELINE_LOCAL_INDEXING_COMMAND", DEFAULT_LOCAL_INDEXING_COMMAND
            ),
            network_timeout_seconds=_get_int_env(
                "PIPELINE_NETWORK_TIMEOUT_SECONDS", 300, min_val=1
            ),
            transfer_timeout_seconds=_get_int_env(
                "PIPELINE_TRANSFER_TIMEOUT_SECONDS", 3600, min_val=1
            ),
            phase_timeout_seconds=_get_int_env(
                "PIPELINE_PHASE_TIMEOUT_SECONDS", None, min_val=1
            ),
            cancel_grace_seconds=_get_int_env(
                "PIPELINE_CANCEL_GRACE_SECONDS", 10, min_val=0
            ),
            progress_interval_seconds=_get_int_env(
                "PIPELINE_PROGRESS_INTERVAL_SECONDS", 10, min_val=1
            ),
            max_parallel_sites=_get_int_env(
                "PIPELINE_MAX_PARALLEL_SITES", 1, min_val=1
            ),
        )

    def is_enabled(self, phase: Phase) -> bool:
        return phase in self.enabled_phases

    def command_for(self, phase: Phase) -> List[str]:
        """Return the child-process command of a site-scoped phase."""
        commands = {
            Phase.RSS_RETRIEVAL: self.rss_retrieval_command,
            Phase.AUDIO_TRANSCRIPTION: self.audio_transcription_command,
            Phase.LOCAL_INDEXING: self.local_indexing_command,
        }
        if phase not in commands:
            raise ValueError(f"Phase {phase.value} does not run a command")
        return list(commands[phase])
