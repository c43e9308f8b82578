"""Markdown run history.

Each pipeline run is prepended to a markdown file so the most recent run
is always at the top.
"""

import logging
import os
from typing import Optional

from archive_ingest.workflow.results import Phase, RunReport
from archive_ingest.workflow.summary import GLYPH_FAILURE, GLYPH_SUCCESS, phase_success_count

logger = logging.getLogger(__name__)

HISTORY_HEADER = (
    "# Ingestion Pipeline Run History\n\n"
    "This file contains a chronological log of ingestion pipeline runs, "
    "with the most recent runs at the top.\n\n"
)


def format_history_entry(report: RunReport) -> str:
    """Format one run as a markdown section."""
    stopped = report.stopped_at or report.started_at
    if report.cancelled:
        status = "⚠️ CANCELLED"
    elif report.has_errors:
        status = f"{GLYPH_FAILURE} ERRORS"
    else:
        status = f"{GLYPH_SUCCESS} SUCCESS"
    if report.dry_run:
        status += " (dry run)"

    totals = report.totals()
    error_count = sum(len(site.errors) for site in report.sites)
    lines = [
        f"## {stopped.strftime('%Y-%m-%d %H:%M:%S %Z')} - {status}",
        "",
        f"**Duration:** {report.duration_seconds:.1f}s  ",
        f"**Sites Processed:** {len(report.sites)}  ",
        f"**Total Files Transferred:** {totals.files_transferred}  ",
        f"**Audio Files Downloaded:** {totals.new_audio_files}  ",
        f"**Episodes Transcribed:** {totals.new_transcripts}  ",
    ]
    if error_count:
        lines.append(f"**Error Count:** {error_count}  ")
    lines.append("")

    if report.sites:
        lines.extend(["### Site Results", ""])
        for site in report.sites:
            glyph = GLYPH_FAILURE if site.has_errors else GLYPH_SUCCESS
            lines.append(f"**{glyph} {site.site_title or site.site_id}** (`{site.site_id}`)  ")
            audio = site.metric(Phase.RSS_RETRIEVAL).new_audio_files
            transcripts = site.metric(Phase.AUDIO_TRANSCRIPTION).new_transcripts
            uploaded = site.metric(Phase.POST_SYNC).files_transferred
            if audio:
                lines.append(f"  Audio Files: {audio}  ")
            if transcripts:
                lines.append(f"  Transcribed: {transcripts}  ")
            if uploaded:
                lines.append(f"  Files Uploaded: {uploaded}  ")
            if site.errors:
                lines.append(f"  Errors: {', '.join(site.errors)}  ")
            lines.append("")

        lines.extend(["### Success Rates", ""])
        for phase in report.enabled_phases:
            lines.append(f"**{phase.label}:** {phase_success_count(report, phase)}  ")
        lines.append("")

    return "\n".join(lines) + "\n"


class RunHistoryLog:
    """Prepends run entries to a markdown history file."""

    def __init__(self, path: str):
        self.path = path

    def read_entries(self) -> str:
        """Return the existing entries without the file header."""
        if not os.path.isfile(self.path):
            return ""
        with open(self.path, "r", encoding="utf-8") as f:
            content = f.read()
        if content.startswith(HISTORY_HEADER):
            return content[len(HISTORY_HEADER):]
        if content.startswith("# "):
            # Header with different wording: keep everything from the first entry on
            first_entry = content.find("\n## ")
            return content[first_entry + 1:] if first_entry != -1 else ""
        return content

    def append(self, report: RunReport) -> Optional[str]:
        """Write a run to the top of the history file.

        Returns:
            The history file path, or None if it could not be written.
        """
        try:
            existing = self.read_entries()
            content = HISTORY_HEADER + format_history_entry(report)
            if existing:
                content += "\n" + existing
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                f.write(content)
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Could not write run history to {self.path}: {e}")
            return None
        logger.info(f"Run logged to {self.path}")
        return self.path
