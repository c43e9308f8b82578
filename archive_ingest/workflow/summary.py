"""Final run summary rendering."""

from typing import List, Optional

from archive_ingest.workflow.results import Phase, PhaseResult, RunReport

GLYPH_SUCCESS = "✅"
GLYPH_FAILURE = "❌"
GLYPH_SKIPPED = "⚪"


def phase_glyph(result: Optional[PhaseResult]) -> str:
    """Status glyph of a phase result; no result or a gated skip counts as skipped."""
    if result is None or (result.skipped and result.success):
        return GLYPH_SKIPPED
    return GLYPH_SUCCESS if result.success else GLYPH_FAILURE


def format_duration(duration_ms: int) -> str:
    return f"{duration_ms / 1000:.1f}s"


def format_summary(report: RunReport) -> List[str]:
    """Render the end-of-run summary: per site, per phase, plus totals and errors."""
    lines = ["", "=" * 60, "Pipeline summary" + (" (DRY RUN)" if report.dry_run else ""), "=" * 60]

    for site in report.sites:
        site_glyph = GLYPH_FAILURE if site.has_errors else GLYPH_SUCCESS
        title = f" - {site.site_title}" if site.site_title and site.site_title != site.site_id else ""
        lines.append(f"{site_glyph} {site.site_id}{title} ({format_duration(site.total_duration_ms)})")
        for phase in report.enabled_phases:
            result = site.phase_results.get(phase)
            line = f"   {phase_glyph(result)} {phase.label}"
            if result is not None:
                line += f" ({format_duration(result.duration_ms)})"
                if result.detail:
                    line += f": {result.detail}"
            else:
                line += ": not run"
            lines.append(line)
        for error in site.errors:
            lines.append(f"   ⚠️  {error}")

    totals = report.totals()
    sites_with_errors = [site.site_id for site in report.sites if site.has_errors]
    lines.extend(
        [
            "",
            f"Sites processed: {len(report.sites)}",
            f"Sites with errors: {len(sites_with_errors)}"
            + (f" ({', '.join(sites_with_errors)})" if sites_with_errors else ""),
            f"New audio files: {totals.new_audio_files}",
            f"New transcripts: {totals.new_transcripts}",
            f"New search entries: {totals.new_search_entries}",
            f"Files {'planned' if report.dry_run else 'transferred'}: {totals.files_transferred}",
            f"Total duration: {report.duration_seconds:.1f}s",
        ]
    )
    if report.cancelled:
        lines.append("Run was cancelled before all phases completed")
    return lines


def phase_success_count(report: RunReport, phase: Phase) -> str:
    """``succeeded/attempted`` for one phase, ignoring gated skips."""
    attempted = [
        site.phase_results[phase]
        for site in report.sites
        if phase in site.phase_results and not site.phase_results[phase].skipped
    ]
    succeeded = sum(1 for result in attempted if result.success)
    return f"{succeeded}/{len(attempted)}"
