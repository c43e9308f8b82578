"""Error taxonomy for the ingestion harness.

ConfigurationError aborts a run before any phase executes. The other
errors are scoped to one site (and one folder or phase) and are recorded
on that site's result instead of unwinding the orchestrator.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(IngestError):
    """Unknown site id, unknown folder name or missing site setting."""


class ScanError(IngestError):
    """Listing a folder on the remote store failed."""

    def __init__(self, site_id: str, folder: str, cause: Optional[BaseException] = None):
        self.site_id = site_id
        self.folder = folder
        self.cause = cause
        message = f"Failed to scan {folder} for {site_id}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class TransferError(IngestError):
    """A bulk copy for one folder failed or only partially applied."""

    def __init__(self, site_id: str, folder: str, detail: str):
        self.site_id = site_id
        self.folder = folder
        self.detail = detail
        super().__init__(f"Transfer of {folder} failed for {site_id}: {detail}")


class PhaseExecutionError(IngestError):
    """A child process for a site-scoped phase failed to start or exited non-zero."""

    def __init__(self, site_id: str, phase: str, detail: str):
        self.site_id = site_id
        self.phase = phase
        self.detail = detail
        super().__init__(f"{phase} failed for {site_id}: {detail}")
