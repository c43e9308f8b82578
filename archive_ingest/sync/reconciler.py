"""Consistency reconciler.

Computes, per folder, which files exist only locally, only remotely, or on
both sides. Reconciliation is pure: presence decides, size and mtime are
left to the transfer step's conflict resolution.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from archive_ingest.exceptions import ScanError
from archive_ingest.sites import Site
from archive_ingest.sync.folders import SyncFolder
from archive_ingest.sync.inventory import FileInventoryEntry, scan_folder_pair
from archive_ingest.sync.stores import ObjectStoreInterface

logger = logging.getLogger(__name__)


class ReconcileMode(Enum):
    DOWNLOAD_MISSING = "download-missing"
    UPLOAD_MISSING = "upload-missing"
    BIDIRECTIONAL = "bidirectional"


@dataclass
class FolderDiff:
    """Set difference between the local and remote inventory of one folder."""

    folder: SyncFolder
    local_only: List[FileInventoryEntry] = field(default_factory=list)
    remote_only: List[FileInventoryEntry] = field(default_factory=list)
    consistent: List[FileInventoryEntry] = field(default_factory=list)


@dataclass
class ConsistencyReport:
    """Per-site reconciliation result across folders.

    Attributes:
        site_id: Site the report was computed for.
        mode: Mode the report was computed in.
        folders: Diff per reconciled folder.
        scan_errors: Folders whose remote listing failed, by folder.
    """

    site_id: str
    mode: ReconcileMode
    folders: Dict[SyncFolder, FolderDiff] = field(default_factory=dict)
    scan_errors: Dict[SyncFolder, ScanError] = field(default_factory=dict)

    @property
    def total_local_only(self) -> int:
        return sum(len(diff.local_only) for diff in self.folders.values())

    @property
    def total_remote_only(self) -> int:
        return sum(len(diff.remote_only) for diff in self.folders.values())

    @property
    def total_consistent(self) -> int:
        return sum(len(diff.consistent) for diff in self.folders.values())

    @property
    def has_local_only(self) -> bool:
        return self.total_local_only > 0

    @property
    def has_remote_only(self) -> bool:
        return self.total_remote_only > 0

    @property
    def is_fully_synced(self) -> bool:
        """True when nothing is missing locally and every folder was scanned."""
        return not self.has_remote_only and not self.scan_errors


def _by_key(entries: Iterable[FileInventoryEntry]) -> Dict[str, FileInventoryEntry]:
    return {entry.relative_key: entry for entry in entries}


def _sorted(keys, entries: Dict[str, FileInventoryEntry]) -> List[FileInventoryEntry]:
    return [entries[key] for key in sorted(keys)]


def reconcile(
    folder: SyncFolder,
    local: Iterable[FileInventoryEntry],
    remote: Iterable[FileInventoryEntry],
    mode: ReconcileMode = ReconcileMode.BIDIRECTIONAL,
) -> FolderDiff:
    """Partition the keys of two inventories of the same folder.

    Args:
        folder: Folder both inventories belong to.
        local: Local inventory.
        remote: Remote inventory.
        mode: DOWNLOAD_MISSING leaves local_only empty, UPLOAD_MISSING leaves
            remote_only empty. ``consistent`` is always computed.

    Returns:
        FolderDiff with entries sorted by key. Consistent entries carry the
        local-side metadata.
    """
    local_by_key = _by_key(local)
    remote_by_key = _by_key(remote)
    local_keys = set(local_by_key)
    remote_keys = set(remote_by_key)

    diff = FolderDiff(
        folder=folder,
        consistent=_sorted(local_keys & remote_keys, local_by_key),
    )
    if mode != ReconcileMode.DOWNLOAD_MISSING:
        diff.local_only = _sorted(local_keys - remote_keys, local_by_key)
    if mode != ReconcileMode.UPLOAD_MISSING:
        diff.remote_only = _sorted(remote_keys - local_keys, remote_by_key)
    return diff


def build_report(
    site_id: str,
    mode: ReconcileMode,
    diffs: Iterable[FolderDiff],
    scan_errors: Optional[Dict[SyncFolder, ScanError]] = None,
) -> ConsistencyReport:
    return ConsistencyReport(
        site_id=site_id,
        mode=mode,
        folders={diff.folder: diff for diff in diffs},
        scan_errors=dict(scan_errors or {}),
    )


async def generate_report(
    site: Site,
    store: ObjectStoreInterface,
    folders: Iterable[SyncFolder],
    mode: ReconcileMode,
    timeout_seconds: Optional[float] = None,
) -> ConsistencyReport:
    """Scan and reconcile every folder of a site.

    A folder whose scan fails is recorded in ``scan_errors`` and left out of
    ``folders``; the remaining folders are still reconciled.
    """
    diffs = []
    scan_errors = {}
    for folder in folders:
        try:
            local, remote = await scan_folder_pair(site, store, folder, timeout_seconds)
        except ScanError as e:
            logger.error(str(e))
            scan_errors[folder] = e
            continue
        diffs.append(reconcile(folder, local, remote, mode))
    report = build_report(site.id, mode, diffs, scan_errors)
    logger.debug(
        f"[{site.id}] {mode.value}: local-only={report.total_local_only} "
        f"remote-only={report.total_remote_only} consistent={report.total_consistent}"
    )
    return report


def format_report(report: ConsistencyReport, max_listed: int = 10) -> List[str]:
    """Render a consistency report as human-readable lines."""
    lines = [f"Sync consistency report for {report.site_id} ({report.mode.value})"]

    if report.mode != ReconcileMode.DOWNLOAD_MISSING:
        lines.append(f"  Files to upload (local only): {report.total_local_only}")
    if report.mode != ReconcileMode.UPLOAD_MISSING:
        lines.append(f"  Files missing locally (remote only): {report.total_remote_only}")
    lines.append(f"  In sync: {report.total_consistent}")

    for folder, diff in report.folders.items():
        lines.append(
            f"  {folder.value}: local-only={len(diff.local_only)} "
            f"remote-only={len(diff.remote_only)} consistent={len(diff.consistent)}"
        )
        for label, entries in (("upload", diff.local_only), ("download", diff.remote_only)):
            for entry in entries[:max_listed]:
                lines.append(f"    {label}: {entry.relative_key}")
            if len(entries) > max_listed:
                lines.append(f"    ... and {len(entries) - max_listed} more to {label}")

    for folder, error in report.scan_errors.items():
        lines.append(f"  {folder.value}: scan failed ({error})")

    if not report.scan_errors and not report.has_local_only and not report.has_remote_only:
        lines.append("  Local and remote are fully in sync")
    return lines
