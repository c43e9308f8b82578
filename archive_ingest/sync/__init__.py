"""Local/remote synchronization for site artifacts.

Scans sync folders on both sides, reconciles the inventories and copies
the difference in either direction.
"""

from archive_ingest.sync.folders import (
    ConflictResolution,
    SyncFolder,
    TransferDirection,
    parse_sync_folders,
)
from archive_ingest.sync.inventory import FileInventoryEntry
from archive_ingest.sync.reconciler import (
    ConsistencyReport,
    FolderDiff,
    ReconcileMode,
    generate_report,
    reconcile,
)
from archive_ingest.sync.stores import ObjectStoreInterface, create_object_store
from archive_ingest.sync.transfer import TransferExecutor, TransferResult

__all__ = [
    "ConflictResolution",
    "ConsistencyReport",
    "FileInventoryEntry",
    "FolderDiff",
    "ObjectStoreInterface",
    "ReconcileMode",
    "SyncFolder",
    "TransferDirection",
    "TransferExecutor",
    "TransferResult",
    "create_object_store",
    "generate_report",
    "parse_sync_folders",
    "reconcile",
]
