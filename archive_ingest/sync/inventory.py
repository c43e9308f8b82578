"""File inventory scanner.

Lists the files under one logical sync folder, either in a site's local
tree or in its remote object store, and normalizes every key against the
folder root so both sides compare by the same relative key.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set, Tuple

from archive_ingest.exceptions import ScanError
from archive_ingest.sites import Site
from archive_ingest.sync.folders import SyncFolder
from archive_ingest.sync.stores import ObjectStoreInterface

logger = logging.getLogger(__name__)

SYSTEM_FILENAMES = frozenset({".DS_Store", "Thumbs.db", "desktop.ini"})


@dataclass(frozen=True)
class FileInventoryEntry:
    """One file present under a folder, keyed relative to the folder root.

    Attributes:
        relative_key: POSIX-style path relative to the folder root.
        size_bytes: Size in bytes, when known.
        last_modified: Modification time as a POSIX timestamp, when known.
    """

    relative_key: str
    size_bytes: Optional[int] = None
    last_modified: Optional[float] = None


def is_hidden_key(relative_key: str) -> bool:
    """Return True for dotfiles, OS metadata files and directory markers."""
    if not relative_key or relative_key.endswith("/"):
        return True
    for component in relative_key.split("/"):
        if component.startswith(".") or component in SYSTEM_FILENAMES:
            return True
    return False


def folder_prefix(folder: SyncFolder) -> str:
    return f"{folder.value}/"


def scan_local_folder(base_path: str, folder: SyncFolder) -> Set[FileInventoryEntry]:
    """
    Scan a site's local folder recursively.

    Parameters:
        base_path (str): Local base directory of the site.
        folder (SyncFolder): Folder to scan.

    Returns:
        Set[FileInventoryEntry]: Entries for every visible file; empty when the folder does not exist.
    """
    root = os.path.join(base_path, folder.value)
    if not os.path.isdir(root):
        logger.debug(f"Local folder does not exist yet: {root}")
        return set()

    entries = set()
    for dirpath, dirnames, filenames in os.walk(root):
        # Prune hidden directories in place so os.walk skips them
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        for filename in filenames:
            full_path = os.path.join(dirpath, filename)
            relative_key = os.path.relpath(full_path, root).replace(os.sep, "/")
            if is_hidden_key(relative_key):
                continue
            try:
                stat = os.stat(full_path)
            except OSError as e:
                # Dangling symlink or a file removed mid-walk
                logger.debug(f"Skipping unreadable local file {full_path}: {e}")
                continue
            entries.add(
                FileInventoryEntry(
                    relative_key=relative_key,
                    size_bytes=stat.st_size,
                    last_modified=stat.st_mtime,
                )
            )
    return entries


def scan_remote_folder(
    store: ObjectStoreInterface,
    folder: SyncFolder,
    site_id: str = "",
) -> Set[FileInventoryEntry]:
    """
    Scan a folder in the remote object store.

    Parameters:
        store (ObjectStoreInterface): Remote store of the site.
        folder (SyncFolder): Folder to scan.
        site_id (str): Site id used in error reporting.

    Returns:
        Set[FileInventoryEntry]: Entries for every visible object under the folder prefix.

    Raises:
        ScanError: If listing the store fails for any reason.
    """
    prefix = folder_prefix(folder)
    entries = set()
    try:
        for obj in store.list_objects(prefix):
            relative_key = obj.key[len(prefix):]
            if is_hidden_key(relative_key):
                continue
            entries.add(
                FileInventoryEntry(
                    relative_key=relative_key,
                    size_bytes=obj.size,
                    last_modified=obj.last_modified,
                )
            )
    except Exception as e:
        raise ScanError(site_id, folder.value, e) from e
    return entries


async def scan_folder_pair(
    site: Site,
    store: ObjectStoreInterface,
    folder: SyncFolder,
    timeout_seconds: Optional[float] = None,
) -> Tuple[Set[FileInventoryEntry], Set[FileInventoryEntry]]:
    """Scan the local and remote side of one folder concurrently.

    Raises:
        ScanError: Either side failed to list or exceeded ``timeout_seconds``.
    """
    local_task = asyncio.to_thread(scan_local_folder, site.local_base_path, folder)
    remote_task = asyncio.to_thread(scan_remote_folder, store, folder, site.id)
    try:
        local, remote = await asyncio.wait_for(
            asyncio.gather(local_task, remote_task), timeout=timeout_seconds
        )
    except asyncio.TimeoutError as e:
        raise ScanError(
            site.id, folder.value, TimeoutError(f"Timed out after {timeout_seconds}s")
        ) from e
    except OSError as e:
        raise ScanError(site.id, folder.value, e) from e
    return local, remote


async def scan_site(
    site: Site,
    store: ObjectStoreInterface,
    folders: Iterable[SyncFolder],
    timeout_seconds: Optional[float] = None,
) -> Dict[SyncFolder, Tuple[Set[FileInventoryEntry], Set[FileInventoryEntry]]]:
    """Scan several folders of a site. Failures are raised for the first failing folder."""
    folders = list(folders)
    results = await asyncio.gather(
        *(scan_folder_pair(site, store, folder, timeout_seconds) for folder in folders)
    )
    return dict(zip(folders, results))
