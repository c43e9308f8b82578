"""Logical sync folders and transfer policies."""

from enum import Enum
from typing import Iterable, List, Optional

from archive_ingest.exceptions import ConfigurationError


class SyncFolder(Enum):
    """Logical content categories, each synced independently."""

    AUDIO = "audio"
    TRANSCRIPTS = "transcripts"
    EPISODE_MANIFEST = "episode-manifest"
    RSS = "rss"
    SEARCH_ENTRIES = "search-entries"
    SEARCH_INDEX = "search-index"


ALL_SYNC_FOLDERS: List[SyncFolder] = list(SyncFolder)

# Rewritten in place every run, so a presence diff never sees it as new.
ALWAYS_SYNC_FOLDERS = frozenset({SyncFolder.EPISODE_MANIFEST})

# Produced by local indexing; withheld from upload when indexing failed.
INDEX_ARTIFACT_FOLDERS = frozenset({SyncFolder.SEARCH_ENTRIES, SyncFolder.SEARCH_INDEX})


class TransferDirection(Enum):
    UPLOAD = "local-to-remote"
    DOWNLOAD = "remote-to-local"


class ConflictResolution(Enum):
    """What happens when a key exists on both sides of a transfer."""

    OVERWRITE_ALWAYS = "overwrite-always"
    OVERWRITE_IF_NEWER = "overwrite-if-newer"
    SKIP_EXISTING = "skip-existing"


def parse_sync_folders(names: Optional[Iterable[str]]) -> List[SyncFolder]:
    """Resolve folder names from the CLI into SyncFolder members.

    Args:
        names: Folder names, or None for every folder.

    Returns:
        Folders in canonical order, without duplicates.

    Raises:
        ConfigurationError: If any name is not a known folder.
    """
    if names is None:
        return list(ALL_SYNC_FOLDERS)

    valid = {folder.value: folder for folder in SyncFolder}
    names = list(names)
    invalid = [name for name in names if name not in valid]
    if invalid:
        raise ConfigurationError(
            f"Invalid sync folders: {', '.join(invalid)}. "
            f"Valid options: {', '.join(valid)}"
        )
    requested = {valid[name] for name in names}
    return [folder for folder in ALL_SYNC_FOLDERS if folder in requested]
