"""
Pytest configuration and fixtures for archive ingestion tests.

Environment variables read by the harness are removed before tests run so
that defaults are deterministic regardless of the developer's shell or
.env files.
"""

import os
import time

import pytest

from archive_ingest.sites import Site
from archive_ingest.sync.stores import DirectoryObjectStore

_HARNESS_ENV_VARS = [
    "SITES_DIRECTORY",
    "SITE_ENV_NAME",
    "LOCAL_STORAGE_ROOT",
    "FILE_STORAGE_ENV",
    "LOCAL_REMOTE_MIRROR_ROOT",
    "INDEXING_FUNCTION_TEMPLATE",
    "RUN_HISTORY_FILE",
    "S3_ENDPOINT_URL",
]

for _name in _HARNESS_ENV_VARS:
    os.environ.pop(_name, None)
for _name in list(os.environ):
    if _name.startswith("PIPELINE_"):
        os.environ.pop(_name)


def _write_file(path, content="data", mtime=None):
    """Create a file (and its parents), optionally with a fixed mtime."""
    path = str(path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def make_site(tmp_path):
    """Factory for sites whose local tree lives under tmp_path."""

    def _make_site(site_id="demo", **kwargs):
        defaults = {
            "title": f"{site_id.title()} Archive",
            "bucket_name": f"{site_id}-bucket",
            "local_base_path": str(tmp_path / "local" / "sites" / site_id),
            "site_dir": str(tmp_path / "sites" / "my-sites" / site_id),
        }
        defaults.update(kwargs)
        return Site(id=site_id, **defaults)

    return _make_site


@pytest.fixture
def site(make_site):
    return make_site("demo")


@pytest.fixture
def remote_root(tmp_path):
    return tmp_path / "remote"


@pytest.fixture
def store_for(remote_root):
    """Directory-backed store factory, one emulated bucket per site."""

    def _store_for(site):
        return DirectoryObjectStore(str(remote_root / site.bucket_name))

    return _store_for


@pytest.fixture
def old_mtime():
    """A timestamp safely in the past."""
    return time.time() - 86400


@pytest.fixture
def write_file():
    """Helper creating files: write_file(path, content="data", mtime=None)."""
    return _write_file
