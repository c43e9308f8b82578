"""Remote object stores.

Provides an abstract interface for the remote side of a site plus two
implementations: S3 (the production bucket) and a directory-backed store
that emulates a bucket on the local filesystem when FILE_STORAGE_ENV is
``local``. Scanner and transfer executor only ever talk to the interface,
so the storage mode is respected uniformly.
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, Optional

import boto3
from botocore.config import Config as BotoConfig

from archive_ingest.config import Config
from archive_ingest.sites import Site

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteObject:
    """One object listed from a store."""

    key: str
    size: int
    last_modified: Optional[float] = None


class ObjectStoreInterface(ABC):
    """Abstract interface for a site's remote object store."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location, e.g. ``s3://bucket``."""
        pass

    @abstractmethod
    def list_objects(self, prefix: str) -> Iterator[RemoteObject]:
        """List every object whose key starts with ``prefix``.

        Raises:
            Exception: Store-specific errors propagate to the caller.
        """
        pass

    @abstractmethod
    def upload_file(self, local_path: str, key: str) -> None:
        pass

    @abstractmethod
    def download_file(self, key: str, local_path: str) -> None:
        pass

    @abstractmethod
    def delete_object(self, key: str) -> None:
        pass


class S3ObjectStore(ObjectStoreInterface):
    """Object store backed by an S3 bucket.

    The boto3 client is created lazily so that credential problems surface
    as scan or transfer failures for this site only.
    """

    def __init__(
        self,
        bucket_name: str,
        region_name: str,
        profile_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        timeout_seconds: int = 300,
    ):
        self.bucket_name = bucket_name
        self.region_name = region_name
        self.profile_name = profile_name
        self.endpoint_url = endpoint_url
        self.timeout_seconds = timeout_seconds
        self._client = None

    @property
    def location(self) -> str:
        return f"s3://{self.bucket_name}"

    @property
    def client(self):
        """Lazily initialize the S3 client."""
        if self._client is None:
            session = boto3.session.Session(
                profile_name=self.profile_name,
                region_name=self.region_name,
            )
            self._client = session.client(
                "s3",
                endpoint_url=self.endpoint_url,
                config=BotoConfig(
                    connect_timeout=min(self.timeout_seconds, 60),
                    read_timeout=self.timeout_seconds,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        return self._client

    def list_objects(self, prefix: str) -> Iterator[RemoteObject]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for obj in page.get("Contents", []):
                last_modified = obj.get("LastModified")
                yield RemoteObject(
                    key=obj["Key"],
                    size=obj.get("Size", 0),
                    last_modified=last_modified.timestamp() if last_modified else None,
                )

    def upload_file(self, local_path: str, key: str) -> None:
        self.client.upload_file(local_path, self.bucket_name, key)

    def download_file(self, key: str, local_path: str) -> None:
        self.client.download_file(self.bucket_name, key, local_path)

    def delete_object(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket_name, Key=key)


class DirectoryObjectStore(ObjectStoreInterface):
    """Object store emulated by a directory tree (one directory per bucket)."""

    def __init__(self, root: str):
        self.root = root

    @property
    def location(self) -> str:
        return f"file://{os.path.abspath(self.root)}"

    def _path(self, key: str) -> str:
        return os.path.join(self.root, *key.split("/"))

    def list_objects(self, prefix: str) -> Iterator[RemoteObject]:
        if not os.path.isdir(self.root):
            return
        for dirpath, _, filenames in os.walk(self.root):
            for filename in filenames:
                full_path = os.path.join(dirpath, filename)
                key = os.path.relpath(full_path, self.root).replace(os.sep, "/")
                if not key.startswith(prefix):
                    continue
                stat = os.stat(full_path)
                yield RemoteObject(key=key, size=stat.st_size, last_modified=stat.st_mtime)

    def upload_file(self, local_path: str, key: str) -> None:
        destination = self._path(key)
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        shutil.copy2(local_path, destination)

    def download_file(self, key: str, local_path: str) -> None:
        shutil.copy2(self._path(key), local_path)

    def delete_object(self, key: str) -> None:
        os.remove(self._path(key))


def create_object_store(
    site: Site,
    config: Config,
    timeout_seconds: int = 300,
) -> ObjectStoreInterface:
    """
    Create the remote object store for a site according to FILE_STORAGE_ENV.

    Parameters:
        site (Site): Site whose bucket should be addressed.
        config (Config): Application configuration (storage mode, region, endpoint).
        timeout_seconds (int): Network timeout applied to SDK calls.

    Returns:
        ObjectStoreInterface: S3-backed store in remote mode, directory-backed store in local mode.
    """
    if config.uses_local_storage:
        root = os.path.join(config.LOCAL_REMOTE_MIRROR_ROOT, site.bucket_name)
        logger.debug(f"Using emulated bucket for {site.id}: {root}")
        return DirectoryObjectStore(root)

    logger.debug(f"Using S3 bucket for {site.id}: {site.bucket_name}")
    return S3ObjectStore(
        bucket_name=site.bucket_name,
        region_name=site.env.get("AWS_REGION") or config.AWS_REGION,
        profile_name=site.aws_profile,
        endpoint_url=config.S3_ENDPOINT_URL,
        timeout_seconds=timeout_seconds,
    )
