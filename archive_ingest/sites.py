"""Site registry.

Discovers configured podcast archive sites and loads their per-site
settings. Sites live in ``<SITES_DIRECTORY>/my-sites/<id>/`` or, when no
personal sites exist, ``<SITES_DIRECTORY>/origin-sites/<id>/``. Each site
directory holds a ``site.config.json`` and optionally a ``.env.aws-sso``
with the site's environment bundle.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from dotenv import dotenv_values

from archive_ingest.config import Config
from archive_ingest.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SITE_CONFIG_FILENAME = "site.config.json"
SITE_ENV_FILENAME = ".env.aws-sso"
MY_SITES_DIRNAME = "my-sites"
ORIGIN_SITES_DIRNAME = "origin-sites"


@dataclass(frozen=True)
class Site:
    """One podcast archive instance.

    Attributes:
        id: Site identifier, matches the site directory name.
        title: Human-readable title.
        bucket_name: Remote bucket holding the site's artifacts.
        local_base_path: Local directory holding the site's sync folders.
        site_dir: Directory the site configuration was loaded from.
        env: Site-scoped environment bundle merged into child processes.
    """

    id: str
    title: str
    bucket_name: str
    local_base_path: str
    site_dir: str
    env: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def aws_profile(self) -> Optional[str]:
        return self.env.get("AWS_PROFILE") or None


def _read_env_file(path: str) -> Dict[str, str]:
    if not os.path.isfile(path):
        return {}
    return {key: value for key, value in dotenv_values(path).items() if value is not None}


class SiteRegistry:
    """Enumerates configured sites and resolves their settings.

    Example:
        registry = SiteRegistry(Config())
        sites = registry.select(["hardfork", "naddpod"])
    """

    def __init__(self, config: Config):
        self.config = config
        self._sites: Optional[List[Site]] = None

    def _sites_root(self) -> str:
        """Return the directory sites are loaded from.

        my-sites wins whenever it contains at least one configured site.
        """
        base = self.config.SITES_DIRECTORY
        my_sites = os.path.join(base, MY_SITES_DIRNAME)
        if self._site_dirs(my_sites):
            logger.debug(f"Using sites from {my_sites}")
            return my_sites
        origin_sites = os.path.join(base, ORIGIN_SITES_DIRNAME)
        logger.debug(f"No sites in {my_sites}, using {origin_sites}")
        return origin_sites

    @staticmethod
    def _site_dirs(directory: str) -> List[str]:
        if not os.path.isdir(directory):
            return []
        return sorted(
            os.path.join(directory, name)
            for name in os.listdir(directory)
            if name != "node_modules"
            and os.path.isfile(os.path.join(directory, name, SITE_CONFIG_FILENAME))
        )

    def load_site_env(self, site_dir: str) -> Dict[str, str]:
        """Load a site's environment bundle.

        Values from the site's ``.env.aws-sso`` take priority over the shared
        root ``.env.<SITE_ENV_NAME>`` file.
        """
        root_env_path = f".env.{self.config.SITE_ENV_NAME}"
        env = _read_env_file(root_env_path)
        env.update(_read_env_file(os.path.join(site_dir, SITE_ENV_FILENAME)))
        return env

    def _load_site(self, site_dir: str) -> Site:
        config_path = os.path.join(site_dir, SITE_CONFIG_FILENAME)
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                site_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read {config_path}: {e}") from e

        dir_name = os.path.basename(site_dir)
        site_id = site_config.get("id") or dir_name
        if site_id != dir_name:
            logger.warning(
                f"Site ID '{site_id}' doesn't match directory name '{dir_name}'"
            )

        title = (
            site_config.get("fullTitle")
            or site_config.get("shortTitle")
            or site_config.get("appHeader", {}).get("primaryTitle")
            or site_id
        )
        env = self.load_site_env(site_dir)
        bucket_name = env.get("S3_BUCKET_NAME") or site_config.get("bucketName") or ""

        return Site(
            id=site_id,
            title=title,
            bucket_name=bucket_name,
            local_base_path=self.config.local_site_path(site_id),
            site_dir=site_dir,
            env=env,
        )

    def discover(self) -> List[Site]:
        """Return every configured site, sorted by id.

        Sites whose configuration cannot be read are logged and skipped.
        """
        if self._sites is None:
            sites = []
            for site_dir in self._site_dirs(self._sites_root()):
                try:
                    sites.append(self._load_site(site_dir))
                except ConfigurationError as e:
                    logger.error(str(e))
            self._sites = sorted(sites, key=lambda s: s.id)
            logger.info(f"Discovered {len(self._sites)} site(s)")
        return list(self._sites)

    def get(self, site_id: str) -> Site:
        for site in self.discover():
            if site.id == site_id:
                return site
        raise ConfigurationError(f"Unknown site: {site_id}")

    def select(self, site_ids: Optional[Sequence[str]] = None) -> List[Site]:
        """Resolve a CLI site selection.

        Args:
            site_ids: Requested site ids, or None/empty for every site.

        Returns:
            Selected sites sorted by id.

        Raises:
            ConfigurationError: No sites exist, a requested id is unknown, or a
                selected site has no bucket configured.
        """
        all_sites = self.discover()
        if not all_sites:
            raise ConfigurationError(
                f"No sites found in {self.config.SITES_DIRECTORY}/{MY_SITES_DIRNAME} "
                f"or {self.config.SITES_DIRECTORY}/{ORIGIN_SITES_DIRNAME}"
            )

        if site_ids:
            known = {site.id for site in all_sites}
            unknown = [site_id for site_id in site_ids if site_id not in known]
            if unknown:
                raise ConfigurationError(
                    f"Unknown site(s): {', '.join(unknown)}. "
                    f"Available sites: {', '.join(sorted(known))}"
                )
            wanted = set(site_ids)
            selected = [site for site in all_sites if site.id in wanted]
        else:
            selected = all_sites

        for site in selected:
            if not site.bucket_name:
                raise ConfigurationError(
                    f"Site '{site.id}' has no bucket configured "
                    f"(set S3_BUCKET_NAME in {SITE_ENV_FILENAME} or bucketName in {SITE_CONFIG_FILENAME})"
                )
        return selected
