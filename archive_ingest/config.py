import os

from dotenv import load_dotenv

from archive_ingest.exceptions import ConfigurationError

STORAGE_MODE_REMOTE = "remote"
STORAGE_MODE_LOCAL = "local"


class Config:
    def __init__(self, env_file=None):
        """
        Initialize configuration by loading environment variables and setting default attributes.

        Loads environment variables from the provided .env file path when `env_file` is given;
        otherwise loads from the default environment. After loading, sets the site discovery
        paths, local and emulated-remote storage roots, cloud settings, the indexing function
        naming pattern and the run history location.

        Parameters:
            env_file (str | None): Optional path to a .env file to load environment variables from.
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Site discovery: <SITES_DIRECTORY>/my-sites/<id>/site.config.json, falling back to origin-sites
        self.SITES_DIRECTORY = os.getenv("SITES_DIRECTORY", "sites")
        # Root .env.<name> merged underneath each site's .env.aws-sso
        self.SITE_ENV_NAME = os.getenv("SITE_ENV_NAME", "local")

        # Local file trees live at <LOCAL_STORAGE_ROOT>/sites/<site_id>/<folder>
        self.LOCAL_STORAGE_ROOT = os.getenv("LOCAL_STORAGE_ROOT", "aws-local-dev/s3")

        # "remote" talks to S3; "local" emulates each bucket as a directory
        self.FILE_STORAGE_ENV = os.getenv("FILE_STORAGE_ENV", STORAGE_MODE_REMOTE).lower()
        if self.FILE_STORAGE_ENV not in (STORAGE_MODE_REMOTE, STORAGE_MODE_LOCAL):
            raise ConfigurationError(
                f"FILE_STORAGE_ENV must be '{STORAGE_MODE_REMOTE}' or "
                f"'{STORAGE_MODE_LOCAL}', got: {self.FILE_STORAGE_ENV}"
            )
        self.LOCAL_REMOTE_MIRROR_ROOT = os.getenv(
            "LOCAL_REMOTE_MIRROR_ROOT", "aws-local-dev/remote"
        )

        # Cloud configuration
        self.AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
        self.S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None

        # Remote search index refresh target, formatted with the site id
        self.INDEXING_FUNCTION_TEMPLATE = os.getenv(
            "INDEXING_FUNCTION_TEMPLATE", "srt-indexing-{site_id}"
        )

        # Run history (markdown, most recent run first)
        self.RUN_HISTORY_FILE = os.getenv(
            "RUN_HISTORY_FILE", "automation-logs/ingestion-pipeline-runs.md"
        )

    @property
    def uses_local_storage(self) -> bool:
        return self.FILE_STORAGE_ENV == STORAGE_MODE_LOCAL

    def local_site_path(self, site_id):
        '''Local base directory holding every sync folder of a site.'''
        return os.path.join(self.LOCAL_STORAGE_ROOT, "sites", site_id)

    def indexing_function_name(self, site_id):
        '''Name of the remote indexing function for a site.'''
        return self.INDEXING_FUNCTION_TEMPLATE.format(site_id=site_id)
