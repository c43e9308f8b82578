"""Remote search index refresh trigger.

Invokes a site's indexing function asynchronously once new content has
been uploaded. Acceptance of the invocation is success; the function's
own run is never awaited.
"""

import asyncio
import json
import logging
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig

from archive_ingest.config import Config
from archive_ingest.exceptions import PhaseExecutionError
from archive_ingest.sites import Site

logger = logging.getLogger(__name__)

# Status code returned when an "Event" invocation is queued
ACCEPTED_STATUS_CODE = 202


class IndexRefreshTrigger:
    """Fire-and-forget invocation of the per-site indexing Lambda."""

    def __init__(self, config: Config, timeout_seconds: Optional[float] = 300):
        self.config = config
        self.timeout_seconds = timeout_seconds

    def _client(self, site: Site):
        session = boto3.session.Session(
            profile_name=site.aws_profile,
            region_name=site.env.get("AWS_REGION") or self.config.AWS_REGION,
        )
        timeout = int(self.timeout_seconds) if self.timeout_seconds else 60
        return session.client(
            "lambda",
            config=BotoConfig(
                connect_timeout=min(timeout, 60),
                read_timeout=timeout,
                retries={"max_attempts": 0},
            ),
        )

    def _invoke(self, site: Site, function_name: str) -> None:
        response = self._client(site).invoke(
            FunctionName=function_name,
            InvocationType="Event",
            Payload=json.dumps({}).encode("utf-8"),
        )
        status = response.get("StatusCode")
        if status != ACCEPTED_STATUS_CODE:
            raise PhaseExecutionError(
                site.id, "index-refresh", f"Invocation of {function_name} returned status {status}"
            )

    async def trigger(self, site: Site) -> str:
        """Trigger the indexing function of a site.

        Returns:
            Name of the invoked function.

        Raises:
            PhaseExecutionError: The invocation was not accepted or timed out.
            botocore.exceptions.ClientError: The service rejected the request.
        """
        function_name = self.config.indexing_function_name(site.id)
        logger.info(f"[{site.id}] Triggering index refresh: {function_name}")
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._invoke, site, function_name),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PhaseExecutionError(
                site.id, "index-refresh", f"Timed out after {self.timeout_seconds}s"
            ) from e
        logger.info(f"[{site.id}] Index refresh accepted by {function_name}")
        return function_name
