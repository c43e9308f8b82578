"""Phase runner.

Runs one site-scoped pipeline phase as a child process, echoing its output
live while capturing it, then extracts the phase's side-effect metrics
from the captured text.

Children report metrics either through the human-readable lines the
ingestion tools already print (``New Audio Files Downloaded: 3``) or
through a structured line::

    PHASE_RESULT {"new_audio_files": 3}

The structured line wins when both are present.
"""

import asyncio
import codecs
import json
import logging
import os
import re
import shlex
import sys
import time
from typing import Dict, List, Optional, Sequence

from archive_ingest.config import STORAGE_MODE_LOCAL
from archive_ingest.exceptions import PhaseExecutionError
from archive_ingest.sites import Site
from archive_ingest.workflow.results import Phase, PhaseMetrics, PhaseResult

logger = logging.getLogger(__name__)

METRIC_PATTERNS = {
    "new_audio_files": re.compile(r"New Audio Files Downloaded: (\d+)"),
    "new_transcripts": re.compile(r"Successfully Processed: (\d+)"),
    "new_search_entries": re.compile(r"New Search Entries Added: (\d+)"),
}

STRUCTURED_RESULT_PREFIX = "PHASE_RESULT"

# camelCase spellings accepted in structured results
_METRIC_ALIASES = {
    "newAudioFiles": "new_audio_files",
    "newTranscripts": "new_transcripts",
    "newSearchEntries": "new_search_entries",
    "filesTransferred": "files_transferred",
}

_READ_CHUNK_SIZE = 64 * 1024
_TERMINATE_WAIT_SECONDS = 5

# Sentinel for "use the runner's default timeout"
_DEFAULT = object()


def _parse_structured_result(line: str) -> Dict[str, int]:
    payload = line[len(STRUCTURED_RESULT_PREFIX):].strip()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed {STRUCTURED_RESULT_PREFIX} line: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {STRUCTURED_RESULT_PREFIX} line that is not an object")
        return {}

    values = {}
    for key, value in data.items():
        name = _METRIC_ALIASES.get(key, key)
        if name in PhaseMetrics.__dataclass_fields__ and isinstance(value, int):
            values[name] = value
    return values


def _prefix_lines(text: str, prefix: str, at_line_start: bool):
    """Prefix every line start in a chunk; lines may span chunks."""
    pieces = []
    for piece in text.splitlines(keepends=True):
        if at_line_start:
            pieces.append(prefix)
        pieces.append(piece)
        at_line_start = piece.endswith(("\n", "\r"))
    return "".join(pieces), at_line_start


def parse_metrics(output: str) -> PhaseMetrics:
    """Extract phase metrics from captured child output.

    Args:
        output: Combined stdout and stderr text.

    Returns:
        PhaseMetrics with every count found; missing counts stay 0.
    """
    values = {}
    for name, pattern in METRIC_PATTERNS.items():
        match = pattern.search(output)
        if match:
            values[name] = int(match.group(1))

    for line in output.splitlines():
        line = line.strip()
        if line.startswith(STRUCTURED_RESULT_PREFIX + " "):
            values.update(_parse_structured_result(line))

    return PhaseMetrics(**values)


class PhaseRunner:
    """Runs site-scoped phases as child processes.

    Every invocation builds its own environment from the ambient one, the
    site's bundle and the phase extras; ``os.environ`` is never modified.

    Example:
        runner = PhaseRunner(timeout_seconds=None)
        result = await runner.run(site, Phase.RSS_RETRIEVAL, ["pnpm", "run", "rss"])
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        cancel_grace_seconds: float = 10,
        prefix_output: bool = False,
        storage_mode: str = STORAGE_MODE_LOCAL,
        stdout=None,
        stderr=None,
    ):
        """Initialize the runner.

        Args:
            timeout_seconds: Default per-phase timeout, None for unbounded.
            cancel_grace_seconds: Time a child gets to exit on its own after
                the run is cancelled, before it is terminated.
            prefix_output: Prefix echoed lines with ``[site_id]``.
            storage_mode: FILE_STORAGE_ENV value passed to children.
            stdout: Stream echoing child stdout, defaults to sys.stdout.
            stderr: Stream echoing child stderr, defaults to sys.stderr.
        """
        self.timeout_seconds = timeout_seconds
        self.cancel_grace_seconds = cancel_grace_seconds
        self.prefix_output = prefix_output
        self.storage_mode = storage_mode
        self._stdout = stdout
        self._stderr = stderr

    def build_env(self, site: Site, extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Build the environment for one child process."""
        env = dict(os.environ)
        env.update(site.env)
        env["SITE_ID"] = site.id
        env["FILE_STORAGE_ENV"] = self.storage_mode
        if extra_env:
            env.update({key: str(value) for key, value in extra_env.items()})
        return env

    async def run(
        self,
        site: Site,
        phase: Phase,
        command: Sequence[str],
        extra_env: Optional[Dict[str, str]] = None,
        timeout_seconds=_DEFAULT,
    ) -> PhaseResult:
        """Run one phase for one site.

        Returns a failed PhaseResult on spawn failure, non-zero exit,
        timeout or broken output handling. Cancellation stops the child and
        propagates.
        """
        if timeout_seconds is _DEFAULT:
            timeout_seconds = self.timeout_seconds

        start = time.monotonic()
        env = self.build_env(site, extra_env)
        logger.info(f"[{site.id}] Running {phase.value}: {shlex.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            error = PhaseExecutionError(site.id, phase.value, str(e))
            logger.error(str(error))
            return self._result(site, phase, start, success=False, error_message=str(e))

        captured_stdout: List[str] = []
        captured_stderr: List[str] = []
        prefix = f"[{site.id}] " if self.prefix_output else ""
        communicate = asyncio.gather(
            self._pump(process.stdout, self._stdout or sys.stdout, captured_stdout, prefix),
            self._pump(process.stderr, self._stderr or sys.stderr, captured_stderr, prefix),
            process.wait(),
        )

        try:
            await asyncio.wait_for(communicate, timeout=timeout_seconds)
        except asyncio.TimeoutError:
            await self._stop(process, grace_seconds=0)
            message = f"Timed out after {timeout_seconds}s"
            logger.error(str(PhaseExecutionError(site.id, phase.value, message)))
            return self._result(site, phase, start, success=False, error_message=message)
        except asyncio.CancelledError:
            logger.warning(f"[{site.id}] {phase.value} cancelled, stopping child process")
            await self._stop(process, grace_seconds=self.cancel_grace_seconds)
            raise
        except Exception as e:
            await self._stop(process, grace_seconds=0)
            message = f"Output handling failed: {e}"
            logger.error(str(PhaseExecutionError(site.id, phase.value, message)))
            return self._result(site, phase, start, success=False, error_message=message)

        if process.returncode != 0:
            message = f"Exit code: {process.returncode}"
            logger.error(str(PhaseExecutionError(site.id, phase.value, message)))
            return self._result(site, phase, start, success=False, error_message=message)

        metrics = parse_metrics(
            "".join(captured_stdout) + "\n" + "".join(captured_stderr)
        )
        result = self._result(site, phase, start, success=True, metrics=metrics)
        logger.info(
            f"[{site.id}] {phase.value} completed in {result.duration_ms / 1000:.1f}s"
        )
        return result

    @staticmethod
    def _result(site, phase, start, **kwargs) -> PhaseResult:
        return PhaseResult(
            site_id=site.id,
            phase=phase,
            duration_ms=int((time.monotonic() - start) * 1000),
            **kwargs,
        )

    @staticmethod
    async def _pump(stream, sink, captured: List[str], prefix: str) -> None:
        """Copy a child stream to a sink as chunks arrive while capturing it.

        Output is not split on newlines before echoing, so ``\\r`` progress
        bars show up live and arbitrarily long lines are fine.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        at_line_start = True
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                captured.append(text)
                if prefix:
                    text, at_line_start = _prefix_lines(text, prefix, at_line_start)
                sink.write(text)
                sink.flush()
            if not chunk:
                break

    @staticmethod
    async def _stop(process, grace_seconds: float) -> None:
        """Let a child exit on its own, then terminate, then kill it."""
        if process.returncode is not None:
            return
        if grace_seconds > 0:
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_seconds)
                return
            except asyncio.TimeoutError:
                pass
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=_TERMINATE_WAIT_SECONDS)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning(f"Child process {process.pid} did not terminate, killing it")
            process.kill()
            await process.wait()
