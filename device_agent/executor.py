"""Shell execution of extracted command scripts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants
from .config import CommandConfig
from .extractor import ExtractedCommand

LOGGER = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_READ_CHUNK_BYTES = 4096


@dataclass(slots=True)
class ExecutionResult:
    stdout: bytes = b""
    stderr: str = ""
    exit_code: int = 0
    executed: bool = False
    timed_out: bool = False


class FallbackContentProvider:
    """Reads substitute help text from an optional examples file."""

    def __init__(self, path: Optional[Path]) -> None:
        self.path = path

    def read(self, limit: int) -> Optional[bytes]:
        if self.path is None:
            return None
        try:
            with self.path.open("rb") as stream:
                return stream.read(max(0, limit))
        except OSError as exc:
            LOGGER.debug("Fallback content unavailable at %s: %s", self.path, exc)
            return None


def normalise_exit_code(returncode: Optional[int]) -> int:
    """Map an asyncio return code onto the 0-255 shell convention."""

    if returncode is None:
        return 1
    if returncode < 0:
        return min(255, 128 + abs(returncode))
    return returncode & 0xFF


class CommandExecutor:
    """Runs one script at a time through the configured shell."""

    def __init__(
        self,
        config: CommandConfig,
        *,
        fallback: Optional[FallbackContentProvider] = None,
    ) -> None:
        self._config = config
        self._fallback = fallback or FallbackContentProvider(config.examples_path)

    async def execute(self, command: ExtractedCommand) -> ExecutionResult:
        if not command.has_script:
            return self._empty_script_result()

        try:
            proc = await asyncio.create_subprocess_shell(
                command.script,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                executable=self._config.shell,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to start script %r: %s", command.script, exc)
            return ExecutionResult(
                stderr=constants.START_FAILURE_MESSAGE,
                exit_code=1,
                executed=False,
            )

        LOGGER.info("Started script (pid=%s): %s", proc.pid, command.script)

        buffer = bytearray()
        timeout = self._config.timeout_seconds
        timed_out = False
        try:
            if timeout > 0:
                await asyncio.wait_for(self._collect(proc, buffer), timeout)
            else:
                await self._collect(proc, buffer)
        except asyncio.TimeoutError:
            timed_out = True
            LOGGER.warning(
                "Script (pid=%s) exceeded %.1fs; terminating", proc.pid, timeout
            )
            await self._terminate(proc)
        except BaseException:
            await self._terminate(proc)
            raise

        stdout = bytes(buffer)
        if timed_out:
            return ExecutionResult(
                stdout=stdout,
                stderr=f"Script timed out after {timeout:g}s",
                exit_code=TIMEOUT_EXIT_CODE,
                executed=True,
                timed_out=True,
            )

        exit_code = normalise_exit_code(proc.returncode)
        LOGGER.info(
            "Script (pid=%s) exited with %d (%d bytes captured)",
            proc.pid,
            exit_code,
            len(stdout),
        )

        if not stdout and self._config.fallback_on_empty_output:
            content = self._fallback.read(self._config.output_limit_bytes)
            if content is None:
                content = constants.EMPTY_OUTPUT_MESSAGE.encode("utf-8")
            stdout = content

        return ExecutionResult(stdout=stdout, exit_code=exit_code, executed=True)

    def _empty_script_result(self) -> ExecutionResult:
        stdout = b""
        if self._config.fallback_on_empty_script:
            content = self._fallback.read(self._config.output_limit_bytes)
            if content is None:
                content = constants.MISSING_EXAMPLES_MESSAGE.encode("utf-8")
            stdout = content
        return ExecutionResult(
            stdout=stdout,
            stderr=constants.EMPTY_SCRIPT_MESSAGE,
            exit_code=1,
            executed=False,
        )

    async def _collect(
        self, proc: asyncio.subprocess.Process, buffer: bytearray
    ) -> None:
        limit = self._config.output_limit_bytes
        reader = proc.stdout
        if reader is not None:
            while True:
                chunk = await reader.read(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                remaining = limit - len(buffer)
                if remaining > 0:
                    buffer.extend(chunk[:remaining])
                # Output past the bound is drained so the child never stalls
                # on a full pipe.
        await proc.wait()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(proc.pid, signal.SIGKILL)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        await proc.wait()
