"""Argument-vector subprocess invocation for external document tools."""
from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from ..errors import ToolExecutionError, sanitize_message


logger = logging.getLogger(__name__)

_TERMINATE_GRACE_SECONDS = 2.0
_SECRET_FLAGS = ("--user-password=", "--owner-password=", "--password=")


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class CommandRunner:
    """Run external binaries without a shell.

    ``binaries`` maps a logical name (``qpdf``, ``gs``...) to an absolute
    path; names not listed are looked up on PATH.
    """

    def __init__(self, binaries: Mapping[str, str] | None = None) -> None:
        self._binaries = dict(binaries or {})

    def resolve(self, name: str) -> str:
        configured = self._binaries.get(name)
        if configured:
            if Path(configured).is_file():
                return configured
            raise ToolExecutionError(f"Required tool '{name}' is not installed.")
        found = shutil.which(name)
        if not found:
            raise ToolExecutionError(f"Required tool '{name}' is not installed.")
        return found

    async def run(
        self,
        binary: str,
        args: Sequence[str],
        *,
        cwd: Path,
        timeout: float,
    ) -> CommandResult:
        """Run ``binary`` with ``args`` and return its output.

        Non-zero exit and timeout raise ToolExecutionError. The child is
        killed if this coroutine is cancelled.
        """
        executable = self.resolve(binary)
        argv = [executable, *[str(a) for a in args]]
        logger.debug("exec %r (cwd=%s)", _redact(argv), cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ToolExecutionError(f"Required tool '{binary}' is not installed.") from exc
        except OSError as exc:
            raise ToolExecutionError(f"Could not start '{binary}'.") from exc

        try:
            stdout_b, stderr_b = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate(process)
            raise ToolExecutionError(f"'{binary}' exceeded the time limit ({int(timeout)}s).") from None
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace")
        if process.returncode != 0:
            logger.warning("'%s' exited with %s: %s", binary, process.returncode, stderr.strip()[:500])
            raise ToolExecutionError(
                _failure_message(binary, process.returncode, stdout, stderr, roots=_path_args(argv, cwd))
            )
        return CommandResult(returncode=process.returncode or 0, stdout=stdout, stderr=stderr)


def _redact(argv: Sequence[str]) -> list[str]:
    return [
        next((flag + "***" for flag in _SECRET_FLAGS if arg.startswith(flag)), arg)
        for arg in argv
    ]


def _path_args(argv: Sequence[str], cwd: Path) -> list[str]:
    """Paths handed to the child, which it may echo back in its diagnostics."""
    paths = [str(cwd)]
    for arg in argv[1:]:
        value = arg.split("=", 1)[-1]
        if "/" in value or "\\" in value:
            paths.append(value)
    return paths


def _failure_message(
    binary: str,
    returncode: int | None,
    stdout: str,
    stderr: str,
    *,
    roots: Sequence[str] = (),
) -> str:
    lowered = f"{stderr}\n{stdout}".lower()
    if "password" in lowered and ("invalid" in lowered or "incorrect" in lowered):
        return "The document is password protected."
    if "no such file" in lowered or "not found" in lowered:
        return "Input file not found or required tool missing."
    for text in (stderr, stdout):
        for line in text.splitlines():
            if "error" in line.lower():
                return sanitize_message(f"Processing error: {line.strip()}", roots=roots)
    detail = sanitize_message(stderr, roots=roots)
    if detail:
        return sanitize_message(f"'{binary}' failed (exit code {returncode}): {detail}", roots=roots)
    return f"'{binary}' failed (exit code {returncode})."


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
