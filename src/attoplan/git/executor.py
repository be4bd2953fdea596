"""Async git subprocess execution.

All git access in attoplan funnels through :func:`run_git`, which never
blocks the event loop and never raises for a non-zero exit. Callers that
need a command to succeed use :func:`run_git_or_raise`.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from attoplan.errors import GitCommandError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0

_git_binary = "git"
_default_timeout = DEFAULT_TIMEOUT


def configure_git(*, binary: str = "git", timeout: float = DEFAULT_TIMEOUT) -> None:
    """Set the git executable and default timeout for every subsequent call."""
    global _git_binary, _default_timeout
    _git_binary = binary
    _default_timeout = timeout


@dataclass(slots=True)
class CommandResult:
    success: bool
    stdout: str
    stderr: str
    exit_code: int | None
    stdout_bytes: bytes = b""


async def run_git(
    args: Sequence[str],
    *,
    cwd: str | Path,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    input_data: bytes | None = None,
) -> CommandResult:
    """Run ``git <args>`` in *cwd* and capture its output.

    *env* entries are layered over the current environment. On timeout
    the process is killed and a failed result with ``exit_code=None`` is
    returned.
    """
    if timeout is None:
        timeout = _default_timeout
    cmd = [_git_binary, *args]
    proc_env = None
    if env:
        proc_env = {**os.environ, **env}
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            env=proc_env,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.debug("git spawn failed: %s", exc)
        return CommandResult(success=False, stdout="", stderr=str(exc), exit_code=None)

    try:
        out, err = await asyncio.wait_for(proc.communicate(input_data), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(
            success=False,
            stdout="",
            stderr=f"Command timed out after {int(timeout * 1000)}ms",
            exit_code=None,
        )

    return CommandResult(
        success=proc.returncode == 0,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
        exit_code=proc.returncode,
        stdout_bytes=out,
    )


async def run_git_or_raise(
    args: Sequence[str],
    *,
    cwd: str | Path,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    input_data: bytes | None = None,
    error_prefix: str = "Git command failed",
) -> str:
    """Run git and return trimmed stdout, raising :class:`GitCommandError` on failure."""
    result = await run_git(args, cwd=cwd, timeout=timeout, env=env, input_data=input_data)
    if not result.success:
        raise GitCommandError(list(args), result, prefix=error_prefix)
    return result.stdout.strip()


async def run_git_or_none(
    args: Sequence[str],
    *,
    cwd: str | Path,
    timeout: float | None = None,
) -> str | None:
    """Run git and return trimmed stdout, or ``None`` on any failure."""
    result = await run_git(args, cwd=cwd, timeout=timeout)
    if not result.success:
        return None
    return result.stdout.strip()
