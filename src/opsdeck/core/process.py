"""
Thin asyncio wrappers around external process execution.

All tools shell out to other programs (a shell, a virtualization CLI, CMake).
These helpers normalise the outcome into a `CommandResult` so callers only have
to inspect exit status, never handle spawn errors themselves.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path

from .contracts import CommandResult

logger = logging.getLogger(__name__)

# Exit status used by POSIX shells when a command cannot be found.
COMMAND_NOT_FOUND = 127

Runner = Callable[..., Awaitable[CommandResult]]


def decode_output(raw: bytes | None) -> str:
    """
    Decode process output that may be UTF-8 or UTF-16LE.

    Some Windows tools (notably ``wsl.exe``) write UTF-16LE to pipes, which
    shows up as NUL bytes interleaved with ASCII text.
    """

    if not raw:
        return ""
    if raw.startswith(b"\xff\xfe") or (len(raw) > 1 and raw[1:2] == b"\x00"):
        text = raw.decode("utf-16-le", errors="replace")
    else:
        text = raw.decode("utf-8", errors="replace")
    return text.lstrip("\ufeff").replace("\x00", "")


def merged_env(overrides: Mapping[str, str] | None) -> dict[str, str] | None:
    """Return a child environment with ``overrides`` applied, or None to inherit."""

    if not overrides:
        return None
    env = dict(os.environ)
    env.update({key: str(value) for key, value in overrides.items()})
    return env


async def _collect(
    process: asyncio.subprocess.Process,
    args: tuple[str, ...],
    started: float,
    timeout: float | None,
) -> CommandResult:
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.error("Command timed out after %ss: %s", timeout, " ".join(args))
        return CommandResult(
            args=args,
            returncode=process.returncode,
            duration_seconds=time.monotonic() - started,
            timed_out=True,
        )
    return CommandResult(
        args=args,
        returncode=process.returncode,
        stdout=decode_output(stdout),
        stderr=decode_output(stderr),
        duration_seconds=time.monotonic() - started,
    )


async def run_command(
    args: Sequence[str | os.PathLike[str]],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    capture: bool = True,
) -> CommandResult:
    """
    Execute ``args`` without a shell and wait for it to finish.

    When ``capture`` is false the child inherits stdout/stderr so long builds
    stream straight to the terminal.
    """

    argv = tuple(str(arg) for arg in args)
    if not argv:
        raise ValueError("Cannot run an empty command")
    pipe = asyncio.subprocess.PIPE if capture else None
    started = time.monotonic()
    logger.debug("Executing %s", " ".join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            env=merged_env(env),
            stdout=pipe,
            stderr=pipe,
        )
    except FileNotFoundError:
        logger.error("Executable not found: %s", argv[0])
        return CommandResult(
            args=argv,
            returncode=COMMAND_NOT_FOUND,
            stderr=f"{argv[0]}: command not found",
        )
    except PermissionError as exc:
        logger.error("Cannot execute %s: %s", argv[0], exc)
        return CommandResult(args=argv, returncode=COMMAND_NOT_FOUND - 1, stderr=str(exc))
    return await _collect(process, argv, started, timeout)


async def run_shell(
    command: str,
    *,
    shell: str | None = None,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    capture: bool = False,
) -> CommandResult:
    """
    Evaluate ``command`` through a shell.

    ``shell`` selects an explicit interpreter (e.g. ``/bin/bash``); otherwise
    the platform default shell is used.
    """

    if shell:
        return await run_command(
            [shell, "-c", command], cwd=cwd, env=env, timeout=timeout, capture=capture
        )
    pipe = asyncio.subprocess.PIPE if capture else None
    started = time.monotonic()
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd) if cwd is not None else None,
        env=merged_env(env),
        stdout=pipe,
        stderr=pipe,
    )
    return await _collect(process, (command,), started, timeout)


__all__ = [
    "COMMAND_NOT_FOUND",
    "Runner",
    "decode_output",
    "merged_env",
    "run_command",
    "run_shell",
]
