"""
Adapter around the virtualization command-line tool.

The defaults target WSL (``wsl --list --quiet`` / ``wsl --export``) but any CLI
that can list instances and export one to a file works by overriding the
command templates. ``{instance}`` and ``{path}`` placeholders are substituted
per export.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from ...core.contracts import CommandResult
from ...core.process import Runner, run_command

logger = logging.getLogger(__name__)

DEFAULT_LIST_COMMAND: tuple[str, ...] = ("wsl", "--list", "--quiet")
DEFAULT_EXPORT_COMMAND: tuple[str, ...] = ("wsl", "--export", "{instance}", "{path}")
DEFAULT_LIST_TIMEOUT = 60.0
DEFAULT_EXPORT_TIMEOUT = 3 * 3600.0


class VirtualizationError(RuntimeError):
    """Raised when the virtualization CLI cannot enumerate or export instances."""


def parse_instance_list(output: str) -> list[str]:
    """Turn the list command output into instance names, dropping blanks and duplicates."""

    names: list[str] = []
    for line in output.splitlines():
        name = line.strip().strip("\ufeff")
        if name and name not in names:
            names.append(name)
    return names


class VirtualizationCli:
    """Executes list/export commands for virtualized instances."""

    def __init__(
        self,
        *,
        list_command: Sequence[str] = DEFAULT_LIST_COMMAND,
        export_command: Sequence[str] = DEFAULT_EXPORT_COMMAND,
        list_timeout: float | None = DEFAULT_LIST_TIMEOUT,
        export_timeout: float | None = DEFAULT_EXPORT_TIMEOUT,
        runner: Runner | None = None,
    ) -> None:
        if not list_command:
            raise ValueError("list_command must not be empty")
        if not export_command:
            raise ValueError("export_command must not be empty")
        self._list_command = tuple(list_command)
        self._export_command = tuple(export_command)
        self._list_timeout = list_timeout
        self._export_timeout = export_timeout
        self._runner = runner or run_command

    def export_args(self, instance: str, path: Path) -> list[str]:
        return [part.format(instance=instance, path=str(path)) for part in self._export_command]

    async def list_instances(self) -> list[str]:
        result = await self._runner(self._list_command, timeout=self._list_timeout)
        if not result.ok:
            raise VirtualizationError(
                f"Listing instances failed ({_describe(result)}): {result.stderr.strip()}"
            )
        return parse_instance_list(result.stdout)

    async def export(self, instance: str, path: Path) -> CommandResult:
        """
        Export ``instance`` into ``path``.

        Raises VirtualizationError when the command fails or leaves no archive;
        any partial archive is removed first.
        """

        path.parent.mkdir(parents=True, exist_ok=True)
        args = self.export_args(instance, path)
        logger.info("Exporting %s to %s", instance, path)
        result = await self._runner(args, timeout=self._export_timeout)
        if not result.ok:
            _discard_partial(path)
            raise VirtualizationError(
                f"Export of {instance} failed ({_describe(result)}): {result.stderr.strip()}"
            )
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise VirtualizationError(
                f"Export of {instance} reported success but {path} is missing"
            ) from exc
        if size == 0:
            _discard_partial(path)
            raise VirtualizationError(f"Export of {instance} produced an empty archive")
        logger.info("Exported %s (%.1f MiB)", path.name, size / (1024**2))
        return result


def _describe(result: CommandResult) -> str:
    if result.timed_out:
        return "timed out"
    return f"exit status {result.returncode}"


def _discard_partial(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove partial archive %s: %s", path, exc)


__all__ = [
    "DEFAULT_EXPORT_COMMAND",
    "DEFAULT_LIST_COMMAND",
    "VirtualizationCli",
    "VirtualizationError",
    "parse_instance_list",
]
