"""
Repeat a fixed command sequence N times, stopping at the first failure.

Useful for shaking out flaky tests: every command is evaluated through the
shell in order, and the first non-zero exit status aborts the whole loop with
the offending run number and command recorded in the `RepeatReport`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ...core.contracts import BaseModule, HealthStatus, ModuleConfig, RepeatReport
from ...core.process import Runner, run_shell

logger = logging.getLogger(__name__)

DEFAULT_MAX_RUNS = 10
DEFAULT_COMMANDS: tuple[str, ...] = ("echo 'command 1'", "echo 'command 2'")


class RepeatRunner(BaseModule):
    """Run a shell command sequence repeatedly."""

    name = "modules.loop.repeat_runner"

    def __init__(self, *, runner: Runner | None = None) -> None:
        super().__init__()
        self._max_runs = DEFAULT_MAX_RUNS
        self._commands: list[str] = list(DEFAULT_COMMANDS)
        self._shell: str | None = None
        self._timeout: float | None = None
        self._cwd: str | None = None
        self._env: Mapping[str, str] = {}
        self._runner = runner or run_shell
        self._last_report: RepeatReport | None = None

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        max_runs = int(options.get("max_runs", self._max_runs))
        if max_runs < 0:
            raise ValueError(f"max_runs must be non-negative, got {max_runs}")
        self._max_runs = max_runs
        commands = options.get("commands")
        if commands is not None:
            self._commands = [str(command) for command in commands if str(command).strip()]
        self._shell = options.get("shell") or None
        timeout = options.get("timeout_seconds")
        self._timeout = float(timeout) if timeout else None
        self._cwd = options.get("cwd") or None
        self._env = {str(key): str(value) for key, value in (options.get("env") or {}).items()}

    async def run(self) -> RepeatReport:
        if not self._commands:
            logger.warning("No commands configured; nothing to repeat.")
        for run in range(1, self._max_runs + 1):
            logger.info("==== Run %d of %d ====", run, self._max_runs)
            for command in self._commands:
                logger.info("Executing command: %s", command)
                result = await self._runner(
                    command,
                    shell=self._shell,
                    cwd=self._cwd,
                    env=self._env,
                    timeout=self._timeout,
                )
                if result.ok:
                    continue
                reason = "timed out" if result.timed_out else f"exit status {result.returncode}"
                logger.error("Run %d failed (%s), command: %s", run, reason, command)
                return self._finish(
                    RepeatReport(
                        runs_requested=self._max_runs,
                        runs_completed=run - 1,
                        success=False,
                        failed_run=run,
                        failed_command=command,
                        returncode=result.returncode,
                    )
                )
        logger.info("All %d runs succeeded.", self._max_runs)
        return self._finish(
            RepeatReport(runs_requested=self._max_runs, runs_completed=self._max_runs)
        )

    async def health(self) -> HealthStatus:
        report = self._last_report
        if report is None:
            return await super().health()
        details: dict[str, Any] = report.model_dump(exclude={"schema_version"})
        return HealthStatus(status="healthy" if report.success else "error", details=details)

    def _finish(self, report: RepeatReport) -> RepeatReport:
        self._last_report = report
        return report


__all__ = ["DEFAULT_COMMANDS", "DEFAULT_MAX_RUNS", "RepeatRunner"]
