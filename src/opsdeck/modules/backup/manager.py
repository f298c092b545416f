"""
Scheduled export and retention manager for virtualized instances.

Each pass exports every selected instance to a timestamped archive and then
prunes archives that satisfy neither retention policy. Failures are contained
per instance and per file: a failed export, a missing directory or an
undeletable archive is logged and recorded in the `BackupReport`, and the pass
carries on with the remaining work.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ...core.contracts import (
    BackupReport,
    BaseModule,
    HealthStatus,
    InstanceBackupResult,
    ModuleConfig,
)
from ...core.process import Runner
from .catalog import (
    DEFAULT_EXTENSION,
    DEFAULT_TIMESTAMP_FORMAT,
    archive_path_for,
    safe_instance_name,
    scan_all,
    scan_instance,
)
from .retention import RetentionPolicy, select_by_instance
from .virtualization import (
    DEFAULT_EXPORT_COMMAND,
    DEFAULT_EXPORT_TIMEOUT,
    DEFAULT_LIST_COMMAND,
    DEFAULT_LIST_TIMEOUT,
    VirtualizationCli,
    VirtualizationError,
)

logger = logging.getLogger(__name__)


class BackupManager(BaseModule):
    """Export instances and enforce archive retention, once or on an interval."""

    name = "modules.backup.manager"

    def __init__(
        self,
        *,
        clock: Callable[[], dt.datetime] | None = None,
        runner: Runner | None = None,
    ) -> None:
        super().__init__()
        self._root = Path("backups")
        self._instances: list[str] = []
        self._excluded: set[str] = set()
        self._policy = RetentionPolicy()
        self._export_enabled = True
        self._prune_enabled = True
        self._dry_run = False
        self._interval = 0.0
        self._timestamp_format = DEFAULT_TIMESTAMP_FORMAT
        self._extension = DEFAULT_EXTENSION
        self._clock = clock or (lambda: dt.datetime.now(tz=dt.UTC))
        self._runner = runner
        self._cli = VirtualizationCli(runner=runner)
        self._stop_event = asyncio.Event()
        self._last_report: BackupReport | None = None

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._root = Path(options.get("root_dir", self._root)).expanduser()
        self._instances = [str(name) for name in options.get("instances") or []]
        self._excluded = {str(name) for name in options.get("excluded_instances") or []}
        self._policy = RetentionPolicy.build(
            options.get("keep_count", self._policy.keep_count),
            options.get("keep_age_days", self._policy.keep_age_days),
        )
        self._export_enabled = bool(options.get("export_enabled", self._export_enabled))
        self._prune_enabled = bool(options.get("prune_enabled", self._prune_enabled))
        self._dry_run = bool(options.get("dry_run", self._dry_run))
        self._interval = float(options.get("interval_seconds", self._interval))
        self._timestamp_format = options.get("timestamp_format", self._timestamp_format)
        self._extension = options.get("extension", self._extension)
        self._cli = VirtualizationCli(
            list_command=options.get("list_command") or DEFAULT_LIST_COMMAND,
            export_command=options.get("export_command") or DEFAULT_EXPORT_COMMAND,
            list_timeout=options.get("list_timeout_seconds", DEFAULT_LIST_TIMEOUT),
            export_timeout=options.get("export_timeout_seconds", DEFAULT_EXPORT_TIMEOUT),
            runner=self._runner,
        )

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def scheduled(self) -> bool:
        return self._interval > 0

    async def run(self) -> BackupReport:
        if self._interval > 0:
            return await self.run_forever()
        return await self.run_once()

    async def stop(self) -> None:
        self._stop_event.set()

    async def health(self) -> HealthStatus:
        report = self._last_report
        status = "healthy" if report and report.ok else "degraded"
        details: dict[str, Any] = {
            "root": str(self._root),
            "archives": len(scan_all(self._root, extension=self._extension)),
        }
        if report:
            details.update(
                {
                    "started_at": report.started_at.isoformat(),
                    "instances": len(report.instances),
                    "files_deleted": report.files_deleted,
                    "errors": list(report.errors),
                }
            )
        return HealthStatus(status=status, details=details)

    async def run_forever(self) -> BackupReport:
        """Repeat backup passes every ``interval_seconds`` until `stop` is called."""

        self._stop_event.clear()
        logger.info("BackupManager scheduled every %.0fs for %s", self._interval, self._root)
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Backup cycle failed.")
            await self._wait_with_cancel(self._interval)
        logger.info("BackupManager stopped.")
        if self._last_report is None:
            return BackupReport(root=str(self._root), started_at=self._clock())
        return self._last_report

    async def _wait_with_cancel(self, interval: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        except TimeoutError:
            return

    async def run_once(self) -> BackupReport:
        started = self._clock()
        if not self._dry_run:
            self._root.mkdir(parents=True, exist_ok=True)
        errors: list[str] = []
        results: dict[str, InstanceBackupResult] = {}

        instances = await self._resolve_instances(errors)
        if self._export_enabled:
            for instance in instances:
                results[instance] = await self._export_instance(instance, started)

        if self._prune_enabled:
            for instance in self._prune_targets(instances):
                result = results.setdefault(instance, InstanceBackupResult(instance=instance))
                self._prune_instance(instance, started, result)

        report = BackupReport(
            root=str(self._root),
            started_at=started,
            dry_run=self._dry_run,
            instances=list(results.values()),
            errors=errors,
        )
        self._last_report = report
        logger.info(
            "Backup pass finished: %d instance(s), %d archive(s) deleted, %s",
            len(report.instances),
            report.files_deleted,
            "ok" if report.ok else "with errors",
        )
        return report

    async def _resolve_instances(self, errors: list[str]) -> list[str]:
        candidates = list(self._instances)
        if not candidates and self._export_enabled:
            try:
                candidates = await self._cli.list_instances()
            except VirtualizationError as exc:
                logger.error("Unable to enumerate instances: %s", exc)
                errors.append(str(exc))
                candidates = []
        selected = [name for name in candidates if name not in self._excluded]
        skipped = sorted(set(candidates) & self._excluded)
        if skipped:
            logger.info("Skipping excluded instance(s): %s", ", ".join(skipped))
        return selected

    def _prune_targets(self, instances: list[str]) -> list[str]:
        """Instances whose archives should be pruned this pass."""

        targets = list(instances)
        if self._instances or not self._root.is_dir():
            return targets
        # Discovered runs also prune directories of instances no longer listed.
        known = {safe_instance_name(name) for name in targets}
        for directory in sorted(self._root.iterdir()):
            if not directory.is_dir() or directory.name in known:
                continue
            if directory.name in self._excluded:
                continue
            targets.append(directory.name)
        return targets

    async def _export_instance(self, instance: str, now: dt.datetime) -> InstanceBackupResult:
        result = InstanceBackupResult(instance=instance)
        try:
            path = archive_path_for(
                self._root,
                instance,
                now,
                timestamp_format=self._timestamp_format,
                extension=self._extension,
            )
        except ValueError as exc:
            logger.error("Cannot back up %s: %s", instance, exc)
            result.errors.append(str(exc))
            return result

        if self._dry_run:
            logger.info("[dry-run] Would export %s to %s", instance, path)
            result.archive_path = str(path)
            return result
        try:
            await self._cli.export(instance, path)
        except (VirtualizationError, OSError) as exc:
            logger.error("Backup of %s failed: %s", instance, exc)
            result.errors.append(str(exc))
            return result
        result.exported = True
        result.archive_path = str(path)
        return result

    def _prune_instance(
        self, instance: str, now: dt.datetime, result: InstanceBackupResult
    ) -> None:
        try:
            artifacts = scan_instance(self._root, instance, extension=self._extension)
        except (OSError, ValueError) as exc:
            logger.error("Cannot scan archives for %s: %s", instance, exc)
            result.errors.append(str(exc))
            return
        if not artifacts:
            return

        decision = select_by_instance(artifacts, now, self._policy)[instance]
        result.kept.extend(str(artifact.path) for artifact in decision.keep)
        for artifact in decision.obsolete:
            if self._dry_run:
                logger.info("[dry-run] Would delete obsolete archive %s", artifact.path)
                continue
            try:
                artifact.path.unlink()
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", artifact.path, exc)
                result.failed_deletions.append(str(artifact.path))
                continue
            logger.info("Deleted obsolete archive %s", artifact.path)
            result.deleted.append(str(artifact.path))


__all__ = ["BackupManager"]
