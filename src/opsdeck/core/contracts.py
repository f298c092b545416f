"""
Contracts and payload schemas shared by the opsdeck tools.

Every tool is a `BaseModule` configured from a `ModuleConfig` and produces a
typed report when it runs. Keeping the payloads here lets the CLI and the tests
inspect results without knowing which tool produced them.
"""

from __future__ import annotations

import abc
import datetime as dt
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BasePayload(BaseModel):
    """Base class for all tool reports."""

    model_config = ConfigDict(extra="allow", frozen=True)

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )


class BackupArtifact(BaseModel):
    """One completed backup archive belonging to a single instance."""

    model_config = ConfigDict(frozen=True)

    instance: str = Field(description="Owning instance identifier.")
    name: str = Field(description="Archive file name.")
    path: Path = Field(description="Location of the archive; unique per instance.")
    last_modified: dt.datetime = Field(description="Write time in UTC.")


class RetentionDecision(BaseModel):
    """Partition of an instance group into artifacts to keep and to delete."""

    model_config = ConfigDict(frozen=True)

    keep: tuple[BackupArtifact, ...] = Field(default_factory=tuple)
    obsolete: tuple[BackupArtifact, ...] = Field(default_factory=tuple)

    @property
    def keep_paths(self) -> set[Path]:
        return {artifact.path for artifact in self.keep}

    @property
    def obsolete_paths(self) -> set[Path]:
        return {artifact.path for artifact in self.obsolete}


class CommandResult(BasePayload):
    """Outcome of a single external process invocation."""

    args: tuple[str, ...] = Field(description="Command line as executed.")
    returncode: int | None = Field(
        default=None, description="Exit status; None when the process never exited."
    )
    stdout: str = Field(default="")
    stderr: str = Field(default="")
    duration_seconds: float = Field(default=0.0, ge=0.0)
    timed_out: bool = Field(default=False)

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def display(self) -> str:
        return " ".join(self.args)


class RepeatReport(BasePayload):
    """Summary emitted by the repeat runner."""

    runs_requested: int = Field(ge=0)
    runs_completed: int = Field(default=0, ge=0)
    success: bool = Field(default=True)
    failed_run: int | None = Field(default=None, description="1-based run that failed.")
    failed_command: str | None = Field(default=None)
    returncode: int | None = Field(default=None)


class InstanceBackupResult(BasePayload):
    """Per-instance outcome of a backup pass; filled in while the pass runs."""

    model_config = ConfigDict(extra="allow", frozen=False)

    instance: str
    exported: bool = Field(default=False)
    archive_path: str | None = Field(default=None)
    kept: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    failed_deletions: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.failed_deletions


class BackupReport(BasePayload):
    """Summary of a full export + prune pass across all instances."""

    root: str = Field(description="Backup root directory.")
    started_at: dt.datetime
    dry_run: bool = Field(default=False)
    instances: list[InstanceBackupResult] = Field(default_factory=list)
    errors: list[str] = Field(
        default_factory=list, description="Pass-level problems such as discovery failures."
    )

    @property
    def ok(self) -> bool:
        return not self.errors and all(result.ok for result in self.instances)

    @property
    def files_deleted(self) -> int:
        return sum(len(result.deleted) for result in self.instances)

    def result_for(self, instance: str) -> InstanceBackupResult:
        for result in self.instances:
            if result.instance == instance:
                return result
        raise KeyError(f"No backup result recorded for instance '{instance}'")


class StageReport(BasePayload):
    """Outcome of one bootstrap stage."""

    stage: int = Field(ge=1, le=2)
    build_dir: str
    install_dir: str | None = Field(default=None)
    installed: bool = Field(default=False)


class BootstrapReport(BasePayload):
    """Summary of a bootstrap run."""

    stages: list[StageReport] = Field(default_factory=list)

    @property
    def completed_stages(self) -> list[int]:
        return [stage.stage for stage in self.stages]


class HealthStatus(BaseModel):
    """Structured health report for modules."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


class ModuleConfig(BaseModel):
    """Baseline configuration contract applied to all modules."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = Field(default=True)
    options: dict[str, Any] = Field(
        default_factory=dict, description="Arbitrary module configuration."
    )


class BaseModule(abc.ABC):
    """
    Abstract base class for all opsdeck tools.

    Tools are configured once from a `ModuleConfig` and then executed with
    `run`, which returns a typed report.
    """

    name: str

    def __init__(self) -> None:
        self._configured = False
        self._config = ModuleConfig()

    async def configure(self, config: ModuleConfig) -> None:
        """Apply the provided configuration prior to running."""
        self._config = config
        self._configured = True

    @abc.abstractmethod
    async def run(self) -> BasePayload:
        """Execute the tool and return its report."""

    async def stop(self) -> None:
        """
        Optional hook to interrupt long-running tools.

        Base implementation is a no-op so subclasses can override only
        when needed.
        """
        return None

    async def health(self) -> HealthStatus:
        """Return a basic health status; modules can override for richer diagnostics."""
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(status=status, details={"configured": self._configured})


__all__ = [
    "BackupArtifact",
    "BackupReport",
    "BaseModule",
    "BasePayload",
    "BootstrapReport",
    "CommandResult",
    "HealthStatus",
    "InstanceBackupResult",
    "ModuleConfig",
    "RepeatReport",
    "RetentionDecision",
    "StageReport",
]
