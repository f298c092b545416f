"""
Dynaconf-powered configuration loader with Pydantic validation.

The configuration service loads the layered YAML files from the config
directory (``config.yaml`` then ``local.yaml``), applies ``OPSDECK_``
environment overrides, validates the result, and hands each tool a
`ModuleConfig` so the entrypoint never builds option dictionaries by hand.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from dynaconf import Dynaconf
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .contracts import BaseModule, ModuleConfig


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _lower_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Dynaconf upper-cases top-level keys; fold them so merges line up."""
    return {str(key).lower(): value for key, value in raw.items()}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries without mutating the originals."""
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


CONFIG_FILENAMES = ("config.yaml", "local.yaml")
_REPO_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


def _coerce_path(value: Any) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    return Path(str(value)).expanduser()


class RepeatSettings(BaseModel):
    """Command-repetition loop options."""

    model_config = ConfigDict(extra="ignore")

    max_runs: int = Field(default=10, ge=0)
    commands: list[str] = Field(
        default_factory=lambda: ["echo 'command 1'", "echo 'command 2'"]
    )
    shell: str | None = Field(default=None, description="Explicit shell, e.g. /bin/bash.")
    timeout_seconds: float | None = Field(default=None, gt=0.0)
    cwd: str | None = Field(default=None)
    env: dict[str, str] = Field(default_factory=dict)


class BackupSettings(BaseModel):
    """Instance export and archive retention options."""

    model_config = ConfigDict(extra="ignore")

    root_dir: Path = Field(default_factory=lambda: Path.home() / "instance-backups")
    instances: list[str] = Field(
        default_factory=list, description="Explicit instances; empty means discover."
    )
    excluded_instances: list[str] = Field(default_factory=list)
    keep_count: int = Field(default=3)
    keep_age_days: float = Field(default=5.0)
    export_enabled: bool = Field(default=True)
    prune_enabled: bool = Field(default=True)
    dry_run: bool = Field(default=False)
    interval_seconds: float = Field(default=0.0, ge=0.0)
    timestamp_format: str = Field(default="%Y%m%d_%H%M%S")
    extension: str = Field(default=".tar")
    list_command: list[str] = Field(default_factory=lambda: ["wsl", "--list", "--quiet"])
    export_command: list[str] = Field(
        default_factory=lambda: ["wsl", "--export", "{instance}", "{path}"]
    )
    list_timeout_seconds: float = Field(default=60.0, gt=0.0)
    export_timeout_seconds: float = Field(default=3 * 3600.0, gt=0.0)

    @field_validator("root_dir", mode="before")
    @classmethod
    def _root_path(cls, value: Any) -> Path:
        return _coerce_path(value)

    @field_validator("keep_count", "keep_age_days")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("retention values must be non-negative")
        return value

    @field_validator("extension")
    @classmethod
    def _dotted_extension(cls, value: str) -> str:
        if value and not value.startswith("."):
            return f".{value}"
        return value


class BootstrapSettings(BaseModel):
    """Two-stage compiler bootstrap options."""

    model_config = ConfigDict(extra="ignore")

    stages: str = Field(default="all")
    source_dir: Path = Field(default=Path("llvm"))
    work_dir: Path = Field(default=Path("."))
    stage1_build_dir: Path = Field(default=Path("build-stage1"))
    stage2_build_dir: Path = Field(default=Path("build-stage2"))
    stage1_install_dir: Path = Field(default_factory=lambda: Path.home() / "llvm-stage1")
    stage2_install_dir: Path = Field(default_factory=lambda: Path.home() / "llvm")
    install_stage1: bool = Field(default=True)
    install_stage2: bool = Field(default=True)
    generator: str = Field(default="Ninja")
    build_type: str = Field(default="Release")
    projects: list[str] = Field(
        default_factory=lambda: ["clang", "clang-tools-extra", "lld", "lldb"]
    )
    runtimes: list[str] = Field(
        default_factory=lambda: ["libcxx", "libcxxabi", "libunwind", "compiler-rt"]
    )
    targets: str = Field(default="host")
    target_triple: str = Field(default="x86_64-unknown-linux-gnu")
    cmake: str = Field(default="cmake")

    @field_validator("stages", mode="before")
    @classmethod
    def _valid_stages(cls, value: Any) -> str:
        stages = str(value).strip().lower()
        if stages not in ("1", "2", "all"):
            raise ValueError("stages must be one of 1, 2, all")
        return stages

    @field_validator(
        "source_dir",
        "work_dir",
        "stage1_build_dir",
        "stage2_build_dir",
        "stage1_install_dir",
        "stage2_install_dir",
        mode="before",
    )
    @classmethod
    def _paths(cls, value: Any) -> Path:
        return _coerce_path(value)


class LoggingSettings(BaseModel):
    """Console and rotating transcript log options."""

    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: Path | None = Field(default=Path("logs") / "opsdeck.log")
    max_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("file", mode="before")
    @classmethod
    def _optional_path(cls, value: Any) -> Path | None:
        if value in (None, "", False):
            return None
        return _coerce_path(value)


class ConfigSnapshot(BaseModel):
    """
    Validated, strongly typed view of the merged configuration.

    Provides helpers to derive per-module configuration dictionaries.
    """

    model_config = ConfigDict(extra="ignore")

    repeat: RepeatSettings = Field(default_factory=RepeatSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    bootstrap: BootstrapSettings = Field(default_factory=BootstrapSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def module_config(self, module_name: str) -> ModuleConfig:
        """Produce a ModuleConfig tailored for the requested module."""

        builders = {
            "modules.loop.repeat_runner": self.repeat,
            "modules.backup.manager": self.backup,
            "modules.bootstrap.llvm": self.bootstrap,
        }
        try:
            section = builders[module_name]
        except KeyError as exc:
            raise KeyError(f"No module configuration defined for {module_name}") from exc
        options = section.model_dump()
        for key, value in options.items():
            if isinstance(value, Path):
                options[key] = str(value)
        return ModuleConfig(options=options)


class ConfigService:
    """
    Runtime facade for loading, validating, and distributing configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
        existing_files = [str(path) for path in settings_files if path.exists()]
        if not existing_files and settings is None:
            raise ConfigError(
                f"No configuration files found in {self._config_dir}. "
                "Expected at least config.yaml."
            )

        self._settings = settings or Dynaconf(
            envvar_prefix="OPSDECK",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
            merge_enabled=True,
        )
        self._snapshot = self._build_snapshot()

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration files and rebuild the snapshot."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge the provided changes into the current configuration snapshot.

        This does not persist the changes to disk; the CLI uses it for flag overrides.
        """
        raw = _lower_keys(self._settings.as_dict())
        merged = _deep_merge(raw, _lower_keys(changes))
        self._snapshot = self._build_snapshot(merged)
        return self._snapshot

    def module_config_for(self, module: str | type[BaseModule] | BaseModule) -> ModuleConfig:
        """
        Convenient wrapper around ConfigSnapshot.module_config that accepts
        module names, classes, or instances.
        """
        if isinstance(module, BaseModule):
            module_name = module.name
        elif isinstance(module, str):
            module_name = module
        else:
            module_name = getattr(module, "name", module.__name__)
        return self._snapshot.module_config(module_name)

    def _build_snapshot(self, raw: dict[str, Any] | None = None) -> ConfigSnapshot:
        source = raw if raw is not None else self._settings.as_dict()
        data = {
            "repeat": _section(source, "repeat"),
            "backup": _section(source, "backup"),
            "bootstrap": _section(source, "bootstrap"),
            "logging": _section(source, "logging"),
        }
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc


__all__ = [
    "BackupSettings",
    "BootstrapSettings",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "LoggingSettings",
    "RepeatSettings",
]
