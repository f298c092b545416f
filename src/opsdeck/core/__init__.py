"""
Core infrastructure shared by the opsdeck tools.

Exposes the configuration service, payload contracts and the process helpers
every tool uses to call external programs.
"""

from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    BackupArtifact,
    BaseModule,
    BasePayload,
    CommandResult,
    HealthStatus,
    ModuleConfig,
    RetentionDecision,
)
from .process import run_command, run_shell

__all__ = [
    "BackupArtifact",
    "BaseModule",
    "BasePayload",
    "CommandResult",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "HealthStatus",
    "ModuleConfig",
    "RetentionDecision",
    "run_command",
    "run_shell",
]
