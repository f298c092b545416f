"""
opsdeck - operational tooling for test loops, instance backups and toolchain bootstraps.

Three independent tools share one configuration layer and one CLI:
a command-repetition runner, an export/retention manager for virtualized
Linux instances, and a two-stage LLVM bootstrap driver.
"""

__version__ = "0.1.0"

from opsdeck.modules import BackupManager, LlvmBootstrap, RepeatRunner

__all__ = ["BackupManager", "LlvmBootstrap", "RepeatRunner"]
