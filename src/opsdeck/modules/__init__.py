"""
Collection of opsdeck tools grouped by responsibility.
"""

from .backup.manager import BackupManager
from .bootstrap.llvm_bootstrap import LlvmBootstrap
from .loop.repeat_runner import RepeatRunner

__all__ = ["BackupManager", "LlvmBootstrap", "RepeatRunner"]
