"""Instance export and archive retention."""

from .manager import BackupManager
from .retention import InvalidConfiguration, RetentionPolicy, select, select_by_instance
from .virtualization import VirtualizationCli, VirtualizationError

__all__ = [
    "BackupManager",
    "InvalidConfiguration",
    "RetentionPolicy",
    "VirtualizationCli",
    "VirtualizationError",
    "select",
    "select_by_instance",
]
