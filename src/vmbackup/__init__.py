"""
VMBackup - libvirt VM snapshot and backup automation

Creates reflink snapshots and compressed off-host backups of VM disk images
and rotates them by age and count.
"""

__version__ = "0.2.0"

from .backup_engine import BackupEngine, RunReport
from .config import Config
from .discovery import DiskDescriptor, discover_disks
from .retention import FilePopulation, RetentionPolicy, rotate
from .targets import SelectionPolicy, resolve_targets

__all__ = [
    "BackupEngine",
    "RunReport",
    "Config",
    "DiskDescriptor",
    "discover_disks",
    "FilePopulation",
    "RetentionPolicy",
    "rotate",
    "SelectionPolicy",
    "resolve_targets",
]
