"""
Collection backups: write-once snapshots and their restoration.
"""

from .service import BackupDispatcher, BackupJob, BackupService

__all__ = [
    "BackupDispatcher",
    "BackupJob",
    "BackupService",
]
