"""
Backup module for docker-backup.

This module handles the core backup functionality including:
- Source access (local and SSH)
- Database dumps and restores
- Compression
- Storage (local, S3 and SFTP)
- Pipeline orchestration
- GFS retention
- Archive restore
"""

from .executor import BackupExecutor, run_backup
from .sources import LocalSource, SSHSource
from .database import DatabaseDumper
from .compression import create_archive, extract_archive
from .storage import LocalStorage, S3Storage, SFTPStorage
from .retention import RetentionManager, compute_retention
from .restore import RestoreResolver, list_archives, restore_archive

__all__ = [
    'BackupExecutor',
    'run_backup',
    'LocalSource',
    'SSHSource',
    'DatabaseDumper',
    'create_archive',
    'extract_archive',
    'LocalStorage',
    'S3Storage',
    'SFTPStorage',
    'RetentionManager',
    'compute_retention',
    'RestoreResolver',
    'list_archives',
    'restore_archive'
]
