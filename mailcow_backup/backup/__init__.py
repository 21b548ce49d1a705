"""
Backup module for mailcow-backup.

This module handles the core backup functionality including:
- Snapshot production (mailcow's backup_and_restore.sh)
- Storage targets (local/mounted shares and S3)
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor, RunResult, RunState, PreconditionError, execute_backup
from .producer import MailcowBackupProducer, SubprocessRunner, SnapshotError
from .storage import (
    LocalTarget,
    S3Target,
    create_target,
    StorageError,
    UnavailableError,
    TransferError,
    DeleteError
)
from .retention import RetentionManager, decide

__all__ = [
    'BackupExecutor',
    'RunResult',
    'RunState',
    'PreconditionError',
    'execute_backup',
    'MailcowBackupProducer',
    'SubprocessRunner',
    'SnapshotError',
    'LocalTarget',
    'S3Target',
    'create_target',
    'StorageError',
    'UnavailableError',
    'TransferError',
    'DeleteError',
    'RetentionManager',
    'decide'
]
