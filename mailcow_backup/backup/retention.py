"""
Retention policy enforcement for backups.

decide() partitions a target's backups into the ones to keep and the ones to
delete; RetentionManager applies that decision to a storage target.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Tuple

from .storage import BackupEntry, DeleteError, StorageError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionDecision:
    """Partition of a target's backups into keep and delete."""
    keep: Tuple[BackupEntry, ...] = ()
    delete: Tuple[BackupEntry, ...] = ()


@dataclass
class RetentionResult:
    """Outcome of applying a retention decision to one target."""
    kept: List[BackupEntry] = field(default_factory=list)
    deleted: List[BackupEntry] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def decide(entries: Iterable[BackupEntry], retention_count: int) -> RetentionDecision:
    """
    Decide which backups survive a retention count.

    Backups are ordered newest first by modification time, ties broken by
    name (descending). The first retention_count backups are kept and the
    rest are marked for deletion. A count of zero or less keeps nothing.

    Args:
        entries: Backups currently on the target
        retention_count: Maximum number of backups to keep

    Returns:
        RetentionDecision
    """
    ordered = sorted(entries, key=lambda entry: (entry.modified, entry.name), reverse=True)
    keep_count = max(retention_count, 0)
    return RetentionDecision(
        keep=tuple(ordered[:keep_count]),
        delete=tuple(ordered[keep_count:])
    )


class RetentionManager:
    """
    Applies the retention count of a storage target.

    Deletion failures are logged and collected, never raised: a stale backup
    left behind is reported but does not fail the run.
    """

    def __init__(self, client):
        """
        Initialize retention manager.

        Args:
            client: Target handler (LocalTarget or S3Target)
        """
        self.client = client
        self.logs = []

    def enforce(self, retention_count: int) -> RetentionResult:
        """
        List the target's backups, decide and delete the surplus.

        Args:
            retention_count: Maximum number of backups to keep

        Returns:
            RetentionResult with kept and deleted entries and error messages
        """
        name = self.client.target.name
        result = RetentionResult()

        self._log(f"Applying retention policy to {name} (keeping {retention_count} most recent backups)")

        try:
            entries = self.client.list_backups()
        except StorageError as e:
            error_msg = f"Failed to list backups on {name}: {e}"
            self._log(error_msg, level=logging.ERROR)
            result.errors.append(error_msg)
            return result

        decision = decide(entries, retention_count)
        result.kept = list(decision.keep)

        if not decision.delete:
            self._log(
                f"Found {len(entries)} backups, which is within retention limit "
                f"({retention_count}). No cleanup needed."
            )
            return result

        self._log(f"Found {len(entries)} backups, removing {len(decision.delete)} old backups...")

        for entry in decision.delete:
            try:
                self.client.delete(entry)
                result.deleted.append(entry)
                self._log(f"Removed old backup: {self.client.location(entry.name)}")
            except DeleteError as e:
                error_msg = f"Failed to remove old backup {entry.name} from {name}: {e}"
                self._log(error_msg, level=logging.ERROR)
                result.errors.append(error_msg)

        return result

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention(client, retention_count: int) -> RetentionResult:
    """
    Enforce the retention count of one target.

    Args:
        client: Target handler
        retention_count: Maximum number of backups to keep

    Returns:
        RetentionResult from RetentionManager.enforce()
    """
    manager = RetentionManager(client)
    return manager.enforce(retention_count)
