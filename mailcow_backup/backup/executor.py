"""
Backup executor - orchestrates a complete backup run.

Workflow:
1. Probe: mailcow directory present, every storage target writable
2. Snapshot: run mailcow's backup helper into a fresh temporary directory
3. Replicate: mirror the snapshot to each target, then apply its retention
4. Cleanup: remove the temporary directory (on every exit path)
5. Report: send exactly one success or failure notification
"""

import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from mailcow_backup.config import BackupConfig, StorageTarget
from mailcow_backup.errors import BackupError
from mailcow_backup.notify import create_notifier
from mailcow_backup.utils.formatting import format_size
from .producer import MailcowBackupProducer, ProcessRunner
from .retention import RetentionManager, RetentionResult
from .storage import (
    BACKUP_PREFIX,
    StorageError,
    TransferError,
    UnavailableError,
    create_target
)


logger = logging.getLogger(__name__)


class PreconditionError(BackupError):
    """Raised when the mailcow directory or a storage target is not usable."""
    pass


class RunState(str, Enum):
    """States of a backup run. FAILED is absorbing."""
    INIT = 'init'
    PROBING = 'probing'
    SNAPSHOTTING = 'snapshotting'
    REPLICATING = 'replicating'
    CLEANING_UP = 'cleaning_up'
    REPORTING = 'reporting'
    DONE = 'done'
    FAILED = 'failed'


@dataclass(frozen=True)
class BackupRun:
    """One snapshot produced and replicated by the executor."""
    id: str
    snapshot_path: str
    created_at: datetime


@dataclass
class TargetResult:
    """Replication outcome for one storage target."""
    name: str
    location: str
    bytes_transferred: int = 0
    retention: Optional[RetentionResult] = None
    size_bytes: Optional[int] = None
    backup_count: Optional[int] = None


@dataclass
class RunResult:
    """Terminal state and details of a backup run."""
    run_id: str
    state: RunState = RunState.INIT
    states: List[RunState] = field(default_factory=list)
    error: Optional[str] = None
    targets: List[TargetResult] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


def generate_run_id(timestamp: datetime) -> str:
    """Backup name for a run started at timestamp, e.g. mailcow_backup_2025-03-04_02-00-00."""
    return f"{BACKUP_PREFIX}{timestamp:%Y-%m-%d_%H-%M-%S}"


class BackupExecutor:
    """
    Runs one backup from preconditions to notification.
    """

    def __init__(self, config: BackupConfig, runner: Optional[ProcessRunner] = None,
                 notifier=None, target_factory: Optional[Callable] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 cancellation_check: Optional[Callable[[], bool]] = None):
        """
        Initialize backup executor.

        Args:
            config: Backup configuration
            runner: Process runner for the mailcow helper (subprocess if None)
            notifier: Notification sink (Gotify from config if None)
            target_factory: Builds a target handler from (StorageTarget, config)
            clock: Returns the current time
            cancellation_check: Hook that stops the mailcow helper when it returns True
        """
        self.config = config
        self.producer = MailcowBackupProducer(config, runner)
        self.notifier = notifier or create_notifier(config)
        self.target_factory = target_factory or create_target
        self.clock = clock or datetime.now
        self.cancellation_check = cancellation_check
        self.run = None
        self.result = None
        self.temp_dir = None
        self.clients = []
        self.logs = []

    def execute(self) -> RunResult:
        """
        Execute the backup run.

        Never raises for backup failures: the outcome is reported through the
        returned RunResult and a single notification.

        Returns:
            RunResult with the terminal state
        """
        started_at = self.clock()
        run_id = generate_run_id(started_at)
        self.result = RunResult(run_id=run_id, states=[RunState.INIT], logs=self.logs)

        self._log(f"=== Starting Mailcow backup process at {started_at:%Y-%m-%d %H:%M:%S} ===")

        if self.config.notify_self_test:
            self._test_notifier()

        try:
            self._transition(RunState.PROBING)
            self.check_preconditions()

            with self._snapshot_workspace(run_id) as snapshot_dir:
                self.run = BackupRun(id=run_id, snapshot_path=snapshot_dir, created_at=started_at)
                try:
                    self._transition(RunState.SNAPSHOTTING)
                    self._create_snapshot()

                    self._transition(RunState.REPLICATING)
                    self._replicate()
                except Exception as e:
                    self._fail(e)
                else:
                    self._transition(RunState.CLEANING_UP)

        except Exception as e:
            self._fail(e)

        if self.result.state is not RunState.FAILED:
            try:
                self._transition(RunState.REPORTING)
                self._send_success_report()
            except Exception as e:
                self._fail(e)
            else:
                self._transition(RunState.DONE)
                self._log(f"=== Backup process completed at {self.clock():%Y-%m-%d %H:%M:%S} ===")

        return self.result

    def check_preconditions(self):
        """
        Verify the mailcow installation and every storage target.

        Raises:
            PreconditionError: If the mailcow directory or helper is missing,
                or a target is not mounted or not writable
        """
        self._log("Checking required directories...")

        if not self.config.mailcow_dir.is_dir():
            raise PreconditionError(f"Mailcow directory not found at {self.config.mailcow_dir}")
        if not self.config.backup_script.is_file():
            raise PreconditionError(f"Mailcow backup helper not found at {self.config.backup_script}")

        clients = []
        for target in self.config.targets:
            try:
                client = self.target_factory(target, self.config)
                client.check_available()
            except UnavailableError as e:
                raise PreconditionError(str(e))
            clients.append(client)
        self.clients = clients

        self._log("Required directories check passed")

    @contextmanager
    def _snapshot_workspace(self, run_id: str):
        """Create the run's temporary directory and remove it on exit."""
        self.config.temp_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix=f"{run_id}_", dir=str(self.config.temp_dir))
        self._log(f"Temporary directory: {self.temp_dir}")
        try:
            yield self.temp_dir
        finally:
            self._cleanup()

    def _create_snapshot(self):
        """Run the mailcow helper into the temporary directory."""
        self._log("Starting Mailcow backup...")
        self.producer.produce(self.run.snapshot_path, cancellation_check=self.cancellation_check)
        self._log(f"Backup created successfully at {self.run.snapshot_path}")

    def _replicate(self):
        """
        Replicate the snapshot to every target in configured order.

        Raises:
            TransferError: If the snapshot cannot be copied to a target
        """
        pairs = list(zip(self.config.targets, self.clients))

        if self.config.replicate_parallel and len(pairs) > 1:
            self._replicate_parallel(pairs)
            return

        for target, client in pairs:
            self.result.targets.append(self._replicate_target(target, client))

    def _replicate_parallel(self, pairs):
        """Replicate to all targets at once, failing if any target failed."""
        self._log(f"Replicating to {len(pairs)} targets in parallel")

        with ThreadPoolExecutor(max_workers=len(pairs)) as pool:
            futures = [pool.submit(self._replicate_target, target, client) for target, client in pairs]

        failures = []
        for (target, _), future in zip(pairs, futures):
            try:
                self.result.targets.append(future.result())
            except TransferError as e:
                failures.append(str(e))

        if failures:
            raise TransferError('; '.join(failures))

    def _replicate_target(self, target: StorageTarget, client) -> TargetResult:
        """
        Mirror the snapshot to one target and apply its retention count.

        Raises:
            TransferError: If the copy fails
        """
        self._log(f"Copying backup to {target.name} at {target.root_path}...")
        transferred = client.sync(self.run.snapshot_path, self.run.id)

        location = client.location(self.run.id)
        self._log(f"Backup successfully copied to {location} ({format_size(transferred)} transferred)")

        manager = RetentionManager(client)
        retention = manager.enforce(target.retention_count)
        self.logs.extend(manager.logs)

        return TargetResult(
            name=target.name,
            location=location,
            bytes_transferred=transferred,
            retention=retention
        )

    def _send_success_report(self):
        """Collect storage usage per target and send the success notification."""
        lines = [
            f"Backup completed successfully at {self.clock():%Y-%m-%d %H:%M:%S}.",
            "",
            "Storage Usage Report:"
        ]

        warnings = []
        for target, client, target_result in zip(self.config.targets, self.clients, self.result.targets):
            try:
                size, count = client.usage()
                target_result.size_bytes = size
                target_result.backup_count = count
                size_text = format_size(size)
            except StorageError as e:
                self._log(f"Warning: could not measure {target.name}: {e}", level=logging.WARNING)
                size_text, count = 'N/A', 0
            lines.append(f"- {target.name}: {size_text} ({count} backups, retention: {target.retention_count})")

            if target_result.retention:
                warnings.extend(target_result.retention.errors)

        lines.append("")
        lines.append("Latest Backup:")
        lines.extend(f"- {target_result.location}" for target_result in self.result.targets)

        if warnings:
            lines.append("")
            lines.append("Retention Warnings:")
            lines.extend(f"- {warning}" for warning in warnings)

        self._notify(
            'Mailcow Backup Successful',
            '\n'.join(lines),
            self.config.gotify_success_priority
        )

    def _fail(self, error: Exception):
        """
        Enter the FAILED state and send the failure notification.

        Only the first failure of a run is reported.
        """
        if self.result.state is RunState.FAILED:
            return

        if isinstance(error, BackupError):
            message = str(error)
            self._log(f"ERROR: {message}", level=logging.ERROR)
        else:
            message = f"Unexpected error: {error}"
            logger.exception(message)
            self._log(f"ERROR: {message}", level=None)

        self.result.error = message
        self._transition(RunState.FAILED)

        self._notify(
            'Mailcow Backup Failed',
            f"Error: {message}",
            self.config.gotify_priority
        )

    def _notify(self, title: str, message: str, priority: int):
        """Send a notification; delivery problems never affect the run outcome."""
        try:
            self.notifier.notify(title, message, priority)
        except Exception as e:
            self._log(f"Warning: failed to send notification '{title}': {e}", level=logging.WARNING)

    def _test_notifier(self):
        """Run the notifier connection test; a failure is only a warning."""
        try:
            self.notifier.test_connection()
        except Exception as e:
            self._log(f"Warning: notification self-test failed: {e}", level=logging.WARNING)

    def _transition(self, state: RunState):
        """Move to a new state; nothing leaves FAILED."""
        if self.result.state is RunState.FAILED:
            return
        logger.debug(f"Run {self.result.run_id}: {self.result.state.value} -> {state.value}")
        self.result.state = state
        self.result.states.append(state)

    def _cleanup(self):
        """Remove temporary directory and files."""
        self._log("Cleaning up temporary files...")
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleanup completed")
            except OSError as e:
                self._log(
                    f"Warning: Failed to cleanup temp directory {self.temp_dir}: {e}",
                    level=logging.WARNING
                )

    def _log(self, message: str, level: Optional[int] = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger (None to skip it)
        """
        timestamp = self.clock().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        if level is not None:
            logger.log(level, message)


def execute_backup(config: BackupConfig, **kwargs) -> RunResult:
    """
    Run one backup with the given configuration.

    Args:
        config: Backup configuration
        **kwargs: Passed to BackupExecutor (runner, notifier, target_factory, ...)

    Returns:
        RunResult of the run
    """
    executor = BackupExecutor(config, **kwargs)
    return executor.execute()
