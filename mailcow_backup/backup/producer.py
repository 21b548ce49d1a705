"""
External backup producer.

The mailcow snapshot is created by mailcow's own helper script. It is run
through a small process-runner interface so the executor can be exercised
with a fake runner instead of real subprocesses.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from mailcow_backup.config import BackupConfig
from mailcow_backup.errors import BackupError


logger = logging.getLogger(__name__)

# Lines of producer output included in the log when it fails
OUTPUT_TAIL_LINES = 20


class ProcessInterrupted(BackupError):
    """Raised when a process is stopped by timeout or cancellation."""
    pass


class SnapshotError(BackupError):
    """Raised when the external backup producer fails."""
    pass


@dataclass(frozen=True)
class ProcessResult:
    """Exit code and combined stdout/stderr of a finished process."""
    exit_code: int
    output: str = ''


class ProcessRunner(Protocol):
    """Capability to run an external command to completion."""

    def run(self, cmd: str, args: List[str], cwd: Optional[str] = None,
            env: Optional[Dict[str, str]] = None, timeout: Optional[float] = None,
            cancellation_check: Optional[Callable[[], bool]] = None) -> ProcessResult:
        ...


class SubprocessRunner:
    """
    ProcessRunner backed by subprocess.Popen.

    The process inherits the current environment, extended with env. While it
    runs, the runner polls every poll_interval seconds; the process is
    terminated (then killed) when the timeout expires or cancellation_check
    returns True.
    """

    def __init__(self, poll_interval: float = 1.0, kill_grace: float = 10.0):
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def run(self, cmd: str, args: List[str], cwd: Optional[str] = None,
            env: Optional[Dict[str, str]] = None, timeout: Optional[float] = None,
            cancellation_check: Optional[Callable[[], bool]] = None) -> ProcessResult:
        """
        Run a command and wait for it to finish.

        Args:
            cmd: Executable to run
            args: Arguments passed to the executable
            cwd: Working directory
            env: Extra environment variables
            timeout: Seconds after which the process is stopped
            cancellation_check: Called while waiting; returning True stops the process

        Returns:
            ProcessResult

        Raises:
            ProcessInterrupted: If the timeout expired or the run was cancelled
            OSError: If the command cannot be started
        """
        process_env = os.environ.copy()
        process_env.update(env or {})

        process = subprocess.Popen(
            [cmd] + list(args),
            cwd=cwd,
            env=process_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True
        )
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            try:
                output, _ = process.communicate(timeout=self.poll_interval)
                return ProcessResult(exit_code=process.returncode, output=output or '')
            except subprocess.TimeoutExpired:
                if cancellation_check and cancellation_check():
                    reason = 'was cancelled'
                elif deadline is not None and time.monotonic() >= deadline:
                    reason = f'timed out after {timeout} seconds'
                else:
                    continue

            self._stop(process)
            raise ProcessInterrupted(f"{cmd} {reason}")

    def _stop(self, process: subprocess.Popen):
        """Terminate a process, killing it if it does not exit in time."""
        process.terminate()
        try:
            process.communicate(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()


class MailcowBackupProducer:
    """
    Runs mailcow's backup_and_restore.sh into an output directory.

    Equivalent to:
        THREADS=<n> MAILCOW_BACKUP_LOCATION=<dir> \\
            helper-scripts/backup_and_restore.sh backup <components>
    """

    def __init__(self, config: BackupConfig, runner: Optional[ProcessRunner] = None):
        """
        Initialize producer.

        Args:
            config: Backup configuration
            runner: Process runner (SubprocessRunner if None)
        """
        self.config = config
        self.runner = runner or SubprocessRunner()

    def produce(self, output_dir: str,
                cancellation_check: Optional[Callable[[], bool]] = None) -> ProcessResult:
        """
        Create a mailcow snapshot in output_dir.

        Args:
            output_dir: Directory the helper writes the snapshot into
            cancellation_check: Optional hook to stop a long-running helper

        Returns:
            ProcessResult of the helper

        Raises:
            SnapshotError: If the helper is missing, cannot run, is interrupted
                or exits non-zero
        """
        script = self.config.backup_script
        if not script.is_file():
            raise SnapshotError(f"Backup helper not found at {script}")

        env = {
            'MAILCOW_BACKUP_LOCATION': str(output_dir),
            'THREADS': str(self.config.threads),
        }
        args = ['backup'] + list(self.config.components)

        logger.info(f"Running {script.name} {' '.join(args)} (threads: {self.config.threads})")

        try:
            result = self.runner.run(
                str(script),
                args,
                cwd=str(self.config.mailcow_dir),
                env=env,
                timeout=self.config.backup_timeout,
                cancellation_check=cancellation_check
            )
        except ProcessInterrupted as e:
            raise SnapshotError(f"Backup creation failed: {e}")
        except OSError as e:
            raise SnapshotError(f"Backup creation failed: cannot run {script}: {e}")

        if result.exit_code != 0:
            for line in result.output.splitlines()[-OUTPUT_TAIL_LINES:]:
                logger.error(f"  {line}")
            raise SnapshotError(f"Backup creation failed (exit code {result.exit_code})")

        for line in result.output.splitlines():
            logger.debug(f"  {line}")

        return result
