"""
Shared pytest fixtures for mailcow-backup tests.

This module provides fixtures for:
- A fake mailcow installation and storage target directories
- BackupConfig instances and configuration files
- A fake process runner standing in for mailcow's backup helper
- A mock notifier
- Mocked S3 (moto)
"""

import os
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from mailcow_backup.backup.producer import ProcessResult
from mailcow_backup.config import BackupConfig, StorageTarget


class FakeRunner:
    """
    Stand-in for SubprocessRunner.

    Records every call and, on success, writes a small snapshot into the
    directory given by MAILCOW_BACKUP_LOCATION like the real helper does.
    """

    def __init__(self, exit_code=0, files=None, error=None, output='backup output'):
        self.exit_code = exit_code
        self.files = files if files is not None else {
            'backup_vmail.tar.zst': b'vmail' * 100,
            'backup_mysql.tar.zst': b'mysql' * 50,
            'mailcow.conf': b'MAILCOW_HOSTNAME=mail.example.com\n',
        }
        self.error = error
        self.output = output
        self.calls = []

    def run(self, cmd, args, cwd=None, env=None, timeout=None, cancellation_check=None):
        self.calls.append({
            'cmd': cmd,
            'args': list(args),
            'cwd': cwd,
            'env': dict(env or {}),
            'timeout': timeout,
        })
        if self.error is not None:
            raise self.error

        if self.exit_code == 0:
            snapshot = Path(env['MAILCOW_BACKUP_LOCATION']) / 'mailcow-2025-03-04-02-00-00'
            snapshot.mkdir(parents=True)
            for name, content in self.files.items():
                (snapshot / name).write_bytes(content)

        return ProcessResult(exit_code=self.exit_code, output=self.output)


def make_backup(root, name, mtime=None, files=None):
    """
    Create a backup directory on a local target root.

    Args:
        root: Target root path
        name: Backup directory name
        mtime: Modification time to set (datetime), now if None
        files: Mapping of file name to bytes
    """
    path = Path(root) / 'mailcow_backups' / name
    path.mkdir(parents=True, exist_ok=True)
    for file_name, content in (files or {'data.tar.zst': b'old backup'}).items():
        (path / file_name).write_bytes(content)
    if mtime is not None:
        timestamp = mtime.timestamp()
        os.utime(path, (timestamp, timestamp))
    return path


@pytest.fixture
def mailcow_dir(tmp_path):
    """
    Create a fake mailcow installation with its backup helper.
    """
    directory = tmp_path / 'mailcow-dockerized'
    helper = directory / 'helper-scripts' / 'backup_and_restore.sh'
    helper.parent.mkdir(parents=True)
    helper.write_text('#!/bin/sh\nexit 0\n')
    helper.chmod(0o755)
    return directory


@pytest.fixture
def share1(tmp_path):
    """First mounted storage target."""
    path = tmp_path / 'smb1'
    path.mkdir()
    return path


@pytest.fixture
def share2(tmp_path):
    """Second mounted storage target."""
    path = tmp_path / 'smb2'
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, mailcow_dir, share1, share2):
    """
    BackupConfig with two local targets (retention 3 and 5).

    Notifier self-test is disabled so notification counts only include the
    terminal report.
    """
    return BackupConfig(
        mailcow_dir=mailcow_dir,
        targets=(
            StorageTarget(name='SMB Share 1', root_path=str(share1), retention_count=3),
            StorageTarget(name='SMB Share 2', root_path=str(share2), retention_count=5),
        ),
        threads=4,
        components=('all',),
        gotify_url='https://gotify.example.com',
        gotify_token='AbCdEf123456',
        gotify_priority=8,
        gotify_success_priority=5,
        notify_self_test=False,
        temp_dir=tmp_path / 'tmp',
        log_file=tmp_path / 'logs' / 'mailcow-backup.log',
    )


@pytest.fixture
def config_file(tmp_path, mailcow_dir, share1, share2):
    """
    Write a configuration file in the /etc/mailcow-backup.env format.
    """
    path = tmp_path / 'mailcow-backup.env'
    path.write_text(
        f'MAILCOW_DIR="{mailcow_dir}"\n'
        f'SMB_SHARE1="{share1}"\n'
        f'SMB_SHARE2="{share2}"\n'
        'SMB1_RETENTION_COUNT=3\n'
        'SMB2_RETENTION_COUNT=5\n'
        'THREADS=4\n'
        'BACKUP_COMPONENTS="all"\n'
        'GOTIFY_URL="https://gotify.example.com/"\n'
        'GOTIFY_TOKEN="AbCdEf123456"\n'
        'GOTIFY_PRIORITY=8\n'
        'GOTIFY_SUCCESS_PRIORITY=5\n'
        f'TEMP_DIR="{tmp_path / "tmp"}"\n'
        f'LOG_FILE="{tmp_path / "logs" / "mailcow-backup.log"}"\n'
    )
    return path


@pytest.fixture
def fake_runner():
    """Fake process runner that produces a successful snapshot."""
    return FakeRunner()


@pytest.fixture
def notifier():
    """
    Mock notification sink.

    notify() and test_connection() report successful delivery.
    """
    mock = MagicMock()
    mock.notify.return_value = True
    mock.test_connection.return_value = True
    return mock


@pytest.fixture
def backup_days():
    """Modification times for five daily backups (day 1..5)."""
    return [datetime(2024, 1, day, 2, 0, 0) for day in range(1, 6)]


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource(
            's3',
            region_name='us-east-1',
            aws_access_key_id='testing',
            aws_secret_access_key='testing'
        )
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def backup_factory():
    """Return make_backup for creating backup directories on a target."""
    return make_backup


@pytest.fixture
def runner_factory():
    """Return the FakeRunner class for tests that need a custom runner."""
    return FakeRunner
