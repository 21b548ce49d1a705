"""
Unit tests for storage targets (mailcow_backup/backup/storage.py).

Tests LocalTarget and S3Target for replicating backup directories.
"""

import hashlib
import os
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from mailcow_backup.backup import storage
from mailcow_backup.backup.storage import (
    BackupEntry,
    DeleteError,
    LocalTarget,
    S3Target,
    TransferError,
    UnavailableError,
    compute_etag,
    create_target,
    is_backup_name
)
from mailcow_backup.config import StorageTarget


BACKUP_NAME = 'mailcow_backup_2025-03-04_02-00-00'


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a snapshot-like source directory.

    Creates:
    - backup_vmail.tar.zst
    - mailcow.conf
    - nested/backup_redis.tar.zst
    """
    source = tmp_path / 'snapshot'
    (source / 'nested').mkdir(parents=True)
    (source / 'backup_vmail.tar.zst').write_bytes(b'v' * 1000)
    (source / 'mailcow.conf').write_bytes(b'MAILCOW_HOSTNAME=mail.example.com\n')
    (source / 'nested' / 'backup_redis.tar.zst').write_bytes(b'r' * 200)
    return source


@pytest.fixture
def local_target(share1):
    return LocalTarget(StorageTarget(name='SMB Share 1', root_path=str(share1), retention_count=3))


def _tree(root):
    return sorted(
        p.relative_to(root).as_posix()
        for p in Path(root).rglob('*')
        if p.is_file()
    )


class TestBackupNames:
    """Test the backup naming convention."""

    @pytest.mark.parametrize('name,expected', [
        ('mailcow_backup_2025-03-04_02-00-00', True),
        ('mailcow_backup_x', True),
        ('mailcow_backup_', False),
        ('other_2025-03-04', False),
        ('mailcow_backup_../etc', False),
    ])
    def test_is_backup_name(self, name, expected):
        assert is_backup_name(name) is expected


class TestLocalTargetAvailability:
    """Test LocalTarget.check_available()."""

    def test_available_target(self, local_target, share1):
        """Test that a writable directory passes and the probe is removed."""
        local_target.check_available()

        assert list(share1.iterdir()) == []

    def test_missing_target(self, tmp_path):
        """Test that an unmounted share is reported as unavailable."""
        target = LocalTarget(StorageTarget(name='SMB Share 1', root_path=str(tmp_path / 'missing'), retention_count=3))

        with pytest.raises(UnavailableError, match='not mounted'):
            target.check_available()

    def test_unwritable_target(self, local_target):
        """Test that a read-only share is reported as unavailable."""
        with patch.object(Path, 'touch', side_effect=PermissionError('Read-only file system')):
            with pytest.raises(UnavailableError, match='Cannot write'):
                local_target.check_available()


class TestLocalTargetSync:
    """Test LocalTarget.sync() mirror semantics."""

    def test_sync_copies_tree(self, local_target, share1, source_tree):
        """Test that the whole tree is copied into the dated directory."""
        transferred = local_target.sync(str(source_tree), BACKUP_NAME)

        dest = share1 / 'mailcow_backups' / BACKUP_NAME
        assert _tree(dest) == _tree(source_tree)
        assert (dest / 'nested' / 'backup_redis.tar.zst').read_bytes() == b'r' * 200
        assert transferred == 1000 + 200 + len(b'MAILCOW_HOSTNAME=mail.example.com\n')

    def test_second_sync_is_noop(self, local_target, share1, source_tree):
        """Test that syncing unchanged content again transfers nothing."""
        local_target.sync(str(source_tree), BACKUP_NAME)

        transferred = local_target.sync(str(source_tree), BACKUP_NAME)

        assert transferred == 0
        assert _tree(share1 / 'mailcow_backups' / BACKUP_NAME) == _tree(source_tree)

    def test_sync_removes_stray_files(self, local_target, share1, source_tree):
        """Test that destination-only files and directories are deleted."""
        dest = share1 / 'mailcow_backups' / BACKUP_NAME
        (dest / 'stale_dir').mkdir(parents=True)
        (dest / 'stale_dir' / 'old.tar').write_bytes(b'old')
        (dest / 'stray.txt').write_bytes(b'stray')
        (dest / '.backup_vmail.tar.zst.partial').write_bytes(b'half')

        local_target.sync(str(source_tree), BACKUP_NAME)

        assert _tree(dest) == _tree(source_tree)
        assert not (dest / 'stale_dir').exists()

    def test_sync_replaces_changed_file(self, local_target, share1, source_tree):
        """Test that a file whose size changed is copied again."""
        local_target.sync(str(source_tree), BACKUP_NAME)
        (source_tree / 'mailcow.conf').write_bytes(b'MAILCOW_HOSTNAME=mx.example.org\nEXTRA=1\n')

        transferred = local_target.sync(str(source_tree), BACKUP_NAME)

        dest = share1 / 'mailcow_backups' / BACKUP_NAME
        assert transferred == len(b'MAILCOW_HOSTNAME=mx.example.org\nEXTRA=1\n')
        assert (dest / 'mailcow.conf').read_bytes() == b'MAILCOW_HOSTNAME=mx.example.org\nEXTRA=1\n'

    def test_sync_replaces_file_with_directory(self, local_target, share1, source_tree):
        """Test that a destination file is replaced by a source directory of the same name."""
        dest = share1 / 'mailcow_backups' / BACKUP_NAME
        dest.mkdir(parents=True)
        (dest / 'nested').write_bytes(b'not a directory')

        local_target.sync(str(source_tree), BACKUP_NAME)

        assert (dest / 'nested' / 'backup_redis.tar.zst').is_file()

    def test_sync_preserves_symlinks(self, local_target, share1, source_tree):
        """Test that symlinks are reproduced as symlinks."""
        os.symlink('mailcow.conf', source_tree / 'mailcow.conf.link')

        local_target.sync(str(source_tree), BACKUP_NAME)

        link = share1 / 'mailcow_backups' / BACKUP_NAME / 'mailcow.conf.link'
        assert link.is_symlink()
        assert os.readlink(link) == 'mailcow.conf'

    def test_sync_missing_source(self, local_target, tmp_path):
        """Test that a missing source directory is a transfer error."""
        with pytest.raises(TransferError, match='Source directory not found'):
            local_target.sync(str(tmp_path / 'nope'), BACKUP_NAME)

    def test_sync_copy_failure(self, local_target, source_tree):
        """Test that filesystem errors are raised as TransferError and no partial file remains."""
        with patch('mailcow_backup.backup.storage.shutil.copy2', side_effect=OSError('No space left on device')):
            with pytest.raises(TransferError, match='No space left on device'):
                local_target.sync(str(source_tree), BACKUP_NAME)

        assert list(local_target.backup_dir.iterdir()) == []
        assert local_target.list_backups() == []

    def test_interrupted_sync_is_not_listed(self, local_target, source_tree):
        """Test that a sync failing after some files were copied leaves no backup behind."""
        real_copy = storage._copy_file
        copies = []

        def copy_failing_second(source, target):
            copies.append(source)
            if len(copies) == 2:
                raise OSError('Connection reset by peer')
            return real_copy(source, target)

        with patch('mailcow_backup.backup.storage._copy_file', side_effect=copy_failing_second):
            with pytest.raises(TransferError, match='Connection reset by peer'):
                local_target.sync(str(source_tree), BACKUP_NAME)

        assert local_target.list_backups() == []
        assert list(local_target.backup_dir.iterdir()) == []

        local_target.sync(str(source_tree), BACKUP_NAME)

        assert [entry.name for entry in local_target.list_backups()] == [BACKUP_NAME]
        assert _tree(local_target.backup_dir / BACKUP_NAME) == _tree(source_tree)

    def test_sync_discards_leftover_staging(self, local_target, source_tree):
        """Test that a staging directory left by a crashed process is replaced."""
        staging = local_target.backup_dir / f'.{BACKUP_NAME}.partial'
        staging.mkdir(parents=True)
        (staging / 'junk.bin').write_bytes(b'junk')

        local_target.sync(str(source_tree), BACKUP_NAME)

        assert not staging.exists()
        assert _tree(local_target.backup_dir / BACKUP_NAME) == _tree(source_tree)


class TestLocalTargetInventory:
    """Test listing, deletion and usage on LocalTarget."""

    def test_list_backups(self, local_target, share1, backup_factory):
        """Test that only backup directories are listed, with their mtime."""
        mtime = datetime(2024, 1, 3, 2, 0, 0)
        backup_factory(share1, 'mailcow_backup_2024-01-03_02-00-00', mtime=mtime)
        backup_factory(share1, 'mailcow_backup_2024-01-04_02-00-00')
        (share1 / 'mailcow_backups' / 'unrelated').mkdir()
        (share1 / 'mailcow_backups' / 'mailcow_backup_file.txt').write_text('not a dir')

        entries = {entry.name: entry for entry in local_target.list_backups()}

        assert set(entries) == {'mailcow_backup_2024-01-03_02-00-00', 'mailcow_backup_2024-01-04_02-00-00'}
        assert entries['mailcow_backup_2024-01-03_02-00-00'].modified == \
            datetime.fromtimestamp(mtime.timestamp(), tz=timezone.utc)
        assert all(entry.target == local_target.target for entry in entries.values())

    def test_list_reports_size(self, local_target, share1, backup_factory):
        """Test that each listed backup carries its total file size."""
        backup_factory(share1, 'mailcow_backup_1', files={'a': b'x' * 100, 'b': b'y' * 24})

        assert [entry.size for entry in local_target.list_backups()] == [124]

    def test_list_without_backup_dir(self, local_target):
        """Test that a fresh share has no backups."""
        assert local_target.list_backups() == []

    def test_delete(self, local_target, share1, backup_factory):
        """Test that a backup directory is removed recursively."""
        path = backup_factory(share1, 'mailcow_backup_2024-01-03_02-00-00')
        entry = BackupEntry(target=local_target.target, name=path.name, modified=datetime.now(timezone.utc))

        local_target.delete(entry)

        assert not path.exists()

    def test_delete_is_idempotent(self, local_target):
        """Test that deleting a missing backup is not an error."""
        entry = BackupEntry(target=local_target.target, name=BACKUP_NAME, modified=datetime.now(timezone.utc))

        local_target.delete(entry)
        local_target.delete(entry)

    def test_delete_refuses_other_names(self, local_target):
        """Test that only backup-named directories can be deleted."""
        entry = BackupEntry(target=local_target.target, name='..', modified=datetime.now(timezone.utc))

        with pytest.raises(DeleteError, match='Refusing'):
            local_target.delete(entry)

    def test_delete_failure(self, local_target, share1, backup_factory):
        """Test that permission problems are raised as DeleteError."""
        path = backup_factory(share1, BACKUP_NAME)
        entry = BackupEntry(target=local_target.target, name=path.name, modified=datetime.now(timezone.utc))

        with patch('mailcow_backup.backup.storage.shutil.rmtree', side_effect=PermissionError('denied')):
            with pytest.raises(DeleteError, match='denied'):
                local_target.delete(entry)

    def test_usage(self, local_target, share1, backup_factory):
        """Test total size and count of backups."""
        backup_factory(share1, 'mailcow_backup_1', files={'a': b'x' * 100})
        backup_factory(share1, 'mailcow_backup_2', files={'a': b'x' * 50, 'b': b'y' * 50})

        assert local_target.usage() == (200, 2)

    def test_usage_without_backup_dir(self, local_target):
        assert local_target.usage() == (0, 0)

    def test_location(self, local_target, share1):
        assert local_target.location(BACKUP_NAME) == str(share1 / 'mailcow_backups' / BACKUP_NAME)


class TestS3Target:
    """Test S3Target against a moto-mocked bucket."""

    def _target(self, root='s3://test-bucket/mail'):
        return S3Target(
            StorageTarget(name='Offsite', root_path=root, retention_count=3),
            access_key='testing',
            secret_key='testing',
            region='us-east-1'
        )

    def _keys(self, s3, prefix=''):
        return sorted(obj.key for obj in s3.Bucket('test-bucket').objects.filter(Prefix=prefix))

    def test_check_available(self, mock_s3):
        """Test that a reachable bucket passes and the probe object is removed."""
        self._target().check_available()

        assert self._keys(mock_s3) == []

    def test_check_available_missing_bucket(self, mock_s3):
        """Test that a missing bucket is unavailable."""
        with pytest.raises(UnavailableError, match='missing-bucket'):
            self._target('s3://missing-bucket/mail').check_available()

    def test_sync_uploads_tree(self, mock_s3, source_tree):
        """Test that every file is uploaded below the backup prefix."""
        transferred = self._target().sync(str(source_tree), BACKUP_NAME)

        prefix = f'mail/mailcow_backups/{BACKUP_NAME}/'
        assert self._keys(mock_s3, prefix) == [prefix + name for name in _tree(source_tree)]
        assert transferred == sum(p.stat().st_size for p in source_tree.rglob('*') if p.is_file())

    def test_second_sync_is_noop(self, mock_s3, source_tree):
        """Test that unchanged files are not uploaded again."""
        target = self._target()
        target.sync(str(source_tree), BACKUP_NAME)

        assert target.sync(str(source_tree), BACKUP_NAME) == 0

    def test_sync_removes_stray_objects(self, mock_s3, source_tree):
        """Test that objects absent from the source are deleted."""
        stray = f'mail/mailcow_backups/{BACKUP_NAME}/stray.txt'
        mock_s3.Bucket('test-bucket').put_object(Key=stray, Body=b'stray')

        self._target().sync(str(source_tree), BACKUP_NAME)

        assert stray not in self._keys(mock_s3)

    def test_list_and_delete(self, mock_s3):
        """Test that backups are grouped by prefix and deleted as a whole."""
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='mail/mailcow_backups/mailcow_backup_1/a.tar', Body=b'a' * 10)
        bucket.put_object(Key='mail/mailcow_backups/mailcow_backup_1/sub/b.tar', Body=b'b' * 20)
        bucket.put_object(Key='mail/mailcow_backups/mailcow_backup_2/a.tar', Body=b'c' * 5)
        bucket.put_object(Key='mail/mailcow_backups/loose-file', Body=b'x')
        target = self._target()

        entries = {entry.name: entry for entry in target.list_backups()}
        assert set(entries) == {'mailcow_backup_1', 'mailcow_backup_2'}
        assert entries['mailcow_backup_1'].size == 30
        assert entries['mailcow_backup_2'].size == 5
        assert target.usage() == (35, 2)

        target.delete(entries['mailcow_backup_1'])

        assert self._keys(mock_s3, 'mail/mailcow_backups/mailcow_backup_1/') == []
        assert [entry.name for entry in target.list_backups()] == ['mailcow_backup_2']

    def test_delete_missing_backup(self, mock_s3):
        """Test that deleting a missing backup is a no-op."""
        entry = BackupEntry(
            target=self._target().target,
            name=BACKUP_NAME,
            modified=datetime.now(timezone.utc)
        )

        self._target().delete(entry)

    def test_multipart_sync(self, mock_s3, tmp_path):
        """Test that large files are uploaded in parts and recognised as unchanged afterwards."""
        chunk = 5 * 1024 * 1024  # smallest part size S3 accepts
        source = tmp_path / 'large'
        source.mkdir()
        (source / 'backup_vmail.tar.zst').write_bytes(b'm' * (2 * chunk + 1024))

        with patch('mailcow_backup.backup.storage.MULTIPART_THRESHOLD', chunk), \
                patch('mailcow_backup.backup.storage.MULTIPART_CHUNK_SIZE', chunk):
            target = self._target()
            transferred = target.sync(str(source), BACKUP_NAME)

            key = f'mail/mailcow_backups/{BACKUP_NAME}/backup_vmail.tar.zst'
            obj = mock_s3.Object('test-bucket', key)
            assert obj.content_length == 2 * chunk + 1024
            assert obj.e_tag.strip('"').endswith('-3')
            assert transferred == 2 * chunk + 1024

            assert target.sync(str(source), BACKUP_NAME) == 0

    def test_multipart_failure_aborts_upload(self, mock_s3, tmp_path):
        """Test that a failed multipart upload is aborted and reported as TransferError."""
        chunk = 5 * 1024 * 1024
        source = tmp_path / 'large'
        source.mkdir()
        (source / 'backup_vmail.tar.zst').write_bytes(b'm' * (chunk + 1024))
        error = ClientError({'Error': {'Code': 'InternalError', 'Message': 'We encountered an internal error'}},
                            'CompleteMultipartUpload')

        with patch('mailcow_backup.backup.storage.MULTIPART_THRESHOLD', chunk), \
                patch('mailcow_backup.backup.storage.MULTIPART_CHUNK_SIZE', chunk):
            target = self._target()
            with patch.object(target.s3_client, 'complete_multipart_upload', side_effect=error):
                with pytest.raises(TransferError, match='internal error'):
                    target.sync(str(source), BACKUP_NAME)

        uploads = target.s3_client.list_multipart_uploads(Bucket='test-bucket')
        assert uploads.get('Uploads', []) == []
        assert self._keys(mock_s3, 'mail/mailcow_backups/') == []

    def test_bucket_root_location(self, mock_s3):
        """Test backups directly below the bucket root."""
        target = self._target('s3://test-bucket')

        assert target.location(BACKUP_NAME) == f's3://test-bucket/mailcow_backups/{BACKUP_NAME}'


class TestHelpers:
    """Test factory and ETag helpers."""

    def test_create_local_target(self, share1):
        target = StorageTarget(name='SMB Share 1', root_path=str(share1), retention_count=3)
        assert isinstance(create_target(target), LocalTarget)

    def test_create_s3_target(self, config, mock_s3):
        target = StorageTarget(name='Offsite', root_path='s3://test-bucket/mail', retention_count=3)
        assert isinstance(create_target(target, config), S3Target)

    def test_single_part_etag(self, tmp_path):
        """Test that small files use the plain MD5 as ETag."""
        path = tmp_path / 'file'
        path.write_bytes(b'hello world')

        assert compute_etag(path, 11) == hashlib.md5(b'hello world').hexdigest()

    def test_multipart_etag(self, tmp_path):
        """Test the multipart ETag format with a reduced chunk size."""
        path = tmp_path / 'file'
        path.write_bytes(b'a' * 25)

        with patch('mailcow_backup.backup.storage.MULTIPART_THRESHOLD', 10), \
                patch('mailcow_backup.backup.storage.MULTIPART_CHUNK_SIZE', 10):
            etag = compute_etag(path, 25)

        digests = [hashlib.md5(b'a' * 10).digest(), hashlib.md5(b'a' * 10).digest(), hashlib.md5(b'a' * 5).digest()]
        assert etag == f"{hashlib.md5(b''.join(digests)).hexdigest()}-3"
