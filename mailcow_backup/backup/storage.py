"""
Storage targets for replicated backups.

Supports:
- LocalTarget: a mounted share or local directory (SMB, NFS, local disk)
- S3Target: an S3 bucket/prefix given as s3://bucket/prefix

Both keep backups as directories named mailcow_backup_<timestamp> below
<root>/mailcow_backups/ and expose the same operations: availability check,
mirror sync, listing, deletion and usage reporting.
"""

import hashlib
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from mailcow_backup.config import BackupConfig, StorageTarget
from mailcow_backup.errors import BackupError


logger = logging.getLogger(__name__)

BACKUP_ROOT = 'mailcow_backups'
BACKUP_PREFIX = 'mailcow_backup_'
BACKUP_NAME_PATTERN = re.compile(r'^mailcow_backup_[^/\\]+$')
PROBE_NAME = '.mailcow_backup_write_test'

# S3 uploads switch to multipart above this size
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(BackupError):
    """Raised when a storage operation fails."""
    pass


class UnavailableError(StorageError):
    """Raised when a target is not reachable or not writable."""
    pass


class TransferError(StorageError):
    """Raised when mirroring a backup to a target fails."""
    pass


class DeleteError(StorageError):
    """Raised when removing a backup from a target fails."""
    pass


@dataclass(frozen=True)
class BackupEntry:
    """One persisted backup on a storage target."""
    target: StorageTarget
    name: str
    modified: datetime
    size: Optional[int] = None


def is_backup_name(name: str) -> bool:
    """Check whether a directory name follows the backup naming convention."""
    return bool(BACKUP_NAME_PATTERN.match(name))


class LocalTarget:
    """
    Storage target on the local filesystem.

    Backups are mirrored to {root_path}/mailcow_backups/{backup_name}/.
    """

    def __init__(self, target: StorageTarget):
        """
        Initialize local target handler.

        Args:
            target: Configured storage target
        """
        self.target = target
        self.root = Path(target.root_path)
        self.backup_dir = self.root / BACKUP_ROOT

    def check_available(self):
        """
        Verify the target is mounted and writable.

        A zero-byte probe file is written to the target root and removed again.

        Raises:
            UnavailableError: If the target is missing or not writable
        """
        if not self.root.is_dir():
            raise UnavailableError(f"{self.target.name} not mounted at {self.root}")

        probe = self.root / PROBE_NAME
        try:
            probe.touch()
        except OSError as e:
            raise UnavailableError(f"Cannot write to {self.target.name} at {self.root}: {e}")

        try:
            probe.unlink()
        except OSError as e:
            raise UnavailableError(f"Cannot remove write probe {probe}: {e}")

    def sync(self, source_dir: str, dest_name: str) -> int:
        """
        Mirror a local directory tree into a backup directory on the target.

        Files missing from the source are removed from the destination.
        Unchanged files (same size and modification time) are skipped.

        The mirror is built under a hidden staging name (.<dest_name>.partial,
        seeded from an existing <dest_name>) and renamed into place only when
        complete, so a failed sync never leaves a directory that is listed
        as a backup.

        Args:
            source_dir: Directory to replicate
            dest_name: Name of the backup directory on the target

        Returns:
            Number of bytes copied

        Raises:
            TransferError: If the mirror operation fails
        """
        source = Path(source_dir)
        if not source.is_dir():
            raise TransferError(f"Source directory not found: {source}")

        dest = self.backup_dir / dest_name
        staging = self.backup_dir / f'.{dest_name}.partial'
        try:
            if staging.exists() or staging.is_symlink():
                _remove_path(staging)
            if dest.is_dir() and not dest.is_symlink():
                os.replace(dest, staging)
            else:
                _remove_path(dest)
            staging.mkdir(parents=True, exist_ok=True)

            transferred = self._mirror(source, staging)
            os.replace(staging, dest)
            return transferred
        except OSError as e:
            self._discard_staging(staging)
            raise TransferError(f"Failed to copy backup to {dest}: {e}")

    def _discard_staging(self, staging: Path):
        """Remove an incomplete staging directory after a failed sync."""
        try:
            _remove_path(staging)
        except OSError as e:
            logger.warning(f"Failed to remove incomplete copy {staging}: {e}")

    def _mirror(self, source: Path, dest: Path) -> int:
        """Recursively make dest content-equal to source."""
        transferred = 0
        source_names = set()

        for item in sorted(source.iterdir()):
            source_names.add(item.name)
            target = dest / item.name

            if item.is_symlink():
                link = os.readlink(item)
                if target.is_symlink() and os.readlink(target) == link:
                    continue
                _remove_path(target)
                target.symlink_to(link)
            elif item.is_dir():
                if target.is_symlink() or (target.exists() and not target.is_dir()):
                    _remove_path(target)
                target.mkdir(exist_ok=True)
                transferred += self._mirror(item, target)
            else:
                if target.is_symlink() or target.is_dir():
                    _remove_path(target)
                if _is_up_to_date(item, target):
                    continue
                transferred += _copy_file(item, target)

        for stale in dest.iterdir():
            if stale.name not in source_names:
                logger.debug(f"Removing stray path {stale}")
                _remove_path(stale)

        return transferred

    def list_backups(self) -> List[BackupEntry]:
        """
        List backup directories on the target.

        Returns:
            List of BackupEntry in no particular order

        Raises:
            StorageError: If the listing fails
        """
        if not self.backup_dir.is_dir():
            return []

        try:
            entries = []
            for child in self.backup_dir.iterdir():
                if child.is_symlink() or not child.is_dir() or not is_backup_name(child.name):
                    continue
                entries.append(BackupEntry(
                    target=self.target,
                    name=child.name,
                    modified=datetime.fromtimestamp(child.stat().st_mtime, tz=timezone.utc),
                    size=_directory_size(child)
                ))
            return entries
        except OSError as e:
            raise StorageError(f"Failed to list backups in {self.backup_dir}: {e}")

    def delete(self, entry: BackupEntry):
        """
        Recursively remove one backup. Removing a missing backup is a no-op.

        Raises:
            DeleteError: If the backup cannot be removed
        """
        if not is_backup_name(entry.name):
            raise DeleteError(f"Refusing to delete {entry.name!r}: not a backup directory")

        path = self.backup_dir / entry.name
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise DeleteError(f"Failed to remove {path}: {e}")

    def usage(self) -> Tuple[int, int]:
        """
        Report total size and number of backups on the target.

        Returns:
            Tuple of (size in bytes, backup count)

        Raises:
            StorageError: If the target cannot be read
        """
        if not self.backup_dir.is_dir():
            return 0, 0

        count = len(self.list_backups())
        try:
            size = _directory_size(self.backup_dir)
        except OSError as e:
            raise StorageError(f"Failed to measure {self.backup_dir}: {e}")
        return size, count

    def location(self, name: str) -> str:
        """Get the full path of a backup on the target."""
        return str(self.backup_dir / name)


class S3Target:
    """
    Storage target in an S3 bucket.

    Backups are mirrored to s3://{bucket}/{prefix}/mailcow_backups/{backup_name}/.
    """

    def __init__(self, target: StorageTarget, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None):
        """
        Initialize S3 target handler.

        Args:
            target: Configured storage target with an s3:// root path
            access_key: AWS access key ID (default credential chain if None)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.target = target
        self.bucket_name, prefix = _parse_s3_uri(target.root_path)
        self.base_prefix = f"{prefix}/{BACKUP_ROOT}/" if prefix else f"{BACKUP_ROOT}/"
        self.probe_key = f"{prefix}/{PROBE_NAME}" if prefix else PROBE_NAME

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise UnavailableError(f"Failed to initialize S3 client for {target.name}: {e}")

    def check_available(self):
        """
        Verify bucket access and write permission with a probe object.

        Raises:
            UnavailableError: If the bucket is unreachable or not writable
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                raise UnavailableError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise UnavailableError(f"Access denied to bucket: {self.bucket_name}")
            raise UnavailableError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UnavailableError(f"Failed to connect to S3 for {self.target.name}: {e}")

        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=self.probe_key, Body=b'')
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self.probe_key)
        except (ClientError, BotoCoreError) as e:
            raise UnavailableError(f"Cannot write to {self.target.name} at {self.target.root_path}: {e}")

    def sync(self, source_dir: str, dest_name: str) -> int:
        """
        Mirror a local directory tree under a backup prefix in the bucket.

        Objects whose size and ETag already match the local file are skipped;
        objects with no local counterpart are deleted.

        Args:
            source_dir: Directory to replicate
            dest_name: Name of the backup directory on the target

        Returns:
            Number of bytes uploaded

        Raises:
            TransferError: If listing, uploading or deleting fails
        """
        source = Path(source_dir)
        if not source.is_dir():
            raise TransferError(f"Source directory not found: {source}")

        dest_prefix = f"{self.base_prefix}{dest_name}/"
        transferred = 0

        try:
            existing = {
                obj['Key'][len(dest_prefix):]: obj
                for obj in self._list_objects(dest_prefix)
            }

            wanted = set()
            for path in sorted(source.rglob('*')):
                if not path.is_file():
                    continue
                relative = path.relative_to(source).as_posix()
                wanted.add(relative)

                size = path.stat().st_size
                current = existing.get(relative)
                if current and current['Size'] == size and \
                        current['ETag'].strip('"') == compute_etag(path, size):
                    continue

                self._upload(path, dest_prefix + relative, size)
                transferred += size

            stale = [dest_prefix + relative for relative in existing if relative not in wanted]
            self._delete_keys(stale)

        except (ClientError, BotoCoreError, OSError, StorageError) as e:
            raise TransferError(f"Failed to copy backup to s3://{self.bucket_name}/{dest_prefix}: {e}")

        return transferred

    def _upload(self, local_path: Path, key: str, file_size: int):
        """Upload one file, using multipart upload for large files."""
        if file_size > MULTIPART_THRESHOLD:
            self._multipart_upload(local_path, key)
        else:
            with open(local_path, 'rb') as f:
                self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)

    def _multipart_upload(self, local_path: Path, key: str):
        """
        Upload a large file in MULTIPART_CHUNK_SIZE parts.

        The upload is aborted on any error so no partial object becomes visible.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def _list_objects(self, prefix: str) -> List[Dict]:
        """List all objects below a prefix."""
        objects = []
        paginator = self.s3_client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for obj in page.get('Contents', []):
                objects.append({
                    'Key': obj['Key'],
                    'LastModified': obj['LastModified'],
                    'Size': obj['Size'],
                    'ETag': obj['ETag']
                })
        return objects

    def _delete_keys(self, keys: List[str]):
        """Delete keys in batches of 1000 (the DeleteObjects limit)."""
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            response = self.s3_client.delete_objects(
                Bucket=self.bucket_name,
                Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True}
            )
            errors = response.get('Errors', [])
            if errors:
                first = errors[0]
                raise StorageError(
                    f"Failed to delete {len(errors)} object(s), first {first.get('Key')}: "
                    f"{first.get('Message', first.get('Code', 'unknown error'))}"
                )

    def _inventory(self) -> Dict[str, Tuple[datetime, int]]:
        """Group objects by backup name: name -> (newest modification, total size)."""
        inventory = {}
        for obj in self._list_objects(self.base_prefix):
            name, sep, _ = obj['Key'][len(self.base_prefix):].partition('/')
            if not sep or not is_backup_name(name):
                continue
            modified, size = inventory.get(name, (obj['LastModified'], 0))
            inventory[name] = (max(modified, obj['LastModified']), size + obj['Size'])
        return inventory

    def list_backups(self) -> List[BackupEntry]:
        """
        List backup prefixes in the bucket.

        The modification time of a backup is that of its newest object.

        Raises:
            StorageError: If the listing fails
        """
        try:
            inventory = self._inventory()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to list backups in {self.target.root_path}: {e}")

        return [
            BackupEntry(target=self.target, name=name, modified=modified, size=size)
            for name, (modified, size) in inventory.items()
        ]

    def delete(self, entry: BackupEntry):
        """
        Remove every object of one backup. Removing a missing backup is a no-op.

        Raises:
            DeleteError: If any object cannot be removed
        """
        if not is_backup_name(entry.name):
            raise DeleteError(f"Refusing to delete {entry.name!r}: not a backup directory")

        prefix = f"{self.base_prefix}{entry.name}/"
        try:
            keys = [obj['Key'] for obj in self._list_objects(prefix)]
            self._delete_keys(keys)
        except (ClientError, BotoCoreError, StorageError) as e:
            raise DeleteError(f"Failed to remove s3://{self.bucket_name}/{prefix}: {e}")

    def usage(self) -> Tuple[int, int]:
        """
        Report total size and number of backups in the bucket prefix.

        Raises:
            StorageError: If the listing fails
        """
        try:
            inventory = self._inventory()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to measure {self.target.root_path}: {e}")
        return sum(size for _, size in inventory.values()), len(inventory)

    def location(self, name: str) -> str:
        """Get the URI of a backup in the bucket."""
        return f"s3://{self.bucket_name}/{self.base_prefix}{name}"


def create_target(target: StorageTarget, config: Optional[BackupConfig] = None):
    """
    Factory function to create the handler for a storage target.

    Args:
        target: Configured storage target
        config: Backup configuration (S3 credentials and endpoint)

    Returns:
        LocalTarget or S3Target instance
    """
    if target.is_s3:
        kwargs = {}
        if config is not None:
            kwargs = {
                'access_key': config.s3_access_key,
                'secret_key': config.s3_secret_key,
                'region': config.s3_region,
                'endpoint_url': config.s3_endpoint_url
            }
        return S3Target(target, **kwargs)
    return LocalTarget(target)


def compute_etag(path: Path, file_size: int) -> str:
    """
    Compute the ETag S3 assigns to a file uploaded by S3Target.

    Single-part uploads get the MD5 of the content; multipart uploads get the
    MD5 of the concatenated part digests followed by -<part count>.
    """
    if file_size <= MULTIPART_THRESHOLD:
        digest = hashlib.md5()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b''):
                digest.update(chunk)
        return digest.hexdigest()

    part_digests = []
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(MULTIPART_CHUNK_SIZE), b''):
            part_digests.append(hashlib.md5(chunk).digest())
    return f"{hashlib.md5(b''.join(part_digests)).hexdigest()}-{len(part_digests)}"


def _parse_s3_uri(uri: str) -> Tuple[str, str]:
    """Split s3://bucket/prefix into (bucket, prefix)."""
    bucket, _, prefix = uri[len('s3://'):].partition('/')
    if not bucket:
        raise UnavailableError(f"Invalid S3 location: {uri}")
    return bucket, prefix.strip('/')


def _is_up_to_date(source: Path, target: Path) -> bool:
    """Check whether target already holds the same file as source."""
    if not target.is_file():
        return False
    source_stat = source.stat()
    target_stat = target.stat()
    return (source_stat.st_size == target_stat.st_size and
            int(source_stat.st_mtime) == int(target_stat.st_mtime))


def _copy_file(source: Path, target: Path) -> int:
    """Copy one file through a temporary sibling, preserving metadata."""
    partial = target.with_name(f'.{target.name}.partial')
    try:
        shutil.copy2(source, partial)
        os.replace(partial, target)
    except OSError:
        if partial.exists():
            partial.unlink()
        raise
    return source.stat().st_size


def _remove_path(path: Path):
    """Remove a file, symlink or directory tree if it exists."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _directory_size(path: Path) -> int:
    """Sum of file sizes below a directory, not following symlinks."""
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            if not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total
