"""
Configuration loading for mailcow-backup.

Settings are read from a KEY=VALUE file (by default /etc/mailcow-backup.env)
with python-dotenv and returned as an immutable BackupConfig. The file is
never loaded into os.environ.
"""

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import dotenv_values

from .errors import BackupError


DEFAULT_CONFIG_FILE = '/etc/mailcow-backup.env'
CONFIG_ENV_VAR = 'MAILCOW_BACKUP_CONFIG'

_TARGET_KEY = re.compile(r'^SMB_SHARE(\d+)$')
_TRUE_VALUES = ('1', 'true', 'yes', 'on')


class ConfigError(BackupError):
    """Raised when the configuration file is missing or invalid."""
    pass


@dataclass(frozen=True)
class StorageTarget:
    """A location holding a retained history of backups."""
    name: str
    root_path: str
    retention_count: int

    @property
    def is_s3(self) -> bool:
        return self.root_path.startswith('s3://')


@dataclass(frozen=True)
class BackupConfig:
    """Immutable settings for one backup run."""

    # Mailcow
    mailcow_dir: Path
    targets: Tuple[StorageTarget, ...]
    threads: int = 1
    components: Tuple[str, ...] = ('all',)
    backup_timeout: Optional[int] = None

    # Gotify
    gotify_url: str = ''
    gotify_token: str = ''
    gotify_priority: int = 8
    gotify_success_priority: int = 5
    notify_self_test: bool = True

    # Runtime
    temp_dir: Path = Path(tempfile.gettempdir())
    log_file: Path = Path('/var/log/mailcow-backup.log')
    log_level: str = 'INFO'
    replicate_parallel: bool = False
    schedule_cron: Optional[str] = None

    # S3 targets
    s3_endpoint_url: Optional[str] = None
    s3_region: str = 'us-east-1'
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None

    @property
    def backup_script(self) -> Path:
        """Path of mailcow's own backup helper."""
        return self.mailcow_dir / 'helper-scripts' / 'backup_and_restore.sh'


def resolve_config_path(path: Optional[str] = None) -> Path:
    """
    Work out which configuration file to read.

    Args:
        path: Explicit path (e.g. from --config), takes precedence

    Returns:
        Path of the configuration file
    """
    if path:
        return Path(path)
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)


def load_config(path: Optional[str] = None) -> BackupConfig:
    """
    Load and validate the configuration file.

    Args:
        path: Path to the KEY=VALUE configuration file

    Returns:
        BackupConfig instance

    Raises:
        ConfigError: If the file is missing or a setting is missing or invalid
    """
    config_path = resolve_config_path(path)
    if not config_path.is_file():
        raise ConfigError(f"Configuration file not found at {config_path}")

    try:
        raw = dotenv_values(config_path)
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {config_path}: {e}")

    values = {key: value.strip() for key, value in raw.items() if value is not None}
    return config_from_mapping(values)


def config_from_mapping(values: Dict[str, str]) -> BackupConfig:
    """
    Build a BackupConfig from already parsed KEY=VALUE settings.

    Raises:
        ConfigError: If a required setting is missing or a value is invalid
    """
    timeout = _get_int(values, 'BACKUP_TIMEOUT', None)
    if timeout is not None and timeout <= 0:
        timeout = None

    components = tuple(values.get('BACKUP_COMPONENTS', '').split()) or ('all',)

    return BackupConfig(
        mailcow_dir=Path(_require(values, 'MAILCOW_DIR')),
        targets=_parse_targets(values),
        threads=_get_int(values, 'THREADS', 1),
        components=components,
        backup_timeout=timeout,
        gotify_url=_require(values, 'GOTIFY_URL').rstrip('/'),
        gotify_token=_require(values, 'GOTIFY_TOKEN'),
        gotify_priority=_get_int(values, 'GOTIFY_PRIORITY', 8),
        gotify_success_priority=_get_int(values, 'GOTIFY_SUCCESS_PRIORITY', 5),
        notify_self_test=_get_bool(values, 'NOTIFY_SELF_TEST', True),
        temp_dir=Path(values.get('TEMP_DIR') or tempfile.gettempdir()),
        log_file=Path(values.get('LOG_FILE') or '/var/log/mailcow-backup.log'),
        log_level=(values.get('LOG_LEVEL') or 'INFO').upper(),
        replicate_parallel=_get_bool(values, 'REPLICATE_PARALLEL', False),
        schedule_cron=values.get('SCHEDULE_CRON') or None,
        s3_endpoint_url=values.get('S3_ENDPOINT_URL') or None,
        s3_region=values.get('S3_REGION') or 'us-east-1',
        s3_access_key=values.get('S3_ACCESS_KEY') or None,
        s3_secret_key=values.get('S3_SECRET_KEY') or None,
    )


def _parse_targets(values: Dict[str, str]) -> Tuple[StorageTarget, ...]:
    """
    Collect SMB_SHARE<n> / SMB<n>_RETENTION_COUNT pairs, ordered by n.

    Raises:
        ConfigError: If no target is configured or a target is incomplete
    """
    # n -> digits as written in the key (SMB_SHARE01 keeps "01")
    suffixes = {}
    for key, value in values.items():
        match = _TARGET_KEY.match(key)
        if not match or not value:
            continue
        number = int(match.group(1))
        if number in suffixes:
            raise ConfigError(
                f"Storage target {number} is configured more than once "
                f"(SMB_SHARE{suffixes[number]} and {key})"
            )
        suffixes[number] = match.group(1)

    if not suffixes:
        raise ConfigError("No storage targets configured (expected SMB_SHARE1, SMB_SHARE2, ...)")

    targets = []
    seen_roots = set()
    for number in sorted(suffixes):
        suffix = suffixes[number]
        root_path = values[f'SMB_SHARE{suffix}']
        if len(root_path) > 1 and not root_path.startswith('s3://'):
            root_path = root_path.rstrip('/')
        if root_path in seen_roots:
            raise ConfigError(f"Storage target {root_path} is configured more than once")
        seen_roots.add(root_path)

        retention_key = f'SMB{suffix}_RETENTION_COUNT'
        retention_count = _get_int(values, retention_key, None)
        if retention_count is None:
            raise ConfigError(f"Missing required setting: {retention_key}")

        targets.append(StorageTarget(
            name=values.get(f'SMB{suffix}_NAME') or f'SMB Share {number}',
            root_path=root_path,
            retention_count=retention_count
        ))

    return tuple(targets)


def _require(values: Dict[str, str], key: str) -> str:
    value = values.get(key)
    if not value:
        raise ConfigError(f"Missing required setting: {key}")
    return value


def _get_int(values: Dict[str, str], key: str, default: Optional[int]) -> Optional[int]:
    value = values.get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Setting {key} must be an integer, got {value!r}")


def _get_bool(values: Dict[str, str], key: str, default: bool) -> bool:
    value = values.get(key)
    if not value:
        return default
    return value.lower() in _TRUE_VALUES
