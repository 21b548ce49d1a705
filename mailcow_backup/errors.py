"""
Exception hierarchy for mailcow-backup.

Each module defines the errors it raises; they all share BackupError as a
base so the executor can tell domain failures apart from unexpected ones.
"""


class BackupError(Exception):
    """Base class for all errors raised by mailcow-backup."""
    pass
