"""Error taxonomy for the backup/restore pipeline."""
from typing import Optional


class BackupError(Exception):
    """Base class for backup and restore failures."""


class InvalidArchive(BackupError):
    """Upload is neither a complete tar nor a complete gzip-wrapped tar.

    Raised before any destructive step, so the data root is unchanged.
    """


class IOFailure(BackupError):
    """Read/write/delete failure on a single entry during pack, wipe or extract."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ResourceReinitFailure(BackupError):
    """Config reload or database reconnect failed after a restore."""


class StreamTerminated(BackupError):
    """Export stream ended early (producer error or consumer disconnect)."""


class RestoreInProgress(BackupError):
    """Another restore is already running."""


class RestoreFailed(BackupError):
    """Restore failed after the wipe began; the data root is in a transitional state."""

    def __init__(self, message: str, stage: str):
        super().__init__(message)
        self.stage = stage


class ConfigError(Exception):
    """Local configuration file could not be read."""
