"""
Exception types raised by the backup engine.

Per-file problems (``ReadFailure``, ``WriteFailure``) are collected into
result objects and reported; manifest-level problems fail a single link.
"""

from typing import List, Optional


class BackupError(Exception):
    """Base class for every error raised by linkbackup."""


class ConfigError(BackupError):
    """The configuration file is missing, malformed or inconsistent."""


class FileFailure(BackupError):
    """A failure tied to one file."""

    def __init__(self, path, message: str):
        self.path = str(path)
        self.message = message
        super().__init__(f"{self.path}: {message}")


class ReadFailure(FileFailure):
    """A file could not be read."""


class CorruptContent(ReadFailure):
    """Stored content no longer matches its recorded digest."""


class WriteFailure(FileFailure):
    """A file could not be written or copied to its destination."""


class ManifestCorrupt(BackupError):
    """The persisted manifest exists but cannot be parsed."""


class ManifestMissing(BackupError):
    """No manifest exists where one is required."""


class ManifestLocked(BackupError):
    """Another process holds exclusive access to the manifest."""


class VersionNotFound(BackupError):
    """The requested version does not exist in the manifest."""


class PartialFailure(BackupError):
    """Some files of a pass could not be handled."""

    def __init__(self, message: str, errors: Optional[List[FileFailure]] = None):
        self.errors = list(errors or [])
        super().__init__(message)
