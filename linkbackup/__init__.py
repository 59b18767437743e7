"""
Linkbackup - versioned backups of configured source directories.

Each configured link pairs a source directory with a destination. Every
backup pass creates a new version directory holding only the files that
changed, while a per-link manifest records where each file's content lives
so that any version can be restored.
"""

__version__ = "0.1.0"

# Export public API
from .config import Config, Link, load_config
from .errors import (
    BackupError,
    ConfigError,
    CorruptContent,
    ManifestCorrupt,
    ManifestLocked,
    ManifestMissing,
    PartialFailure,
    ReadFailure,
    VersionNotFound,
    WriteFailure,
)
from .manifest import FileRecord, Manifest, VersionInfo
from .operations import BackupOperations, LinkState, PerLinkResult
from .restore import LATEST, RestoreResult

__all__ = [
    "BackupOperations",
    "Config",
    "Link",
    "load_config",
    "LinkState",
    "PerLinkResult",
    "RestoreResult",
    "LATEST",
    "Manifest",
    "FileRecord",
    "VersionInfo",
    "BackupError",
    "ConfigError",
    "CorruptContent",
    "ManifestCorrupt",
    "ManifestLocked",
    "ManifestMissing",
    "PartialFailure",
    "ReadFailure",
    "VersionNotFound",
    "WriteFailure",
]
