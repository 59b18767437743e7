import os
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Union

from .errors import CorruptContent, FileFailure, ReadFailure, VersionNotFound, WriteFailure
from .fingerprint import copy_and_hash
from .manifest import FileRecord, Manifest


logger = logging.getLogger('linkbackup')

# Version selector meaning "most recent completed version".
LATEST = 'latest'

VersionSelector = Union[int, str, None]


@dataclass
class RestoreResult:
    """Outcome of restoring one link."""
    link: Any
    version: Optional[int] = None
    target: Optional[Path] = None
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[FileFailure] = field(default_factory=list)
    failure: Optional[Exception] = None
    dry_run: bool = False

    @property
    def status(self) -> str:
        if self.failure is not None:
            return "failed"
        if self.errors:
            return "completed with errors"
        return "ok"


class RestoreEngine:
    """Rebuilds the file set of a version from a link's destination."""

    def __init__(self, manifest: Manifest, destination_root):
        self.manifest = manifest
        self.destination_root = Path(destination_root)

    def resolve_version(self, selector: VersionSelector = LATEST) -> int:
        """
        Turn a version selector into a concrete version.

        Raises:
            VersionNotFound: If the selector names no completed version
        """
        if selector is None or selector == LATEST:
            version = self.manifest.last_version
            if version is None:
                raise VersionNotFound("No completed version exists yet")
            return version

        try:
            version = int(selector)
        except (TypeError, ValueError):
            raise VersionNotFound(f"Invalid version selector: {selector!r}")
        if self.manifest.get_version(version) is None:
            raise VersionNotFound(f"Version {version} does not exist")
        return version

    def restore(self, target_root, selector: VersionSelector = LATEST, overwrite: bool = True,
                dry_run: bool = False, link: Any = None) -> RestoreResult:
        """
        Restore a version into ``target_root``.

        Files present in the target but absent from the version are left
        alone. Each file is verified against its recorded digest before it
        replaces anything at the target.

        Args:
            target_root: Directory to restore into, created if missing
            selector: Version number or LATEST
            overwrite: Replace files that already exist at the target
            dry_run: Only report what would be restored
            link: Link the result is reported for

        Returns:
            RestoreResult: Restored, skipped and failed paths

        Raises:
            VersionNotFound: If the selected version does not exist
            WriteFailure: If the target directory cannot be created
        """
        version = self.resolve_version(selector)
        target_root = Path(target_root)
        files = self.manifest.resolve(version)
        result = RestoreResult(link=link, version=version, target=target_root, dry_run=dry_run)

        logger.info(f"Restoring version {version} ({len(files)} files) to '{target_root}'")

        if not dry_run:
            try:
                target_root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise WriteFailure(target_root, f"cannot create restore directory: {e}") from e

        for path in sorted(files):
            target_path = target_root / path
            if not overwrite and (target_path.exists() or target_path.is_symlink()):
                logger.debug(f"Keeping existing file '{target_path}'")
                result.skipped.append(path)
                continue

            if dry_run:
                logger.info(f"Would restore '{path}' from version {files[path].stored_version}")
                result.restored.append(path)
                continue

            try:
                self._restore_file(files[path], target_path)
            except FileFailure as e:
                logger.warning(f"Could not restore '{path}': {e.message}")
                result.errors.append(e)
                continue
            result.restored.append(path)

        if result.errors:
            logger.warning(f"Skipped {len(result.errors)} files due to errors")
        logger.info(
            f"Restored {len(result.restored)}/{len(files)} files from version {version} "
            f"to '{target_root}'"
        )
        return result

    def stored_path(self, record: FileRecord) -> Path:
        return self.destination_root / str(record.stored_version) / record.path

    def _restore_file(self, record: FileRecord, target_path: Path) -> None:
        stored = self.stored_path(record)
        if not stored.is_file():
            raise ReadFailure(stored, "stored copy is missing")

        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target_path.name}.", suffix=".restore",
                                            dir=target_path.parent)
            os.close(fd)
        except OSError as e:
            raise WriteFailure(target_path, str(e)) from e

        tmp_path = Path(tmp_name)
        try:
            digest, _ = copy_and_hash(stored, tmp_path)
            if digest != record.digest:
                raise CorruptContent(stored, f"expected digest {record.digest}, found {digest}")
            try:
                os.utime(tmp_path, ns=(record.mtime_ns, record.mtime_ns))
                os.replace(tmp_path, target_path)
            except OSError as e:
                raise WriteFailure(target_path, str(e)) from e
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove temporary file '{tmp_path}': {e}")
