import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List

from .differ import ChangeKind, DiffEntry
from .errors import FileFailure, WriteFailure
from .fingerprint import copy_and_hash
from .manifest import FileRecord


logger = logging.getLogger('linkbackup')


@dataclass
class MaterializationResult:
    """What a materialization pass stored, and the records it produced."""
    version: int
    directory: Path
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: int = 0
    attempted: int = 0
    bytes_copied: int = 0
    records: List[FileRecord] = field(default_factory=list)
    errors: List[FileFailure] = field(default_factory=list)

    @property
    def copied(self) -> int:
        return len(self.added) + len(self.modified)


class VersionMaterializer:
    """Creates a version directory and copies added and modified files into it."""

    def __init__(self, source_root, destination_root):
        self.source_root = Path(source_root)
        self.destination_root = Path(destination_root)

    def materialize(self, entries: Iterable[DiffEntry], version: int) -> MaterializationResult:
        """
        Materialize a new version from a sequence of diff entries.

        Only added and modified files are copied. Unchanged files keep
        pointing at the version that already holds their bytes, and deleted
        files only produce a deletion record. A file that fails to copy is
        reported in ``errors`` and gets no record.

        Args:
            entries: Diff entries for the pass
            version: Identifier of the version being created

        Returns:
            MaterializationResult: Stored paths, counters and the new manifest records

        Raises:
            WriteFailure: If the version directory itself cannot be created
        """
        version_dir = self.destination_root / str(version)
        try:
            version_dir.mkdir(parents=True)
        except OSError as e:
            raise WriteFailure(version_dir, f"cannot create version directory: {e}") from e

        logger.info(f"Materializing version {version} into '{version_dir}'")
        result = MaterializationResult(version=version, directory=version_dir)

        for entry in entries:
            if entry.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
                result.attempted += 1
                try:
                    record = self._store(entry, version, version_dir)
                except FileFailure as e:
                    logger.warning(f"Could not back up '{entry.path}': {e.message}")
                    result.errors.append(e)
                    continue
                result.records.append(record)
                result.bytes_copied += record.size
                if entry.kind is ChangeKind.ADDED:
                    result.added.append(entry.path)
                else:
                    result.modified.append(entry.path)

            elif entry.kind is ChangeKind.UNCHANGED:
                result.unchanged += 1
                if entry.stat_changed:
                    # Same content under a new size/mtime: refresh the record, keep the old copy.
                    result.records.append(FileRecord(
                        path=entry.path,
                        version=version,
                        stored_version=entry.previous.stored_version,
                        digest=entry.digest,
                        size=entry.size,
                        mtime_ns=entry.mtime_ns,
                    ))

            elif entry.kind is ChangeKind.DELETED:
                result.records.append(FileRecord(
                    path=entry.path, version=version, stored_version=None,
                    digest=None, size=0, mtime_ns=0, deleted=True,
                ))
                result.deleted.append(entry.path)

        logger.info(
            f"Version {version}: {len(result.added)} added, {len(result.modified)} modified, "
            f"{len(result.deleted)} deleted, {result.unchanged} unchanged, "
            f"{result.bytes_copied / 1_048_576:.2f} MB copied"
        )
        return result

    def _store(self, entry: DiffEntry, version: int, version_dir: Path) -> FileRecord:
        source_path = self.source_root / entry.path
        target_path = version_dir / entry.path

        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteFailure(target_path.parent, str(e)) from e

        try:
            digest, size = self._copy_file(source_path, target_path)
        except FileFailure:
            self._discard(target_path)
            raise

        # The record keeps the stat taken before the copy. A source that
        # changed since then no longer matches it and is hashed next pass.
        try:
            st = os.stat(source_path)
        except OSError as e:
            logger.debug(f"Could not stat '{source_path}' after copying: {e}")
        else:
            if (st.st_size, st.st_mtime_ns) != (entry.size, entry.mtime_ns):
                logger.info(f"'{entry.path}' changed while being backed up, "
                            f"it will be checked again on the next pass")
        if digest != entry.digest:
            logger.info(f"'{entry.path}' changed while being backed up, storing the copied content")

        try:
            os.utime(target_path, ns=(entry.mtime_ns, entry.mtime_ns))
        except OSError as e:
            logger.debug(f"Could not carry timestamps over to '{target_path}': {e}")

        return FileRecord(path=entry.path, version=version, stored_version=version,
                          digest=digest, size=size, mtime_ns=entry.mtime_ns)

    def _copy_file(self, source_path: Path, target_path: Path):
        return copy_and_hash(source_path, target_path)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.warning(f"Could not remove partial copy '{path}': {e}")
