import os
import stat
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

from .errors import ReadFailure
from .fingerprint import hash_file_content
from .manifest import FileRecord, Manifest


logger = logging.getLogger('linkbackup')


class ChangeKind(Enum):
    ADDED = 'added'
    MODIFIED = 'modified'
    UNCHANGED = 'unchanged'
    DELETED = 'deleted'


@dataclass
class DiffEntry:
    """Classification of one relative path against the manifest."""
    path: str
    kind: ChangeKind
    digest: Optional[str] = None
    size: Optional[int] = None
    mtime_ns: Optional[int] = None
    previous: Optional[FileRecord] = None

    @property
    def stat_changed(self) -> bool:
        """True for an unchanged file whose size or mtime no longer match its record."""
        if self.kind is not ChangeKind.UNCHANGED or self.previous is None:
            return False
        return (self.size, self.mtime_ns) != (self.previous.size, self.previous.mtime_ns)


class TreeDiffer:
    """
    Compares a source tree with the current state recorded in a manifest.

    Files whose size and mtime match their record are reported unchanged
    without being read, unless ``full_hash`` is set. Files that cannot be
    inspected are collected in ``errors`` and left out of the diff entirely,
    so their records are neither advanced nor marked deleted.
    """

    def __init__(self, source_root, manifest: Manifest, follow_symlinks: bool = False,
                 full_hash: bool = False, exclude: Iterable = ()):
        self.source_root = Path(source_root)
        self.manifest = manifest
        self.follow_symlinks = follow_symlinks
        self.full_hash = full_hash
        self.exclude = {Path(path).resolve() for path in exclude}
        self.errors: List[ReadFailure] = []
        self._unlisted_dirs: List[str] = []

    def diff(self) -> Iterator[DiffEntry]:
        """
        Walk the source tree and yield one entry per file.

        Deleted entries come last since they are only known once the walk
        has finished. Every call performs a fresh walk.
        """
        self.errors = []
        self._unlisted_dirs = []
        seen = set()

        for file_path, relative_path in self._walk():
            try:
                entry = self._classify(file_path, relative_path)
            except ReadFailure as e:
                logger.warning(f"Could not inspect '{file_path}': {e.message}")
                self.errors.append(e)
                seen.add(relative_path)
                continue
            # Anything but a regular file counts as absent.
            if entry is not None:
                seen.add(relative_path)
                yield entry

        for path in self.manifest.tracked_paths():
            if path in seen or self._under_unlisted_dir(path):
                continue
            yield DiffEntry(path=path, kind=ChangeKind.DELETED, previous=self.manifest.current(path))

    def _classify(self, file_path: Path, relative_path: str) -> Optional[DiffEntry]:
        try:
            st = os.stat(file_path)
        except OSError as e:
            raise ReadFailure(file_path, str(e)) from e

        if not stat.S_ISREG(st.st_mode):
            logger.debug(f"Skipping non-regular file '{file_path}'")
            return None

        previous = self.manifest.current(relative_path)
        if previous is None:
            return DiffEntry(path=relative_path, kind=ChangeKind.ADDED,
                             digest=hash_file_content(file_path),
                             size=st.st_size, mtime_ns=st.st_mtime_ns)

        same_stat = previous.size == st.st_size and previous.mtime_ns == st.st_mtime_ns
        if same_stat and not self.full_hash:
            return DiffEntry(path=relative_path, kind=ChangeKind.UNCHANGED,
                             digest=previous.digest, size=st.st_size,
                             mtime_ns=st.st_mtime_ns, previous=previous)

        digest = hash_file_content(file_path)
        kind = ChangeKind.UNCHANGED if digest == previous.digest else ChangeKind.MODIFIED
        return DiffEntry(path=relative_path, kind=kind, digest=digest,
                         size=st.st_size, mtime_ns=st.st_mtime_ns, previous=previous)

    def _walk(self) -> Iterator[Tuple[Path, str]]:
        visited = set()
        for root, dirnames, filenames in os.walk(self.source_root,
                                                 followlinks=self.follow_symlinks,
                                                 onerror=self._on_walk_error):
            root_path = Path(root)

            if self.follow_symlinks:
                try:
                    st = os.stat(root_path)
                except OSError as e:
                    self._on_walk_error(e)
                    dirnames[:] = []
                    continue
                if (st.st_dev, st.st_ino) in visited:
                    logger.debug(f"Skipping already visited directory '{root_path}'")
                    dirnames[:] = []
                    continue
                visited.add((st.st_dev, st.st_ino))

            kept = []
            for name in sorted(dirnames):
                dir_path = root_path / name
                if not self.follow_symlinks and dir_path.is_symlink():
                    logger.debug(f"Skipping symlinked directory '{dir_path}'")
                    continue
                if self.exclude and dir_path.resolve() in self.exclude:
                    logger.debug(f"Skipping excluded directory '{dir_path}'")
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                file_path = root_path / name
                if not self.follow_symlinks and file_path.is_symlink():
                    logger.debug(f"Skipping symlink '{file_path}'")
                    continue
                yield file_path, file_path.relative_to(self.source_root).as_posix()

    def _on_walk_error(self, error: OSError) -> None:
        failed = Path(error.filename) if error.filename else self.source_root
        try:
            relative = failed.relative_to(self.source_root).as_posix()
        except ValueError:
            relative = '.'
        self._unlisted_dirs.append('' if relative == '.' else relative)
        logger.warning(f"Could not list directory '{failed}': {error.strerror or error}")
        self.errors.append(ReadFailure(failed, str(error)))

    def _under_unlisted_dir(self, path: str) -> bool:
        for prefix in self._unlisted_dirs:
            if not prefix or path == prefix or path.startswith(prefix + '/'):
                return True
        return False
