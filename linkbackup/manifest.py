import os
import json
import socket
import sqlite3
import logging
from contextlib import closing
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import ManifestCorrupt, ManifestLocked, ManifestMissing, WriteFailure


logger = logging.getLogger('linkbackup')


@dataclass
class FileRecord:
    """One manifest entry for a relative path."""
    path: str
    version: int
    stored_version: Optional[int]
    digest: Optional[str]
    size: int
    mtime_ns: int
    deleted: bool = False


@dataclass
class VersionInfo:
    """One completed backup pass of a link."""
    id: int
    timestamp: str
    added: int = 0
    modified: int = 0
    deleted: int = 0
    unchanged: int = 0
    bytes_copied: int = 0


class Manifest:
    """
    Snapshot manifest of a single link.

    The whole manifest is held in memory while a pass runs. It is stored as an
    SQLite database inside the link's destination and replaced atomically by
    ``persist()``; nothing touches the file on disk until then.
    """

    FILENAME = '.manifest.db'
    FORMAT_VERSION = 1

    def __init__(self, path):
        self.path = Path(path)
        self._history: Dict[str, List[FileRecord]] = {}
        self._versions: Dict[int, VersionInfo] = {}

    @classmethod
    def for_destination(cls, destination) -> Path:
        return Path(destination) / cls.FILENAME

    @classmethod
    def load(cls, path, must_exist: bool = False) -> 'Manifest':
        """
        Load a manifest from disk.

        A missing manifest yields an empty one (first backup of a link)
        unless ``must_exist`` is set.

        Raises:
            ManifestMissing: If the file does not exist and must_exist is True
            ManifestCorrupt: If the file exists but cannot be parsed
        """
        manifest = cls(path)
        if not manifest.path.exists():
            if must_exist:
                raise ManifestMissing(f"No manifest found at '{manifest.path}'")
            logger.debug(f"No manifest at '{manifest.path}', starting empty")
            return manifest

        try:
            with closing(sqlite3.connect(str(manifest.path))) as conn:
                conn.row_factory = sqlite3.Row
                format_version = conn.execute("PRAGMA user_version").fetchone()[0]
                if format_version != cls.FORMAT_VERSION:
                    raise ManifestCorrupt(
                        f"Manifest '{manifest.path}' has unsupported format {format_version}"
                    )
                for row in conn.execute(
                    "SELECT id, timestamp, added, modified, deleted, unchanged, bytes_copied "
                    "FROM versions ORDER BY id"
                ):
                    manifest._versions[row['id']] = VersionInfo(**dict(row))
                for row in conn.execute(
                    "SELECT path, version, stored_version, digest, size, mtime_ns, deleted "
                    "FROM records ORDER BY path, version"
                ):
                    record = FileRecord(**dict(row))
                    record.deleted = bool(record.deleted)
                    manifest._history.setdefault(record.path, []).append(record)
        except sqlite3.Error as e:
            raise ManifestCorrupt(f"Cannot read manifest '{manifest.path}': {e}") from e

        logger.debug(
            f"Loaded manifest '{manifest.path}' with {len(manifest._versions)} versions "
            f"and {len(manifest._history)} paths"
        )
        return manifest

    def current(self, path: str) -> Optional[FileRecord]:
        """Return the latest record of a path, or None if untracked or deleted."""
        history = self._history.get(path)
        if not history or history[-1].deleted:
            return None
        return history[-1]

    def history(self, path: str) -> List[FileRecord]:
        return list(self._history.get(path, []))

    def tracked_paths(self) -> List[str]:
        """Paths whose latest record is a live file."""
        return [path for path, history in self._history.items() if not history[-1].deleted]

    def apply(self, record: FileRecord) -> None:
        """Append an already built record as the new current one for its path."""
        history = self._history.setdefault(record.path, [])
        if history and history[-1].version >= record.version:
            raise ValueError(
                f"Path '{record.path}' already has a record for version {history[-1].version}"
            )
        history.append(record)

    def record(self, path: str, digest: str, size: int, mtime_ns: int, version: int,
               stored_version: Optional[int] = None) -> FileRecord:
        """
        Append a new current record for a path.

        ``stored_version`` names the version directory holding the bytes and
        defaults to ``version``. Earlier records stay in the history.
        """
        record = FileRecord(
            path=path,
            version=version,
            stored_version=version if stored_version is None else stored_version,
            digest=digest,
            size=size,
            mtime_ns=mtime_ns,
        )
        self.apply(record)
        return record

    def mark_deleted(self, path: str, version: int) -> FileRecord:
        record = FileRecord(path=path, version=version, stored_version=None,
                            digest=None, size=0, mtime_ns=0, deleted=True)
        self.apply(record)
        return record

    def add_version(self, info: VersionInfo) -> None:
        if info.id in self._versions:
            raise ValueError(f"Version {info.id} is already recorded")
        if self._versions and info.id < max(self._versions):
            raise ValueError(f"Version {info.id} is older than the latest recorded version")
        self._versions[info.id] = info

    def versions(self) -> List[VersionInfo]:
        return [self._versions[key] for key in sorted(self._versions)]

    def get_version(self, version: int) -> Optional[VersionInfo]:
        return self._versions.get(version)

    @property
    def last_version(self) -> Optional[int]:
        return max(self._versions) if self._versions else None

    def next_version(self) -> int:
        """
        Pick the identifier for a new version.

        Version directories left behind by an interrupted pass are not in the
        manifest but still occupy their number, so they are skipped too.
        """
        highest = self.last_version or 0
        if self.path.parent.is_dir():
            for entry in self.path.parent.iterdir():
                if entry.is_dir() and entry.name.isdigit():
                    highest = max(highest, int(entry.name))
        return highest + 1

    def resolve(self, version: int) -> Dict[str, FileRecord]:
        """
        Reconstruct the live file set of a version.

        For each path the latest record at or before ``version`` wins;
        paths whose winning record is a deletion marker are left out.
        """
        files = {}
        for path, history in self._history.items():
            chosen = None
            for record in history:
                if record.version > version:
                    break
                chosen = record
            if chosen is not None and not chosen.deleted:
                files[path] = chosen
        return files

    def stored_records(self) -> Iterator[FileRecord]:
        """Yield one record per physical copy kept in the destination."""
        seen = set()
        for history in self._history.values():
            for record in history:
                if record.deleted:
                    continue
                key = (record.stored_version, record.path)
                if key not in seen:
                    seen.add(key)
                    yield record

    def persist(self) -> None:
        """
        Write the manifest durably.

        A complete database is written to a temporary file next to the
        manifest and then moved over it, so a crash leaves either the old or
        the new manifest and never a partial one.

        Raises:
            WriteFailure: If the manifest could not be written
        """
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        try:
            if tmp_path.exists():
                tmp_path.unlink()
            with closing(sqlite3.connect(str(tmp_path))) as conn:
                self._write_tables(conn)
                conn.commit()
            _fsync_file(tmp_path)
            os.replace(tmp_path, self.path)
        except (sqlite3.Error, OSError) as e:
            try:
                if tmp_path.exists():
                    tmp_path.unlink()
            except OSError:
                logger.warning(f"Could not remove temporary manifest '{tmp_path}'")
            raise WriteFailure(self.path, f"could not persist manifest: {e}") from e

        _fsync_directory(self.path.parent)
        logger.debug(f"Persisted manifest '{self.path}' at version {self.last_version}")

    def _write_tables(self, conn: sqlite3.Connection) -> None:
        cursor = conn.cursor()
        cursor.execute(f"PRAGMA user_version = {self.FORMAT_VERSION}")

        cursor.execute('''
        CREATE TABLE versions (
            id INTEGER PRIMARY KEY,
            timestamp TEXT NOT NULL,
            added INTEGER NOT NULL,
            modified INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            unchanged INTEGER NOT NULL,
            bytes_copied INTEGER NOT NULL
        )
        ''')

        cursor.execute('''
        CREATE TABLE records (
            path TEXT NOT NULL,
            version INTEGER NOT NULL,
            stored_version INTEGER,
            digest TEXT,
            size INTEGER NOT NULL,
            mtime_ns INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            FOREIGN KEY (version) REFERENCES versions(id),
            UNIQUE (path, version)
        )
        ''')

        cursor.executemany(
            "INSERT INTO versions (id, timestamp, added, modified, deleted, unchanged, bytes_copied) "
            "VALUES (:id, :timestamp, :added, :modified, :deleted, :unchanged, :bytes_copied)",
            [asdict(info) for info in self.versions()]
        )
        cursor.executemany(
            "INSERT INTO records (path, version, stored_version, digest, size, mtime_ns, deleted) "
            "VALUES (:path, :version, :stored_version, :digest, :size, :mtime_ns, :deleted)",
            [asdict(record) for history in self._history.values() for record in history]
        )


def _fsync_file(file_path: Path) -> None:
    fd = os.open(str(file_path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _fsync_directory(dir_path: Path) -> None:
    # Not every platform can open a directory for fsync.
    if not hasattr(os, 'O_DIRECTORY'):
        return
    try:
        fd = os.open(str(dir_path), os.O_RDONLY | os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug(f"fsync not supported for directory '{dir_path}'")
    finally:
        os.close(fd)


class ManifestLock:
    """
    Exclusive access to a link's manifest for the lifetime of one operation.

    The lock is a file created with O_EXCL holding the owner's pid and host.
    A lock left by a dead process on this host is treated as stale and taken over.
    """

    FILENAME = '.manifest.lock'

    def __init__(self, directory):
        self.path = Path(directory) / self.FILENAME
        self.acquired = False

    def acquire(self) -> None:
        lock_data = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": datetime.now().isoformat(),
        }
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._is_stale():
                    logger.warning(f"Removing stale manifest lock '{self.path}'")
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                raise ManifestLocked(f"Manifest is locked by another process: '{self.path}'")
            try:
                os.write(fd, json.dumps(lock_data).encode())
            finally:
                os.close(fd)
            self.acquired = True
            logger.debug(f"Acquired manifest lock '{self.path}'")
            return
        raise ManifestLocked(f"Could not acquire manifest lock '{self.path}'")

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self.acquired = False
        logger.debug(f"Released manifest lock '{self.path}'")

    def _is_stale(self) -> bool:
        try:
            with open(self.path) as f:
                content = f.read()
            if not content.strip():
                # Owner is between creating and writing the lock.
                return False
            lock_data = json.loads(content)
            pid = int(lock_data["pid"])
            hostname = lock_data["hostname"]
        except (OSError, ValueError, KeyError, TypeError):
            logger.warning(f"Manifest lock '{self.path}' is unreadable")
            return True

        if hostname != socket.gethostname() or os.name == 'nt':
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def __enter__(self) -> 'ManifestLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
