import os
import pytest

from linkbackup import differ as differ_module
from linkbackup.differ import ChangeKind, TreeDiffer
from linkbackup.errors import ReadFailure
from linkbackup.fingerprint import hash_file_content
from tests.conftest import modify_file


def _record_tree(manifest, source_dir, version=1):
    """Record every file of the source as stored in the given version."""
    for root, _, files in os.walk(source_dir):
        for name in files:
            path = os.path.join(root, name)
            st = os.stat(path)
            relative = os.path.relpath(path, source_dir).replace(os.sep, "/")
            manifest.record(relative, hash_file_content(path), st.st_size, st.st_mtime_ns, version)


def _kinds(entries):
    return {entry.path: entry.kind for entry in entries}


def test_first_walk_is_all_added(source_dir, manifest):
    entries = list(TreeDiffer(source_dir, manifest).diff())
    kinds = _kinds(entries)

    assert set(kinds) == {"file_1.txt", "file_2.txt", "file_3.txt", "file_4.txt", "binary.bin"}
    assert set(kinds.values()) == {ChangeKind.ADDED}
    for entry in entries:
        assert entry.digest == hash_file_content(source_dir / entry.path)


def test_unchanged_files_are_not_hashed(source_dir, manifest, monkeypatch):
    _record_tree(manifest, source_dir)
    calls = []
    monkeypatch.setattr(differ_module, "hash_file_content", lambda path: calls.append(path))

    entries = list(TreeDiffer(source_dir, manifest).diff())

    assert set(_kinds(entries).values()) == {ChangeKind.UNCHANGED}
    assert calls == []


def test_modified_file(source_dir, manifest):
    _record_tree(manifest, source_dir)
    modify_file(source_dir / "file_1.txt", "Content of file 9")

    entries = {entry.path: entry for entry in TreeDiffer(source_dir, manifest).diff()}

    assert entries["file_1.txt"].kind is ChangeKind.MODIFIED
    assert entries["file_1.txt"].digest != manifest.current("file_1.txt").digest
    assert entries["file_2.txt"].kind is ChangeKind.UNCHANGED


def test_touched_file_with_same_content_is_unchanged(source_dir, manifest):
    _record_tree(manifest, source_dir)
    modify_file(source_dir / "file_2.txt", "Content of file 2")

    entries = {entry.path: entry for entry in TreeDiffer(source_dir, manifest).diff()}

    entry = entries["file_2.txt"]
    assert entry.kind is ChangeKind.UNCHANGED
    assert entry.stat_changed
    assert entry.digest == manifest.current("file_2.txt").digest


def test_deleted_files_come_last(source_dir, manifest):
    _record_tree(manifest, source_dir)
    os.unlink(source_dir / "file_3.txt")

    entries = list(TreeDiffer(source_dir, manifest).diff())

    assert entries[-1].path == "file_3.txt"
    assert entries[-1].kind is ChangeKind.DELETED
    assert entries[-1].previous.path == "file_3.txt"


def test_nested_paths_use_forward_slashes(source_dir, manifest):
    os.makedirs(source_dir / "a" / "b")
    (source_dir / "a" / "b" / "deep.txt").write_text("deep")

    kinds = _kinds(TreeDiffer(source_dir, manifest).diff())
    assert kinds["a/b/deep.txt"] is ChangeKind.ADDED


def test_full_hash_catches_same_stat_change(source_dir, manifest):
    """With full hashing a rewrite that keeps size and mtime is still detected."""
    _record_tree(manifest, source_dir)
    path = source_dir / "file_1.txt"
    st = os.stat(path)
    path.write_text("Content of file X")
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))

    fast = _kinds(TreeDiffer(source_dir, manifest).diff())
    assert fast["file_1.txt"] is ChangeKind.UNCHANGED

    full = _kinds(TreeDiffer(source_dir, manifest, full_hash=True).diff())
    assert full["file_1.txt"] is ChangeKind.MODIFIED


def test_excluded_destination_is_not_walked(source_dir, manifest):
    inner = source_dir / "backups"
    os.makedirs(inner / "1")
    (inner / "1" / "file_1.txt").write_text("old copy")

    kinds = _kinds(TreeDiffer(source_dir, manifest, exclude=[inner]).diff())
    assert not any(path.startswith("backups/") for path in kinds)


def test_unreadable_file_is_reported_not_deleted(source_dir, manifest, monkeypatch):
    _record_tree(manifest, source_dir)
    modify_file(source_dir / "file_4.txt", "Changed content 4")

    real_hash = differ_module.hash_file_content

    def failing_hash(path):
        if str(path).endswith("file_4.txt"):
            raise ReadFailure(path, "Permission denied")
        return real_hash(path)

    monkeypatch.setattr(differ_module, "hash_file_content", failing_hash)
    differ = TreeDiffer(source_dir, manifest)
    kinds = _kinds(differ.diff())

    assert "file_4.txt" not in kinds
    assert len(differ.errors) == 1
    assert differ.errors[0].path.endswith("file_4.txt")


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="named pipes not available")
def test_file_replaced_by_fifo_is_deleted(source_dir, manifest):
    """A tracked path that is no longer a regular file counts as deleted."""
    _record_tree(manifest, source_dir)
    os.unlink(source_dir / "file_2.txt")
    os.mkfifo(source_dir / "file_2.txt")

    kinds = _kinds(TreeDiffer(source_dir, manifest).diff())

    assert kinds["file_2.txt"] is ChangeKind.DELETED
    assert kinds["file_1.txt"] is ChangeKind.UNCHANGED


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="named pipes not available")
def test_untracked_fifo_is_ignored(source_dir, manifest):
    os.mkfifo(source_dir / "pipe")
    kinds = _kinds(TreeDiffer(source_dir, manifest).diff())
    assert "pipe" not in kinds


def test_walk_is_fresh_each_time(source_dir, manifest):
    differ = TreeDiffer(source_dir, manifest)
    assert len(list(differ.diff())) == 5
    (source_dir / "late.txt").write_text("late")
    assert len(list(differ.diff())) == 6


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks not available")
class TestSymlinks:

    @pytest.fixture(autouse=True)
    def _links(self, source_dir, temp_dir):
        outside = temp_dir / "outside"
        os.makedirs(outside)
        (outside / "target.txt").write_text("outside")
        try:
            os.symlink(outside / "target.txt", source_dir / "link.txt")
            os.symlink(outside, source_dir / "linked_dir", target_is_directory=True)
            os.symlink(source_dir, source_dir / "loop", target_is_directory=True)
        except (OSError, NotImplementedError):
            pytest.skip("cannot create symlinks here")

    def test_skipped_by_default(self, source_dir, manifest):
        kinds = _kinds(TreeDiffer(source_dir, manifest).diff())
        assert "link.txt" not in kinds
        assert not any(path.startswith(("linked_dir/", "loop/")) for path in kinds)

    def test_followed_when_enabled(self, source_dir, manifest):
        kinds = _kinds(TreeDiffer(source_dir, manifest, follow_symlinks=True).diff())
        assert kinds["link.txt"] is ChangeKind.ADDED
        assert kinds["linked_dir/target.txt"] is ChangeKind.ADDED
        # The loop back to the source root is entered at most once.
        assert not any(path.startswith("loop/loop/") for path in kinds)
