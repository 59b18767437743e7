import os
import time
import pytest
import tempfile
from pathlib import Path

from linkbackup.config import Config, Link
from linkbackup.manifest import Manifest
from linkbackup.operations import BackupOperations


# ---- Helper functions for both approaches ----

def create_test_files(directory, count=5):
    """Create test files in the specified directory."""
    # Create text files
    for i in range(1, count):
        with open(directory / f"file_{i}.txt", "w") as f:
            f.write(f"Content of file {i}")

    # Create a binary file
    with open(directory / "binary.bin", "wb") as f:
        f.write(os.urandom(1024))  # 1KB of random data


def modify_file(path, content):
    """
    Rewrite a file and move its mtime forward.

    Some filesystems have coarse timestamps, so the mtime is pushed past
    both its previous value and the current time to make the change visible.
    """
    path = Path(path)
    previous = path.stat().st_mtime_ns if path.exists() else 0
    with open(path, 'wb' if isinstance(content, bytes) else 'w') as f:
        f.write(content)
    mtime_ns = max(previous, time.time_ns()) + 1_000_000_000
    os.utime(path, ns=(mtime_ns, mtime_ns))


def read_tree(directory):
    """Map every file below a directory (relative POSIX path) to its bytes."""
    directory = Path(directory)
    tree = {}
    for root, _, files in os.walk(directory):
        for name in files:
            file_path = Path(root) / name
            tree[file_path.relative_to(directory).as_posix()] = file_path.read_bytes()
    return tree


# ---- Individual fixtures for flexible test composition ----

@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def source_dir(temp_dir):
    """Create a source directory with test files."""
    source_dir = temp_dir / "source"
    os.makedirs(source_dir)
    create_test_files(source_dir)
    return source_dir


@pytest.fixture
def manifest(temp_dir):
    """An empty manifest inside a fresh destination directory."""
    destination = temp_dir / "backup"
    os.makedirs(destination)
    return Manifest(Manifest.for_destination(destination))


# ---- Base test class for inheritance-based testing ----

class TestBase:
    """Base class for all backup tests providing isolation and cleanup."""

    def setUp(self):
        """
        Set up the test environment.

        This method:
        1. Creates a temporary directory
        2. Sets up source, backup and restore directories
        3. Creates test files
        4. Builds a single-link configuration and its operations object
        """
        self.temp_dir = tempfile.TemporaryDirectory()
        self.working_dir = Path(self.temp_dir.name)

        self.source_dir = self.working_dir / "source"
        self.backup_dir = self.working_dir / "backup"
        self.restore_dir = self.working_dir / "restore"
        os.makedirs(self.source_dir)
        os.makedirs(self.restore_dir)

        self._create_test_files()

        self.link = Link(name="source", source=self.source_dir, destination=self.backup_dir)
        self.config = Config(links=[self.link])
        self.ops = BackupOperations(self.config)

    def tearDown(self):
        """Clean up the temporary directory."""
        try:
            self.temp_dir.cleanup()
        except (PermissionError, OSError) as e:
            print(f"Warning: Could not clean up temporary directory: {e}")

    @pytest.fixture(autouse=True)
    def _setup_teardown_fixture(self):
        """
        Pytest fixture to automatically call setUp and tearDown.

        This fixture is automatically used by all test methods in classes
        that inherit from TestBase.
        """
        self.setUp()
        yield
        self.tearDown()

    def _create_test_files(self):
        """Create test files in the source directory."""
        create_test_files(self.source_dir)

    def load_manifest(self):
        return Manifest.load(Manifest.for_destination(self.backup_dir), must_exist=True)

    def run_backup(self, **kwargs):
        """Back up the test link and return its result."""
        results = self.ops.backup(**kwargs)
        assert len(results) == 1
        return results[0]
