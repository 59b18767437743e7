import os
import pytest

# Import the necessary modules from the linkbackup package
try:
    from linkbackup.operations import BackupOperations
    from linkbackup.manifest import Manifest
    from linkbackup.fingerprint import hash_file_content
except ImportError as e:
    pytest.skip(f"Failed to import linkbackup modules: {e}", allow_module_level=True)
from tests.conftest import TestBase


class TestHealth(TestBase):
    """Basic health check tests for the backup tool."""

    def test_imports(self):
        """Test that all required modules can be imported."""
        assert BackupOperations is not None
        assert Manifest is not None
        assert hash_file_content is not None

    def test_package_exports(self):
        """Test that the public API is exported from the package."""
        import linkbackup
        for name in linkbackup.__all__:
            assert hasattr(linkbackup, name), f"{name} is not exported"

    def test_operations_initialization(self):
        """Test that BackupOperations keeps the configuration it was given."""
        assert self.ops.config is self.config
        assert self.ops.config.links == [self.link]

    def test_first_backup_creates_manifest(self):
        """Test that the first backup creates the destination and its manifest."""
        assert not self.backup_dir.exists()
        result = self.run_backup()
        assert result.status == "ok"
        assert os.path.exists(Manifest.for_destination(self.backup_dir))

    def test_hash_function(self):
        """Test that the hash_file_content function works correctly."""
        test_file = self.working_dir / "test.txt"
        with open(test_file, "w") as f:
            f.write("Test content")

        file_hash = hash_file_content(str(test_file))
        assert isinstance(file_hash, str)
        assert len(file_hash) == 64

    def test_check_integrity(self):
        """Test that the check operation correctly identifies corrupted content."""
        self.run_backup()

        all_valid, corrupted_items = self.ops.check(self.link)
        assert all_valid is True
        assert corrupted_items == []

        # Corrupt one stored copy by changing its first byte
        stored = self.backup_dir / "1" / "file_1.txt"
        data = bytearray(stored.read_bytes())
        data[0] = (data[0] + 1) % 256
        stored.write_bytes(bytes(data))

        all_valid, corrupted_items = self.ops.check(self.link)
        assert all_valid is False
        assert len(corrupted_items) == 1
        assert corrupted_items[0]['path'] == "file_1.txt"
        assert corrupted_items[0]['version'] == 1
        assert corrupted_items[0]['calculated_hash'] != corrupted_items[0]['stored_hash']

    def test_check_reports_missing_copy(self):
        """Test that a stored copy removed from the destination is reported."""
        self.run_backup()
        os.unlink(self.backup_dir / "1" / "binary.bin")

        all_valid, corrupted_items = self.ops.check(self.link)
        assert all_valid is False
        assert corrupted_items[0]['path'] == "binary.bin"
        assert corrupted_items[0]['calculated_hash'] is None
