import hashlib
import shutil
from typing import Tuple

from .errors import ReadFailure, WriteFailure


CHUNK_SIZE = 64 * 1024


def fingerprint(data: bytes) -> str:
    """Generate a SHA-256 digest for an in-memory byte string."""
    return hashlib.sha256(data).hexdigest()


def hash_file_content(file_path) -> str:
    """
    Generate a SHA-256 digest for a file's content.

    The file is streamed in chunks so large files never have to fit in memory.

    Raises:
        ReadFailure: If the file cannot be opened or read
    """
    sha256 = hashlib.sha256()
    try:
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                sha256.update(chunk)
    except OSError as e:
        raise ReadFailure(file_path, str(e)) from e
    return sha256.hexdigest()


def copy_and_hash(src_path, dst_path) -> Tuple[str, int]:
    """
    Copy a file and fingerprint it in the same pass.

    Args:
        src_path: File to read
        dst_path: File to create or truncate

    Returns:
        Tuple[str, int]: The digest of the bytes written and their count

    Raises:
        ReadFailure: If the source cannot be read
        WriteFailure: If the destination cannot be written
    """
    sha256 = hashlib.sha256()
    size = 0
    try:
        src = open(src_path, 'rb')
    except OSError as e:
        raise ReadFailure(src_path, str(e)) from e

    with src:
        # Buffered writes may only fail when the file is flushed on close.
        try:
            with open(dst_path, 'wb') as dst:
                while True:
                    try:
                        chunk = src.read(CHUNK_SIZE)
                    except OSError as e:
                        raise ReadFailure(src_path, str(e)) from e
                    if not chunk:
                        break
                    sha256.update(chunk)
                    size += len(chunk)
                    dst.write(chunk)
        except OSError as e:
            raise WriteFailure(dst_path, str(e)) from e

    try:
        shutil.copymode(src_path, dst_path)
    except OSError as e:
        raise WriteFailure(dst_path, str(e)) from e

    return sha256.hexdigest(), size
