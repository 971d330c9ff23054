"""
Checksum utilities for backup artifacts.

Digests are computed in 1MB chunks so artifacts of any size can be
verified without loading them into memory.
"""

import hashlib
import logging
from pathlib import Path
from typing import Union

from .exceptions import ChecksumMismatch

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB chunks

PathLike = Union[str, Path]


def calculate_checksum(file_path: PathLike) -> str:
    """
    Calculate the SHA-256 checksum of a file.

    Args:
        file_path: Path to the file

    Returns:
        Hexadecimal checksum string

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    file = Path(file_path)

    if not file.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    hasher = hashlib.sha256()
    with open(file, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hasher.update(chunk)

    checksum = hasher.hexdigest()
    logger.debug(f"Calculated sha256 checksum for {file_path}: {checksum}")
    return checksum


def verify_checksum(file_path: PathLike, expected_checksum: str) -> bool:
    """
    Verify the checksum of a file.

    Returns:
        True if checksum matches, False otherwise
    """
    actual_checksum = calculate_checksum(file_path)
    matches = bool(expected_checksum) and actual_checksum == expected_checksum.lower()

    if matches:
        logger.info(f"Checksum verified for {file_path}")
    else:
        logger.warning(
            f"Checksum mismatch for {file_path}: "
            f"expected {expected_checksum}, got {actual_checksum}"
        )

    return matches


def assert_checksum(file_path: PathLike, expected_checksum: str) -> str:
    """
    Like verify_checksum, but raise ChecksumMismatch on mismatch.

    Returns the computed checksum.
    """
    actual_checksum = calculate_checksum(file_path)
    if not expected_checksum or actual_checksum != expected_checksum.lower():
        raise ChecksumMismatch(file_path, expected_checksum, actual_checksum)
    return actual_checksum
