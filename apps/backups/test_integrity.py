"""
Tests for SHA-256 checksum utilities.
"""

import hashlib
import shutil
import tempfile
from pathlib import Path

from django.test import TestCase

from apps.backups.exceptions import ChecksumMismatch
from apps.backups.integrity import (
    CHUNK_SIZE,
    assert_checksum,
    calculate_checksum,
    verify_checksum,
)


class ChecksumTests(TestCase):
    """Test checksum calculation and verification."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.test_file = self.temp_dir / "artifact.enc"
        self.content = b"Test content for checksum " * 10
        self.test_file.write_bytes(self.content)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_calculate_checksum_matches_hashlib(self):
        self.assertEqual(
            calculate_checksum(self.test_file), hashlib.sha256(self.content).hexdigest()
        )

    def test_calculate_checksum_is_deterministic(self):
        self.assertEqual(calculate_checksum(self.test_file), calculate_checksum(str(self.test_file)))

    def test_calculate_checksum_spans_chunks(self):
        content = b"a" * (CHUNK_SIZE + 17)
        self.test_file.write_bytes(content)
        self.assertEqual(calculate_checksum(self.test_file), hashlib.sha256(content).hexdigest())

    def test_calculate_checksum_empty_file(self):
        self.test_file.write_bytes(b"")
        self.assertEqual(calculate_checksum(self.test_file), hashlib.sha256(b"").hexdigest())

    def test_calculate_checksum_file_not_found(self):
        with self.assertRaises(FileNotFoundError):
            calculate_checksum(self.temp_dir / "missing.enc")

    def test_verify_checksum(self):
        checksum = calculate_checksum(self.test_file)
        self.assertTrue(verify_checksum(self.test_file, checksum))
        self.assertTrue(verify_checksum(self.test_file, checksum.upper()))
        self.assertFalse(verify_checksum(self.test_file, "0" * 64))
        self.assertFalse(verify_checksum(self.test_file, ""))

    def test_single_flipped_byte_changes_checksum(self):
        checksum = calculate_checksum(self.test_file)

        data = bytearray(self.content)
        data[len(data) // 2] ^= 0xFF
        self.test_file.write_bytes(bytes(data))

        self.assertFalse(verify_checksum(self.test_file, checksum))

    def test_assert_checksum(self):
        checksum = calculate_checksum(self.test_file)
        self.assertEqual(assert_checksum(self.test_file, checksum), checksum)

        with self.assertRaises(ChecksumMismatch) as context:
            assert_checksum(self.test_file, "f" * 64)
        self.assertEqual(context.exception.expected, "f" * 64)
        self.assertEqual(context.exception.actual, checksum)
