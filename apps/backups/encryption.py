"""
Streaming encryption for backup artifacts.

Artifacts are written as ``[16-byte random IV][AES-256-CBC ciphertext]``.
Both directions process the data in 1MB chunks, so memory use stays
bounded regardless of dump size. A fresh IV is generated for every
artifact.

The key comes from ``settings.BACKUP_ENCRYPTION_KEY`` and must decode to
exactly 32 bytes, either as 64 hex characters or as URL-safe base64 (the
format produced by ``Fernet.generate_key()``). There is no default key.
"""

import base64
import binascii
import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional, Union

from django.conf import settings

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import ConfigurationError, DecryptionFailure, EncryptionFailure

logger = logging.getLogger(__name__)

KEY_SIZE = 32
IV_SIZE = 16
BLOCK_SIZE_BITS = 128
CHUNK_SIZE = 1024 * 1024  # 1MB chunks

PathLike = Union[str, Path]


def _decode_key(raw: str) -> Optional[bytes]:
    cleaned = raw.strip()
    if len(cleaned) == KEY_SIZE * 2:
        try:
            return bytes.fromhex(cleaned)
        except ValueError:
            pass
    try:
        decoded = base64.urlsafe_b64decode(cleaned.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return None
    return decoded


def get_encryption_key(raw_key: Optional[Union[str, bytes]] = None) -> bytes:
    """
    Resolve and validate the backup encryption key.

    Args:
        raw_key: Key material; defaults to settings.BACKUP_ENCRYPTION_KEY

    Returns:
        The 32-byte AES-256 key

    Raises:
        ConfigurationError: If the key is missing or malformed
    """
    if raw_key is None:
        raw_key = getattr(settings, "BACKUP_ENCRYPTION_KEY", None)

    if not raw_key:
        raise ConfigurationError(
            "BACKUP_ENCRYPTION_KEY not configured in settings. "
            "Generate a key with: from cryptography.fernet import Fernet; Fernet.generate_key()"
        )

    if isinstance(raw_key, bytes):
        try:
            raw_key = raw_key.decode("ascii")
        except UnicodeDecodeError:
            raise ConfigurationError("BACKUP_ENCRYPTION_KEY must be hex or base64 text")

    key = _decode_key(raw_key)
    if key is None or len(key) != KEY_SIZE:
        raise ConfigurationError(
            "BACKUP_ENCRYPTION_KEY must encode exactly 32 bytes (64 hex characters or URL-safe base64)"
        )

    return key


def _read_exact(source: BinaryIO, size: int) -> bytes:
    # Short reads are legal for streams, so keep reading until size bytes or EOF.
    buffer = b""
    while len(buffer) < size:
        chunk = source.read(size - len(buffer))
        if not chunk:
            break
        buffer += chunk
    return buffer


def _remove_partial(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to remove partial file {path}: {e}")


class EncryptionCodec:
    """AES-256-CBC codec for backup artifacts."""

    def __init__(self, key: Optional[Union[str, bytes]] = None):
        self._key = get_encryption_key(key)

    def encrypt_stream(self, source: BinaryIO, destination: BinaryIO) -> int:
        """Encrypt source into destination. Returns bytes written."""
        iv = os.urandom(IV_SIZE)
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()

        destination.write(iv)
        written = IV_SIZE
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                break
            data = encryptor.update(padder.update(chunk))
            destination.write(data)
            written += len(data)

        tail = encryptor.update(padder.finalize()) + encryptor.finalize()
        destination.write(tail)
        return written + len(tail)

    def decrypt_stream(self, source: BinaryIO, destination: BinaryIO) -> int:
        """Decrypt source into destination. Returns plaintext bytes written."""
        iv = _read_exact(source, IV_SIZE)
        if len(iv) < IV_SIZE:
            raise DecryptionFailure("Encrypted artifact is too small to contain an IV")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()

        ciphertext_size = 0
        written = 0
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                break
            ciphertext_size += len(chunk)
            data = unpadder.update(decryptor.update(chunk))
            destination.write(data)
            written += len(data)

        if ciphertext_size == 0 or ciphertext_size % (BLOCK_SIZE_BITS // 8):
            raise DecryptionFailure("Encrypted artifact is truncated or corrupted")

        try:
            tail = unpadder.update(decryptor.finalize()) + unpadder.finalize()
        except ValueError:
            raise DecryptionFailure("Invalid encryption key or corrupted file")

        destination.write(tail)
        return written + len(tail)

    def encrypt(self, input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
        """
        Encrypt a file.

        Args:
            input_path: Path to the file to encrypt
            output_path: Path for the encrypted file (defaults to input_path + '.enc')

        Returns:
            Path to the encrypted file

        Raises:
            EncryptionFailure: If encryption fails
            FileNotFoundError: If input file doesn't exist
        """
        input_file = Path(input_path)
        if not input_file.exists():
            raise FileNotFoundError(f"Input file not found: {input_path}")

        output_file = Path(output_path) if output_path else Path(f"{input_path}.enc")

        try:
            with open(input_file, "rb") as f_in, open(output_file, "wb") as f_out:
                size = self.encrypt_stream(f_in, f_out)
        except Exception as e:
            _remove_partial(output_file)
            logger.error(f"Failed to encrypt {input_path}: {e}")
            raise EncryptionFailure(f"Encryption failed: {e}") from e

        logger.info(f"Encrypted {input_path} -> {output_file} ({size} bytes)")
        return output_file

    def decrypt(self, input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
        """
        Decrypt a file produced by encrypt().

        Args:
            input_path: Path to the encrypted file
            output_path: Path for the decrypted file (defaults to input_path without .enc)

        Returns:
            Path to the decrypted file

        Raises:
            DecryptionFailure: If the artifact is corrupted or the key is wrong
            FileNotFoundError: If input file doesn't exist
        """
        input_file = Path(input_path)
        if not input_file.exists():
            raise FileNotFoundError(f"Input file not found: {input_path}")

        if output_path is None:
            name = str(input_path)
            output_path = name[:-4] if name.endswith(".enc") else f"{name}.decrypted"
        output_file = Path(output_path)

        try:
            with open(input_file, "rb") as f_in, open(output_file, "wb") as f_out:
                self.decrypt_stream(f_in, f_out)
        except DecryptionFailure:
            _remove_partial(output_file)
            raise
        except Exception as e:
            _remove_partial(output_file)
            logger.error(f"Failed to decrypt {input_path}: {e}")
            raise DecryptionFailure(f"Decryption failed: {e}") from e

        logger.info(f"Decrypted {input_path} -> {output_file}")
        return output_file
