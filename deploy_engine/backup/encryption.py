# deploy_engine/backup/encryption.py
"""
Streaming AES-256-CFB encryption for backup archives.

Ciphertext layout: 16-byte IV followed by the CFB stream. CFB has no
authentication tag; integrity is checked against the plaintext archive
hash recorded at capture time.
"""

import hashlib
import io
import logging
import os
import re
from pathlib import Path
from typing import BinaryIO, Optional, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from deploy_engine.core.errors import IntegrityCheckFailed, StorageFailure

logger = logging.getLogger(__name__)


IV_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 32
CHUNK_SIZE = 64 * 1024

KEY_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")


# -------------------------
# KEYS
# -------------------------

def generate_key() -> bytes:
    return os.urandom(KEY_SIZE)


def generate_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """SHA-256 over passphrase + salt."""
    if not passphrase:
        raise ValueError("passphrase must not be empty")
    return hashlib.sha256(passphrase.encode("utf-8") + salt).digest()


class KeyStore:
    """
    One hex-encoded key file per backup under `<root>/keys`.

    Files are 0600 in a 0700 directory. Keys are written once and never
    rotated in place.
    """

    def __init__(self, root: Union[str, Path]):
        self.key_dir = Path(root) / "keys"

    def path_for(self, backup_id: str) -> Path:
        if not KEY_ID_PATTERN.fullmatch(backup_id or ""):
            raise ValueError(f"invalid backup id for key storage: {backup_id!r}")
        return self.key_dir / f"{backup_id}.key"

    def store(self, backup_id: str, key: bytes) -> Path:
        if len(key) != KEY_SIZE:
            raise ValueError(f"key must be {KEY_SIZE} bytes")

        path = self.path_for(backup_id)
        try:
            self.key_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            os.chmod(self.key_dir, 0o700)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError as e:
            raise StorageFailure(f"key for backup {backup_id} already exists") from e
        except OSError as e:
            raise StorageFailure(f"failed to store key for backup {backup_id}: {e}") from e

        with os.fdopen(fd, "w") as f:
            f.write(key.hex())

        logger.info(f"[backup] stored encryption key for {backup_id}")
        return path

    def retrieve(self, backup_id: str) -> bytes:
        path = self.path_for(backup_id)
        try:
            data = path.read_text().strip()
        except FileNotFoundError as e:
            raise StorageFailure(f"no encryption key for backup {backup_id}") from e
        except OSError as e:
            raise StorageFailure(f"failed to read key for backup {backup_id}: {e}") from e

        try:
            key = bytes.fromhex(data)
        except ValueError as e:
            raise StorageFailure(f"corrupt key file for backup {backup_id}") from e
        if len(key) != KEY_SIZE:
            raise StorageFailure(f"corrupt key file for backup {backup_id}")
        return key

    def exists(self, backup_id: str) -> bool:
        return self.path_for(backup_id).is_file()

    def delete(self, backup_id: str) -> bool:
        path = self.path_for(backup_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"failed to delete key for backup {backup_id}: {e}") from e


# -------------------------
# STREAMS
# -------------------------

class _TransformReader(io.RawIOBase):
    """Read-only stream that transforms `source` chunk by chunk."""

    def __init__(self, source: BinaryIO):
        self._source = source
        self._buffer = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while not self._buffer and not self._eof:
            self._fill()
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n

    def _fill(self) -> None:
        raise NotImplementedError


class EncryptingReader(_TransformReader):
    """Yields IV + ciphertext for the plaintext read from `source`."""

    def __init__(self, source: BinaryIO, key: bytes, iv: Optional[bytes] = None):
        super().__init__(source)
        iv = iv or os.urandom(IV_SIZE)
        if len(iv) != IV_SIZE:
            raise ValueError(f"iv must be {IV_SIZE} bytes")
        self._encryptor = Cipher(algorithms.AES(key), modes.CFB(iv)).encryptor()
        self._buffer = iv

    def _fill(self) -> None:
        chunk = self._source.read(CHUNK_SIZE)
        if chunk:
            self._buffer += self._encryptor.update(chunk)
        else:
            self._buffer += self._encryptor.finalize()
            self._eof = True


class DecryptingReader(_TransformReader):
    """Consumes the leading IV, then yields plaintext."""

    def __init__(self, source: BinaryIO, key: bytes):
        super().__init__(source)
        self._key = key
        self._decryptor = None

    def _fill(self) -> None:
        if self._decryptor is None:
            iv = _read_exactly(self._source, IV_SIZE)
            if len(iv) != IV_SIZE:
                raise IntegrityCheckFailed("ciphertext is shorter than the IV")
            self._decryptor = Cipher(algorithms.AES(self._key), modes.CFB(iv)).decryptor()

        chunk = self._source.read(CHUNK_SIZE)
        if chunk:
            self._buffer += self._decryptor.update(chunk)
        else:
            self._buffer += self._decryptor.finalize()
            self._eof = True


def encrypt(source: BinaryIO, key: bytes) -> io.BufferedReader:
    return io.BufferedReader(EncryptingReader(source, key))


def decrypt(source: BinaryIO, key: bytes) -> io.BufferedReader:
    return io.BufferedReader(DecryptingReader(source, key))


def _read_exactly(source: BinaryIO, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = source.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


# -------------------------
# INTEGRITY
# -------------------------

def sha256_stream(source: BinaryIO) -> str:
    digest = hashlib.sha256()
    for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


def sha256_file(path: Union[str, Path]) -> str:
    with open(path, "rb") as f:
        return sha256_stream(f)


def verify_checksum(path: Union[str, Path], expected: str) -> None:
    actual = sha256_file(path)
    if actual != expected:
        raise IntegrityCheckFailed(
            f"checksum mismatch for {Path(path).name}: expected {expected}, got {actual}"
        )
