"""
Streaming symmetric encryption for backup artifacts.

Uses AES-256-GCM with a key derived from the job secret via PBKDF2.
An encrypted stream is laid out as:

    magic (4) | iterations (4, big-endian) | salt (16) | nonce (12) | ciphertext | tag (16)
"""

import os
import struct

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


MAGIC = b'BKD1'
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
HEADER_SIZE = len(MAGIC) + 4 + SALT_SIZE + NONCE_SIZE
DEFAULT_ITERATIONS = 480000  # OWASP recommended iterations for 2023+


class CryptoError(Exception):
    """Raised when an encrypted stream is malformed."""
    pass


def derive_key(secret: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """
    Derive a 32-byte AES key from a secret.

    Args:
        secret: Job secret from the configuration
        salt: Random per-artifact salt
        iterations: PBKDF2 iteration count

    Returns:
        Raw key bytes
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode())


class EncryptingWriter:
    """
    File-like writer that encrypts everything written to it.

    The header goes out on construction; the authentication tag goes out on
    close(). Closing does not close the underlying file object.
    """

    def __init__(self, fileobj, secret: str, iterations: int = DEFAULT_ITERATIONS):
        self._fileobj = fileobj
        self._closed = False

        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        key = derive_key(secret, salt, iterations)
        self._encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()

        self._fileobj.write(MAGIC + struct.pack('>I', iterations) + salt + nonce)

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data) -> int:
        if self._closed:
            raise ValueError("write to closed EncryptingWriter")
        self._fileobj.write(self._encryptor.update(bytes(data)))
        return len(data)

    def flush(self):
        self._fileobj.flush()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._fileobj.write(self._encryptor.finalize())
        self._fileobj.write(self._encryptor.tag)
        self._fileobj.flush()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def decrypt_stream(src, dst, secret: str, chunk_size: int = 1024 * 1024) -> int:
    """
    Decrypt a stream produced by EncryptingWriter.

    Used to verify artifacts; plaintext is written before the tag is checked,
    so callers must discard ``dst`` if this raises.

    Args:
        src: Readable binary file object positioned at the header
        dst: Writable binary file object
        secret: Job secret the stream was encrypted with

    Returns:
        Number of plaintext bytes written

    Raises:
        CryptoError: If the header is missing or malformed
        cryptography.exceptions.InvalidTag: If the secret is wrong or data was altered
    """
    header = src.read(HEADER_SIZE)
    if len(header) != HEADER_SIZE or not header.startswith(MAGIC):
        raise CryptoError("Not an encrypted backup stream")

    offset = len(MAGIC)
    (iterations,) = struct.unpack('>I', header[offset:offset + 4])
    offset += 4
    salt = header[offset:offset + SALT_SIZE]
    nonce = header[offset + SALT_SIZE:]

    key = derive_key(secret, salt, iterations)
    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).decryptor()

    written = 0
    pending = b''
    for chunk in iter(lambda: src.read(chunk_size), b''):
        pending += chunk
        if len(pending) > TAG_SIZE:
            plaintext = decryptor.update(pending[:-TAG_SIZE])
            dst.write(plaintext)
            written += len(plaintext)
            pending = pending[-TAG_SIZE:]

    if len(pending) != TAG_SIZE:
        raise CryptoError("Encrypted stream is truncated")

    tail = decryptor.finalize_with_tag(pending)
    dst.write(tail)
    return written + len(tail)
