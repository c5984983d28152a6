"""
Password-based encryption envelope for backup archives.

The format is the one written by
``openssl enc -aes-256-cbc -salt -pbkdf2 -iter 100000``:

    b"Salted__" | 8-byte salt | AES-256-CBC ciphertext (PKCS#7 padded)

with key and IV derived together by PBKDF2-HMAC-SHA256. Archives produced
here can be decrypted with the openssl CLI and vice versa.
"""

import logging
import os
from pathlib import Path

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .constants import PBKDF2_ITERATIONS
from .errors import DecryptFailed, EncryptionFailed

logger = logging.getLogger(__name__)

MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
CHUNK_SIZE = 1024 * 1024
GZIP_MAGIC = b"\x1f\x8b"


def derive_key_iv(passphrase: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> tuple[bytes, bytes]:
    """Derive the AES key and IV from a passphrase, as openssl -pbkdf2 does."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=iterations,
    )
    material = kdf.derive(passphrase.encode())
    return material[:KEY_SIZE], material[KEY_SIZE:]


def encrypt_file(source: Path, destination: Path, passphrase: str, iterations: int = PBKDF2_ITERATIONS) -> Path:
    """
    Encrypt ``source`` into ``destination``.

    The destination is removed if anything fails, so a partial envelope is
    never left behind. The source is not touched.
    """
    if not passphrase:
        raise EncryptionFailed("Encryption passphrase is empty")

    try:
        salt = os.urandom(SALT_SIZE)
        key, iv = derive_key_iv(passphrase, salt, iterations)
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        padder = padding.PKCS7(algorithms.AES.block_size).padder()

        with open(source, "rb") as src, open(destination, "wb") as dst:
            dst.write(MAGIC + salt)
            while chunk := src.read(CHUNK_SIZE):
                dst.write(encryptor.update(padder.update(chunk)))
            dst.write(encryptor.update(padder.finalize()) + encryptor.finalize())
    except (OSError, ValueError) as e:
        destination.unlink(missing_ok=True)
        raise EncryptionFailed(f"Encryption failed: {e}") from e
    except BaseException:
        # Interrupted (Ctrl-C, SIGTERM): never leave a truncated envelope
        destination.unlink(missing_ok=True)
        raise

    if destination.stat().st_size <= len(MAGIC) + SALT_SIZE:
        destination.unlink(missing_ok=True)
        raise EncryptionFailed("Encryption failed: encrypted output is empty")

    return destination


def decrypt_file(
    source: Path,
    destination: Path,
    passphrase: str,
    iterations: int = PBKDF2_ITERATIONS,
    expected_prefix: bytes | None = GZIP_MAGIC,
) -> Path:
    """
    Decrypt an envelope written by :func:`encrypt_file` (or openssl).

    Without a MAC a wrong passphrase is only detectable through the padding
    and the shape of the plaintext, so ``expected_prefix`` (gzip magic by
    default) is checked as well.

    Raises:
        DecryptFailed: bad header, wrong passphrase or corrupt ciphertext.
            No partial plaintext is left at ``destination``.
    """
    try:
        with open(source, "rb") as src:
            header = src.read(len(MAGIC) + SALT_SIZE)
            if len(header) != len(MAGIC) + SALT_SIZE or not header.startswith(MAGIC):
                raise DecryptFailed(f"Not an encrypted backup (missing salt header): {source.name}")

            key, iv = derive_key_iv(passphrase, header[len(MAGIC) :], iterations)
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()

            head = b""
            with open(destination, "wb") as dst:
                while chunk := src.read(CHUNK_SIZE):
                    plain = unpadder.update(decryptor.update(chunk))
                    if len(head) < len(expected_prefix or b""):
                        head += plain[: len(expected_prefix) - len(head)]
                    dst.write(plain)
                tail = unpadder.update(decryptor.finalize()) + unpadder.finalize()
                if expected_prefix and len(head) < len(expected_prefix):
                    head += tail[: len(expected_prefix) - len(head)]
                dst.write(tail)

        if expected_prefix and head != expected_prefix:
            raise DecryptFailed("Decryption failed - check your BACKUP_ENCRYPTION_KEY")

    except DecryptFailed:
        destination.unlink(missing_ok=True)
        raise
    except ValueError as e:
        destination.unlink(missing_ok=True)
        raise DecryptFailed("Decryption failed - check your BACKUP_ENCRYPTION_KEY") from e
    except OSError as e:
        destination.unlink(missing_ok=True)
        raise DecryptFailed(f"Decryption failed: {e}") from e

    return destination
