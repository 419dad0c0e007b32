"""
AES-256-GCM encryption for vault secrets.

The master key is 32 random bytes, hex-encoded in <vault>/.master-key (chmod 600).
Each secret gets its own key derived with PBKDF2-HMAC-SHA256 from the master
key and a fresh 64-byte salt. Blob layout:

    salt (64) | iv (12) | tag (16) | ciphertext
"""

from __future__ import annotations

import json
import os
import secrets
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from deployer.errors import CryptoError, StorageError

KEY_LENGTH = 32
SALT_LENGTH = 64
IV_LENGTH = 12
TAG_LENGTH = 16
KDF_ITERATIONS = 100_000
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH


def generate_master_key() -> bytes:
    return secrets.token_bytes(KEY_LENGTH)


def parse_master_key(text: str, source: str = "master key") -> bytes:
    """Decode hex key material and check its length."""
    try:
        key = bytes.fromhex(text.strip())
    except ValueError as e:
        raise CryptoError(f"Vault {source} is not valid hex") from e
    if len(key) != KEY_LENGTH:
        raise CryptoError(f"Vault {source} must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


def write_master_key_exclusive(key_path: Path, key: bytes) -> bool:
    """Create ``key_path`` holding ``key`` only if it does not exist yet.

    The key is fully written to a temp file first and then hard-linked into
    place; link() fails when the target exists, so concurrent callers never
    see a half-written key and exactly one of them wins.
    Returns True if this call created the key.
    """
    key_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = key_path.with_name(f"{key_path.name}.{secrets.token_hex(6)}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(key.hex())
            f.flush()
            os.fsync(f.fileno())
        try:
            os.link(tmp, key_path)
            return True
        except FileExistsError:
            return False
    finally:
        tmp.unlink(missing_ok=True)


def read_master_key(key_path: Path) -> bytes:
    try:
        text = key_path.read_text()
    except FileNotFoundError:
        raise
    except OSError as e:
        raise StorageError(f"Cannot read vault master key {key_path}: {e}") from e
    return parse_master_key(text, source=f"master key at {key_path}")


def derive_key(master_key: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(master_key)


def encrypt(value: Any, master_key: bytes) -> bytes:
    """Serialize ``value`` as JSON and encrypt it. Returns salt + iv + tag + ciphertext."""
    plaintext = json.dumps(value).encode("utf-8")
    salt = secrets.token_bytes(SALT_LENGTH)
    iv = secrets.token_bytes(IV_LENGTH)
    sealed = AESGCM(derive_key(master_key, salt)).encrypt(iv, plaintext, None)
    # AESGCM appends the tag; the on-disk layout carries it before the ciphertext
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return salt + iv + tag + ciphertext


def decrypt(blob: bytes, master_key: bytes) -> Any:
    """Verify and decrypt a blob produced by encrypt(). Raises CryptoError on any failure."""
    if len(blob) < HEADER_LENGTH:
        raise CryptoError("Encrypted data too short")
    salt = blob[:SALT_LENGTH]
    iv = blob[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
    tag = blob[SALT_LENGTH + IV_LENGTH : HEADER_LENGTH]
    ciphertext = blob[HEADER_LENGTH:]
    try:
        plaintext = AESGCM(derive_key(master_key, salt)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise CryptoError("Secret failed authentication (tampered data or wrong master key)") from e
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CryptoError("Decrypted secret is not valid JSON") from e
