"""
SecretsVault — name-addressed encrypted secret files under one master key.

Layout (all owner-only):
    <registry>/vault/.master-key
    <registry>/vault/secrets/<name>.enc      base64(salt | iv | tag | ciphertext)

Key rotation builds a complete replacement vault in <registry>/vault.rotating
(new key plus every re-encrypted secret), marks it complete and only then
swaps directories. A crash between the two renames is repaired on the next
vault access: a complete staging directory rolls forward, otherwise the
previous generation is restored.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from deployer.errors import ConflictError, CryptoError, StorageError
from deployer.fsutil import atomic_write_text, file_lock
from deployer.vault import crypto

if TYPE_CHECKING:
    from deployer.config import DeployerConfig

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "DEPLOYER_MASTER_KEY"
KEY_FILE = ".master-key"
SECRETS_SUBDIR = "secrets"
COMPLETE_MARKER = ".complete"
SECRET_SUFFIX = ".enc"

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _check_name(name: str) -> None:
    if not _NAME_RE.match(name) or name.startswith("."):
        raise ValueError(f"Invalid secret name: {name!r}")


class SecretsVault:
    """Encrypted-at-rest secret storage."""

    def __init__(self, vault_dir: Path, env_key: str | None = None):
        self.vault_dir = Path(vault_dir)
        self.env_key = env_key or None
        self.staging_dir = self.vault_dir.with_name(f"{self.vault_dir.name}.rotating")
        self.previous_dir = self.vault_dir.with_name(f"{self.vault_dir.name}.previous")
        self.lock_file = self.vault_dir.with_name(f".{self.vault_dir.name}.lock")

    @classmethod
    def from_config(
        cls, cfg: DeployerConfig, environ: Mapping[str, str] | None = None
    ) -> SecretsVault:
        env = os.environ if environ is None else environ
        return cls(cfg.vault_dir, env_key=env.get(MASTER_KEY_ENV))

    @property
    def key_file(self) -> Path:
        return self.vault_dir / KEY_FILE

    @property
    def secrets_dir(self) -> Path:
        return self.vault_dir / SECRETS_SUBDIR

    def key_exists(self) -> bool:
        return self.env_key is not None or self.key_file.exists()

    # ── Key management ──────────────────────────────────────────────────

    def ensure_key(self) -> bytes:
        """Return the master key, generating and persisting it on first use."""
        with file_lock(self.lock_file):
            self._recover()
            return self._ensure_key()

    def _ensure_key(self) -> bytes:
        if self.env_key is not None:
            return crypto.parse_master_key(self.env_key, source=MASTER_KEY_ENV)
        try:
            return crypto.read_master_key(self.key_file)
        except FileNotFoundError:
            pass
        try:
            created = crypto.write_master_key_exclusive(self.key_file, crypto.generate_master_key())
            self.secrets_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.vault_dir, 0o700)
        except OSError as e:
            raise StorageError(f"Cannot create vault master key at {self.key_file}: {e}") from e
        if created:
            logger.info("Generated new vault master key at %s", self.key_file)
        # Whoever won the exclusive create, everyone reads the same key back
        return crypto.read_master_key(self.key_file)

    # ── Encryption ──────────────────────────────────────────────────────

    def encrypt(self, value: Any) -> bytes:
        return crypto.encrypt(value, self.ensure_key())

    def decrypt(self, blob: bytes) -> Any:
        return crypto.decrypt(blob, self.ensure_key())

    # ── Secret files ────────────────────────────────────────────────────

    def _secret_path(self, name: str, root: Path | None = None) -> Path:
        _check_name(name)
        base = (root or self.vault_dir) / SECRETS_SUBDIR
        return base / f"{name}{SECRET_SUFFIX}"

    def _write_secret(self, path: Path, blob: bytes) -> None:
        atomic_write_text(path, base64.b64encode(blob).decode("ascii"), mode=0o600)

    def _read_secret(self, path: Path) -> bytes:
        try:
            return base64.b64decode(path.read_text().strip(), validate=True)
        except binascii.Error as e:
            raise CryptoError(f"Secret file {path.name} is not valid base64") from e
        except OSError as e:
            raise StorageError(f"Cannot read secret {path}: {e}") from e

    def store(self, name: str, value: Any) -> None:
        """Encrypt and persist ``value`` under ``name`` (overwrites)."""
        path = self._secret_path(name)
        with file_lock(self.lock_file):
            self._recover()
            key = self._ensure_key()
            self._write_secret(path, crypto.encrypt(value, key))
        logger.debug("Stored secret %s", name)

    def retrieve(self, name: str) -> Any | None:
        """Decrypt a secret. Returns None if no such secret exists."""
        path = self._secret_path(name)
        with file_lock(self.lock_file):
            self._recover()
            if not path.exists():
                return None
            key = self._ensure_key()
            return crypto.decrypt(self._read_secret(path), key)

    def delete(self, name: str) -> bool:
        path = self._secret_path(name)
        with file_lock(self.lock_file):
            self._recover()
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StorageError(f"Cannot delete secret {path}: {e}") from e
        logger.debug("Deleted secret %s", name)
        return True

    def list(self) -> list[str]:
        with file_lock(self.lock_file):
            self._recover()
            return self._names()

    def _names(self, root: Path | None = None) -> list[str]:
        secrets_dir = (root or self.vault_dir) / SECRETS_SUBDIR
        if not secrets_dir.is_dir():
            return []
        return sorted(
            p.name[: -len(SECRET_SUFFIX)]
            for p in secrets_dir.iterdir()
            if p.name.endswith(SECRET_SUFFIX) and not p.name.startswith(".")
        )

    # ── Rotation ────────────────────────────────────────────────────────

    def rotate_key(self) -> int:
        """Re-encrypt every secret under a freshly generated master key.

        Returns the number of secrets re-encrypted. Either every secret ends
        up under the new key or nothing changes.
        """
        with file_lock(self.lock_file):
            self._recover()
            if self.env_key is not None:
                raise ConflictError(
                    f"Master key is supplied via {MASTER_KEY_ENV}; rotate it there and re-store secrets"
                )
            old_key = self._ensure_key()
            names = self._names()
            # Decrypt everything first: a CryptoError here leaves the vault untouched
            values = {
                name: crypto.decrypt(self._read_secret(self._secret_path(name)), old_key)
                for name in names
            }

            new_key = crypto.generate_master_key()
            try:
                self._stage(new_key, values)
            except BaseException:
                shutil.rmtree(self.staging_dir, ignore_errors=True)
                raise
            self._swap_in_staging()

        logger.info("Rotated vault master key (%d secrets re-encrypted)", len(values))
        return len(values)

    def _stage(self, new_key: bytes, values: dict[str, Any]) -> None:
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir)
        (self.staging_dir / SECRETS_SUBDIR).mkdir(parents=True)
        os.chmod(self.staging_dir, 0o700)
        if not crypto.write_master_key_exclusive(self.staging_dir / KEY_FILE, new_key):
            raise StorageError(f"Staging key already exists in {self.staging_dir}")

        for name, value in values.items():
            path = self._secret_path(name, root=self.staging_dir)
            self._write_secret(path, crypto.encrypt(value, new_key))
            # Confirm the staged ciphertext before the old key is given up
            if crypto.decrypt(self._read_secret(path), new_key) != value:
                raise CryptoError(f"Re-encrypted secret {name} did not verify")

        atomic_write_text(self.staging_dir / COMPLETE_MARKER, "", mode=0o600)

    def _swap_in_staging(self) -> None:
        try:
            if self.previous_dir.exists():
                shutil.rmtree(self.previous_dir)
            os.rename(self.vault_dir, self.previous_dir)
            os.rename(self.staging_dir, self.vault_dir)
        except OSError as e:
            raise StorageError(f"Vault key rotation swap failed: {e}") from e
        (self.vault_dir / COMPLETE_MARKER).unlink(missing_ok=True)
        shutil.rmtree(self.previous_dir, ignore_errors=True)

    def _recover(self) -> None:
        """Finish or undo a rotation interrupted by a crash. Caller holds the lock."""
        staging_complete = (self.staging_dir / COMPLETE_MARKER).exists()
        try:
            if not self.vault_dir.exists():
                if staging_complete:
                    logger.warning("Completing interrupted key rotation from %s", self.staging_dir)
                    os.rename(self.staging_dir, self.vault_dir)
                elif self.previous_dir.exists():
                    logger.warning("Restoring vault from %s after interrupted rotation", self.previous_dir)
                    os.rename(self.previous_dir, self.vault_dir)
            if self.staging_dir.exists():
                logger.warning("Discarding unfinished key rotation in %s", self.staging_dir)
                shutil.rmtree(self.staging_dir)
            if self.previous_dir.exists():
                shutil.rmtree(self.previous_dir)
            (self.vault_dir / COMPLETE_MARKER).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot recover vault state: {e}") from e
