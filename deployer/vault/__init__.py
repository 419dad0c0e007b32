"""
Deployer Vault — encrypted secret files (PBKDF2-SHA256 + AES-256-GCM).

Public API:
    vault = SecretsVault.from_config(cfg)
    vault.store(name, value)     → encrypt and persist any JSON-serializable value
    vault.retrieve(name)         → decrypted value or None
    vault.delete(name)           → True if removed
    vault.list()                 → secret names (not values)
    vault.rotate_key()           → re-encrypt everything under a new master key
"""

from __future__ import annotations

from deployer.vault.crypto import decrypt, encrypt
from deployer.vault.store import MASTER_KEY_ENV, SecretsVault

__all__ = ["SecretsVault", "MASTER_KEY_ENV", "encrypt", "decrypt"]
