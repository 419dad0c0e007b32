"""
Error taxonomy shared by every deployer component.

Orchestration code catches these, runs compensating cleanup and re-raises.
CryptoError and ConflictError are never retried automatically: both need an
operator to look at the host.
"""

from __future__ import annotations


class DeployerError(Exception):
    """Base class for all expected deployer failures."""

    kind = "error"


class NotFoundError(DeployerError):
    """A project, release version, secret or branch does not exist."""

    kind = "not_found"


class ConflictError(DeployerError):
    """State disagrees with what the operation requires (duplicate project, password drift)."""

    kind = "conflict"


class DeployTimeoutError(DeployerError):
    """The health gate or an external command exceeded its time budget."""

    kind = "timeout"


class ExternalToolError(DeployerError):
    """An external command (git, docker, engine client) exited nonzero."""

    kind = "external_tool"

    def __init__(self, message: str, log_tail: str = ""):
        super().__init__(message)
        self.log_tail = log_tail

    def __str__(self) -> str:
        base = super().__str__()
        if self.log_tail:
            return f"{base}\n{self.log_tail}"
        return base


class EngineError(ExternalToolError):
    """A database engine rejected an administrative command."""

    kind = "engine"


class CryptoError(DeployerError):
    """Decryption failed authentication. Never carries partial plaintext."""

    kind = "crypto"


class StorageError(DeployerError):
    """Permission or filesystem failure on core state (metadata, registry, vault)."""

    kind = "storage"


def tail(text: str | bytes | None, limit: int = 500) -> str:
    """Return the last ``limit`` characters of captured command output."""
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-limit:].strip()
