"""Source checkout into a release directory."""

from __future__ import annotations

import logging
from pathlib import Path

from deployer import shell
from deployer.errors import ExternalToolError, NotFoundError

logger = logging.getLogger(__name__)

# git clone stderr when the requested branch does not exist on the remote
_MISSING_BRANCH_MARKERS = ("Remote branch", "not found in upstream")


class GitCheckout:
    """Shallow-clone one branch of a repository."""

    def __init__(self, timeout: float = 120):
        self.timeout = timeout

    def checkout(self, url: str, branch: str, dest: Path) -> None:
        """Clone ``branch`` of ``url`` into ``dest`` (which must be empty or absent).

        Raises NotFoundError for an unknown branch, ExternalToolError otherwise.
        """
        logger.info("Cloning %s (%s) into %s", url, branch, dest)
        try:
            shell.run(
                ["git", "clone", "--depth", "1", "--branch", branch, url, str(dest)],
                timeout=self.timeout,
            )
        except ExternalToolError as e:
            if any(marker in e.log_tail for marker in _MISSING_BRANCH_MARKERS):
                raise NotFoundError(f"Branch {branch} not found in {url}") from e
            raise
