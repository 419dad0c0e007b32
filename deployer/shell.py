"""Thin subprocess wrapper: every external command runs with a timeout and captured output."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from deployer.errors import DeployTimeoutError, ExternalToolError, tail

logger = logging.getLogger(__name__)

_SECRET_ARG = re.compile(r"^(\w*(?:PWD|PASSWORD))=.*$")


def redact(cmd: Sequence[str]) -> str:
    return " ".join(_SECRET_ARG.sub(r"\1=***", arg) for arg in cmd)


def run(
    cmd: Sequence[str],
    *,
    timeout: float,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    input: str | None = None,
    error: type[ExternalToolError] = ExternalToolError,
) -> subprocess.CompletedProcess[str]:
    """Run ``cmd`` to completion. Nonzero exit raises ``error`` carrying the output tail."""
    logger.debug("Running: %s", redact(cmd))
    try:
        return subprocess.run(
            list(cmd),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            input=input,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        raise error(
            f"{cmd[0]} exited with status {e.returncode}",
            log_tail=tail(e.stderr or e.stdout),
        ) from e
    except subprocess.TimeoutExpired as e:
        raise DeployTimeoutError(f"{cmd[0]} did not finish within {timeout:g}s") from e
    except FileNotFoundError as e:
        raise error(f"{cmd[0]} not found on PATH") from e
