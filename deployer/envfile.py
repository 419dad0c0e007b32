"""
Environment files for deployed releases.

The release's ``.env.example`` (if any) is the template baseline, built-in
defaults fill in what it leaves out, and generated values (database
credentials, operator overrides) win over both. The result is written once to
``shared/.env`` (0600) and copied into each release before it starts.

Parsing accepts comments, blank lines, an optional ``export`` prefix, a UTF-8
BOM and single or double quoted values. Keys must look like environment
variable names; anything else is skipped.
"""

from __future__ import annotations

import base64
import logging
import re
import secrets
from collections.abc import Mapping
from pathlib import Path

from deployer.errors import StorageError
from deployer.fsutil import atomic_write_text
from deployer.releases import ReleaseStore

logger = logging.getLogger(__name__)

KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_LINE_LENGTH = 10_000
MAX_KEY_LENGTH = 256

TEMPLATE_NAME = ".env.example"
DEFAULTS = {"NODE_ENV": "production"}

_NEEDS_QUOTING = re.compile(r"[\s#$\"'\\`!]")
_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "'": "'", "\\": "\\"}


def _unescape(value: str) -> str:
    return re.sub(r"\\([nrt\"'\\])", lambda m: _UNESCAPES[m.group(1)], value)


def parse_env(text: str) -> dict[str, str]:
    env: dict[str, str] = {}
    if not text:
        return env
    text = text.removeprefix("\ufeff")
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or len(line) > MAX_LINE_LENGTH:
            continue
        line = line.removeprefix("export ")
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key or len(key) > MAX_KEY_LENGTH or not KEY_RE.match(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = _unescape(value[1:-1])
        env[key] = value
    return env


def serialize_env(env: Mapping[str, object]) -> str:
    lines = []
    for key, value in env.items():
        if value is None or not KEY_RE.match(key):
            continue
        text = str(value)
        if text == "" or _NEEDS_QUOTING.search(text):
            escaped = (
                text.replace("\\", "\\\\")
                .replace("\n", "\\n")
                .replace("\r", "\\r")
                .replace("\t", "\\t")
                .replace('"', '\\"')
            )
            lines.append(f'{key}="{escaped}"')
        else:
            lines.append(f"{key}={text}")
    return "\n".join(lines) + "\n"


def generate_app_key() -> str:
    return "base64:" + base64.b64encode(secrets.token_bytes(32)).decode()


def read_template(release_dir: Path) -> dict[str, str]:
    """Baseline values from the release's template. A missing or unreadable template is empty."""
    template = release_dir / TEMPLATE_NAME
    if not template.is_file():
        return {}
    try:
        return parse_env(template.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Skipping unreadable %s: %s", template, e)
        return {}


def database_env(credentials: Mapping[str, object]) -> dict[str, str]:
    """Environment variables for a provisioned database, in both URL and split form."""
    kind = credentials["type"]
    return {
        "DATABASE_URL": str(credentials["url"]),
        "DB_CONNECTION": "pgsql" if kind == "postgres" else "mysql",
        "DB_HOST": str(credentials["host"]),
        "DB_PORT": str(credentials["port"]),
        "DB_DATABASE": str(credentials["database"]),
        "DB_USERNAME": str(credentials["username"]),
        "DB_PASSWORD": str(credentials["password"]),
    }


def build_environment(release_dir: Path, generated: Mapping[str, str] | None = None) -> dict[str, str]:
    env = read_template(release_dir)
    for key, value in DEFAULTS.items():
        if not env.get(key):
            env[key] = value
    # A template that declares APP_KEY without a value expects one to be generated
    if "APP_KEY" in env and not env["APP_KEY"]:
        env["APP_KEY"] = generate_app_key()
    env.update(generated or {})
    return env


def write_shared(store: ReleaseStore, env: Mapping[str, str]) -> Path:
    atomic_write_text(store.env_file, serialize_env(env), mode=0o600)
    return store.env_file


def read_shared(store: ReleaseStore) -> dict[str, str]:
    if not store.env_file.exists():
        return {}
    try:
        return parse_env(store.env_file.read_text(encoding="utf-8"))
    except OSError as e:
        raise StorageError(f"Cannot read {store.env_file}: {e}") from e


def install(store: ReleaseStore, version: str) -> Path | None:
    """Copy ``shared/.env`` into the release directory. Returns the copy's path."""
    if not store.env_file.exists():
        return None
    dest = store.release_path(version) / ".env"
    try:
        content = store.env_file.read_text(encoding="utf-8")
    except OSError as e:
        raise StorageError(f"Cannot read {store.env_file}: {e}") from e
    atomic_write_text(dest, content, mode=0o600)
    return dest
