"""
Root-level shared test fixtures.

Inherited by the tests/ suite and the per-package tests under deployer/.
"""

from __future__ import annotations

import os

import pytest


@pytest.fixture
def clean_env(monkeypatch):
    """Remove deployer env vars that leak from the host into tests."""
    for key in list(os.environ):
        if key.startswith("DEPLOYER_"):
            monkeypatch.delenv(key, raising=False)
    for key in ["NPM_EMAIL", "NPM_PASSWORD"]:
        monkeypatch.delenv(key, raising=False)
