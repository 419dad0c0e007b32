"""
Database provisioning — idempotent account/database reconciliation per project.

Public API:
    reconciler = ProvisionReconciler.from_config(cfg)
    result = reconciler.provision("alpha", "postgres")   → ProvisionResult (credentials + url)
    reconciler.remove("alpha")                           → drop database and account
    reconciler.backup("alpha", path) / restore("alpha", path)
"""

from __future__ import annotations

from deployer.provision.engines import DatabaseEngine, MySQLEngine, PostgresEngine, engine_for
from deployer.provision.reconciler import (
    DECISIONS,
    Action,
    ProvisionReconciler,
    ProvisionResult,
)
from deployer.provision.registry import ProvisionRecord, ProvisionRegistry

__all__ = [
    "Action",
    "DECISIONS",
    "DatabaseEngine",
    "MySQLEngine",
    "PostgresEngine",
    "ProvisionReconciler",
    "ProvisionRecord",
    "ProvisionRegistry",
    "ProvisionResult",
    "engine_for",
]
