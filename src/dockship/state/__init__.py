"""Deployment state tracking."""

from .ledger import DeploymentLedger, FileLedger, InMemoryLedger
from .models import DeploymentRecord, Outcome, ServiceStatus

__all__ = [
    "DeploymentLedger",
    "DeploymentRecord",
    "FileLedger",
    "InMemoryLedger",
    "Outcome",
    "ServiceStatus",
]
