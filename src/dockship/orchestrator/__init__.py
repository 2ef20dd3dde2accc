"""Orchestrator module coordinating one deploy, rollback or status query.

- DeploymentOrchestrator: runs Config Loader → Secret Resolver → Remote
  Executor → State Tracker strictly in sequence
"""

from .orchestrator import DeploymentOrchestrator, HostFactory

__all__ = ["DeploymentOrchestrator", "HostFactory"]
