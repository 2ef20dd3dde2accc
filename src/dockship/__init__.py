"""dockship: container deployments over SSH with health checks and rollback."""

__version__ = "0.1.0"
