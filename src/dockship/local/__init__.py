"""Local execution module for deploying on the current machine."""

from .session import LocalSession

__all__ = ["LocalSession"]
