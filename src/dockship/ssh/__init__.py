"""SSH utilities for dockship."""

from .credentials import SSHCredentials
from .session import SSHSession

__all__ = [
    "SSHCredentials",
    "SSHSession",
]
