"""Secret resolution for deploy runs."""

from pathlib import Path
from typing import Optional

from ..config import AppConfig
from .backends import DotenvBackend, EnvironmentBackend, SecretBackend, VaultBackend
from .resolver import ResolvedSecrets, SecretResolver


def build_resolver(config: AppConfig, base_dir: Optional[Path] = None) -> SecretResolver:
    """Resolver wired with every backend the configuration allows."""
    return SecretResolver(
        {
            "env": EnvironmentBackend(),
            "dotenv": DotenvBackend(base_dir),
            "vault": VaultBackend(config.vault),
        }
    )


__all__ = [
    "DotenvBackend",
    "EnvironmentBackend",
    "ResolvedSecrets",
    "SecretBackend",
    "SecretResolver",
    "VaultBackend",
    "build_resolver",
]
