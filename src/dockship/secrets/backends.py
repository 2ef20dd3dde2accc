"""Secret backends: process environment, HashiCorp Vault and dotenv files."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Mapping, Optional

import requests
from dotenv import dotenv_values

from ..config import VaultConfig
from ..descriptor.models import SecretReference
from ..errors import SecretUnavailable


class SecretBackend(ABC):
    """Fetches one secret value; raises SecretUnavailable on a miss."""

    @abstractmethod
    def fetch(self, reference: SecretReference) -> str:
        raise NotImplementedError


class EnvironmentBackend(SecretBackend):
    """Reads secrets from the orchestrator's own environment (and .env)."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def fetch(self, reference: SecretReference) -> str:
        value = self._environ.get(reference.lookup_key)
        if value is None or value == "":
            raise SecretUnavailable(
                reference.name, f"environment variable {reference.lookup_key} is not set"
            )
        return value


class DotenvBackend(SecretBackend):
    """Reads secrets from a dotenv file named by the reference key."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = base_dir
        self._cache: Dict[Path, Dict[str, Optional[str]]] = {}

    def fetch(self, reference: SecretReference) -> str:
        path = Path(reference.lookup_key)
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        if path not in self._cache:
            if not path.is_file():
                raise SecretUnavailable(reference.name, f"dotenv file {path} does not exist")
            self._cache[path] = dotenv_values(path)
        value = self._cache[path].get(reference.field or reference.name)
        if not value:
            raise SecretUnavailable(
                reference.name, f"{reference.field or reference.name} is not set in {path}"
            )
        return value

    def clear(self) -> None:
        self._cache.clear()


class VaultBackend(SecretBackend):
    """Reads secrets over the Vault HTTP API.

    Supports both KV v2 (``data.data``) and KV v1 (``data``) response shapes.
    The field defaults to the secret's name.
    """

    def __init__(self, config: VaultConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"X-Vault-Token": self.config.token or ""}
        if self.config.namespace:
            headers["X-Vault-Namespace"] = self.config.namespace
        return headers

    def fetch(self, reference: SecretReference) -> str:
        if not self.config.address or not self.config.token:
            raise SecretUnavailable(
                reference.name,
                "vault backend is not configured (set VAULT_ADDR and VAULT_TOKEN)",
            )
        url = f"{self.config.address.rstrip('/')}/v1/{reference.lookup_key.lstrip('/')}"
        try:
            response = self.session.get(
                url,
                headers=self._headers(),
                timeout=self.config.timeout,
                verify=self.config.verify,
            )
        except requests.RequestException as exc:
            raise SecretUnavailable(reference.name, f"vault request failed: {exc}") from exc

        if response.status_code in (403, 404):
            raise SecretUnavailable(
                reference.name,
                f"vault returned {response.status_code} for {reference.lookup_key}",
            )
        try:
            response.raise_for_status()
            body = response.json()
        except (requests.HTTPError, ValueError) as exc:
            raise SecretUnavailable(reference.name, f"unexpected vault response: {exc}") from exc

        data = body.get("data") or {}
        if isinstance(data.get("data"), dict):
            data = data["data"]
        value = data.get(reference.field or reference.name)
        if value is None or value == "":
            raise SecretUnavailable(
                reference.name,
                f"field {reference.field or reference.name} missing at {reference.lookup_key}",
            )
        return str(value)
