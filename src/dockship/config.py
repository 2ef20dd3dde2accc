"""Configuration loading utilities for dockship."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .paths import LEDGER_FILE

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")


@dataclass
class SSHConfig:
    """Connection defaults used when a descriptor leaves them out."""

    default_port: int = 22
    default_username: Optional[str] = None
    default_auth_method: Optional[str] = None
    default_password: Optional[str] = None
    default_key_path: Optional[str] = None
    connect_timeout: int = 20


@dataclass
class ExecutorConfig:
    """Retry and timeout settings for remote steps."""

    max_attempts: int = 3
    backoff_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    command_timeout: int = 600          # total seconds per remote command
    idle_timeout: int = 300             # seconds without output before giving up
    docker_binary: str = "docker"       # e.g. "sudo -n docker"; env names get --preserve-env
    stream_output: bool = False


@dataclass
class HealthConfig:
    """Defaults for health-check polling."""

    interval: float = 5.0
    timeout: float = 120.0


@dataclass
class VaultConfig:
    """HashiCorp Vault connection settings for `vault:` secrets."""

    address: Optional[str] = None
    token: Optional[str] = None
    namespace: Optional[str] = None
    timeout: float = 10.0
    verify: bool = True


@dataclass
class StateConfig:
    """Where the deployment ledger lives."""

    ledger_path: str = str(LEDGER_FILE)
    lock_timeout: float = 10.0


@dataclass
class AppConfig:
    """Top-level configuration."""

    ssh: SSHConfig = field(default_factory=SSHConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        sections = {
            "ssh": SSHConfig,
            "executor": ExecutorConfig,
            "health": HealthConfig,
            "vault": VaultConfig,
            "state": StateConfig,
        }
        built = {}
        for name, section_cls in sections.items():
            section_payload = payload.get(name, {}) or {}
            # 下划线开头的键是注释
            section_payload = {k: v for k, v in section_payload.items() if not k.startswith("_")}
            try:
                built[name] = section_cls(**{**section_cls().__dict__, **section_payload})
            except TypeError as exc:
                raise ConfigError(
                    f"Invalid `{name}` configuration: {exc}", field=name, step="load_config"
                ) from exc
        return cls(**built)


def _apply_env_overrides(config: AppConfig) -> None:
    env_port = os.getenv("DOCKSHIP_SSH_PORT")
    if env_port:
        try:
            config.ssh.default_port = int(env_port)
        except ValueError as exc:
            raise ConfigError(
                f"DOCKSHIP_SSH_PORT must be an integer, got {env_port!r}",
                field="DOCKSHIP_SSH_PORT",
                step="load_config",
            ) from exc

    env_username = os.getenv("DOCKSHIP_SSH_USERNAME")
    if env_username:
        config.ssh.default_username = env_username

    env_password = os.getenv("DOCKSHIP_SSH_PASSWORD")
    if env_password:
        config.ssh.default_password = env_password
        config.ssh.default_auth_method = "password"

    env_key_path = os.getenv("DOCKSHIP_SSH_KEY_PATH")
    if env_key_path:
        config.ssh.default_key_path = env_key_path
        config.ssh.default_auth_method = "key"

    vault_addr = os.getenv("DOCKSHIP_VAULT_ADDR") or os.getenv("VAULT_ADDR")
    if vault_addr:
        config.vault.address = vault_addr
    vault_token = os.getenv("DOCKSHIP_VAULT_TOKEN") or os.getenv("VAULT_TOKEN")
    if vault_token:
        config.vault.token = vault_token
    vault_namespace = os.getenv("VAULT_NAMESPACE")
    if vault_namespace:
        config.vault.namespace = vault_namespace

    ledger_path = os.getenv("DOCKSHIP_LEDGER_PATH")
    if ledger_path:
        config.state.ledger_path = ledger_path


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than config file):
    - DOCKSHIP_SSH_PORT / DOCKSHIP_SSH_USERNAME: SSH defaults
    - DOCKSHIP_SSH_PASSWORD: SSH password (selects password auth)
    - DOCKSHIP_SSH_KEY_PATH: Path to SSH private key (selects key auth)
    - DOCKSHIP_VAULT_ADDR or VAULT_ADDR, DOCKSHIP_VAULT_TOKEN or VAULT_TOKEN,
      VAULT_NAMESPACE: Vault secret backend
    - DOCKSHIP_LEDGER_PATH: deployment ledger location
    """

    if path and not Path(path).is_file():
        raise ConfigError(
            f"Could not find configuration file: {path}", field="--config", step="load_config"
        )

    candidate = Path(path) if path else _DEFAULT_CONFIG_PATH
    if candidate.is_file():
        try:
            with candidate.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ConfigError(
                f"{candidate} is not valid JSON: {exc}", field="--config", step="load_config"
            ) from exc
        config = AppConfig.from_dict(data)
    else:
        config = AppConfig()

    _apply_env_overrides(config)
    return config
