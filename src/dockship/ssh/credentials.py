"""SSH credential helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from ..config import SSHConfig
from ..descriptor.models import HostTarget
from ..errors import ConfigError


@dataclass
class SSHCredentials:
    """Normalized credential payload from descriptor/config."""

    host: str
    username: str
    port: int = 22
    auth_method: str = "key"
    password: Optional[str] = None
    key_path: Optional[str] = None
    passphrase: Optional[str] = None
    timeout: int = 20

    def __repr__(self) -> str:
        return (
            f"SSHCredentials(host={self.host!r}, username={self.username!r}, "
            f"port={self.port}, auth_method={self.auth_method!r})"
        )

    def validate(self) -> None:
        if self.auth_method == "password" and not self.password:
            raise ConfigError(
                "Password authentication selected but no password provided",
                field="host.auth_method",
                step="connect",
                hint="set DOCKSHIP_SSH_PASSWORD or switch to key authentication",
            )
        if self.auth_method == "key" and not self.key_path:
            raise ConfigError(
                "Key authentication selected but no key_path provided",
                field="host.key_path",
                step="connect",
                hint="set host.key_path in the descriptor or DOCKSHIP_SSH_KEY_PATH",
            )

    @classmethod
    def for_target(cls, target: HostTarget, defaults: SSHConfig) -> "SSHCredentials":
        """Merge descriptor values over configured defaults."""
        username = target.username or defaults.default_username
        if not username:
            raise ConfigError(
                f"No SSH username for {target.address}",
                field="host.username",
                step="connect",
                hint="set host.username in the descriptor or DOCKSHIP_SSH_USERNAME",
            )
        key_path = target.key_path or defaults.default_key_path
        if key_path:
            key_path = os.path.expanduser(key_path)
        auth_method = target.auth_method or defaults.default_auth_method
        if auth_method is None:
            auth_method = "key" if key_path else "password"
        credentials = cls(
            host=target.address,
            username=username,
            port=target.port or defaults.default_port,
            auth_method=auth_method,
            password=defaults.default_password,
            key_path=key_path,
            timeout=defaults.connect_timeout,
        )
        credentials.validate()
        return credentials
