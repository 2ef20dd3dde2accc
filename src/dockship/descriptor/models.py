"""Immutable data models describing one deployment."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..errors import ConfigError

_SERVICE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SECRET_SOURCES = ("env", "vault", "dotenv")
AUTH_METHODS = ("password", "key")
LOCAL_HOST = "local"


@dataclass(frozen=True)
class ImageReference:
    """A container image: ``[registry/]repository[:tag][@digest]``."""

    repository: str
    registry: Optional[str] = None
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "ImageReference":
        if not isinstance(text, str) or not text.strip():
            raise ConfigError("Image reference is empty", field="image")
        raw = text.strip()
        if any(ch.isspace() for ch in raw):
            raise ConfigError(f"Image reference {raw!r} contains whitespace", field="image")

        digest = None
        if "@" in raw:
            raw, digest = raw.split("@", 1)
            if not _DIGEST_RE.match(digest):
                raise ConfigError(f"Malformed image digest {digest!r}", field="image")

        registry = None
        parts = raw.split("/")
        if len(parts) > 1 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry = parts[0]
            parts = parts[1:]

        tag = None
        last = parts[-1]
        if ":" in last:
            last, tag = last.split(":", 1)
            if not _TAG_RE.match(tag):
                raise ConfigError(f"Malformed image tag {tag!r}", field="image")
        parts[-1] = last

        for component in parts:
            if not _COMPONENT_RE.match(component):
                raise ConfigError(
                    f"Malformed image repository component {component!r} in {text!r}",
                    field="image",
                )

        if tag is None and digest is None:
            tag = "latest"
        return cls(repository="/".join(parts), registry=registry, tag=tag, digest=digest)

    @property
    def name(self) -> str:
        """Registry plus repository, without tag or digest."""
        return f"{self.registry}/{self.repository}" if self.registry else self.repository

    def with_digest(self, digest: str) -> "ImageReference":
        return ImageReference(
            repository=self.repository, registry=self.registry, tag=self.tag, digest=digest
        )

    def pinned(self) -> str:
        """Reference that addresses exactly one image when a digest is known."""
        if self.digest:
            return f"{self.name}@{self.digest}"
        return str(self)

    def __str__(self) -> str:
        text = self.name
        if self.tag:
            text += f":{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text


@dataclass(frozen=True)
class HostTarget:
    """Where the container runs."""

    address: str
    port: Optional[int] = None
    username: Optional[str] = None
    auth_method: Optional[str] = None
    key_path: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.address == LOCAL_HOST

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"address": self.address}
        for key in ("port", "username", "auth_method", "key_path"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class SecretReference:
    """A named secret and where to fetch it from.

    ``name`` is the environment variable the container receives. ``key`` is
    the lookup key inside the backend (environment variable name, vault path
    or dotenv file), ``field`` selects a value inside a vault secret or
    dotenv file.
    """

    name: str
    source: str = "env"
    key: Optional[str] = None
    field: Optional[str] = None

    @property
    def lookup_key(self) -> str:
        return self.key or self.name

    @classmethod
    def parse(cls, name: str, spec: Any) -> "SecretReference":
        if not _ENV_NAME_RE.match(name or ""):
            raise ConfigError(f"Invalid secret name {name!r}", field="secrets")
        if spec is None:
            return cls(name=name)
        if isinstance(spec, str):
            source, _, rest = spec.partition(":")
            if not rest:
                source, rest = "env", spec
            key, _, fld = rest.partition("#")
            return cls._checked(name, source, key or None, fld or None)
        if isinstance(spec, dict):
            return cls._checked(
                name,
                spec.get("source", "env"),
                spec.get("key") or spec.get("path"),
                spec.get("field"),
            )
        raise ConfigError(f"Secret {name} must be a string or object", field="secrets")

    @classmethod
    def _checked(
        cls, name: str, source: str, key: Optional[str], fld: Optional[str]
    ) -> "SecretReference":
        if source not in SECRET_SOURCES:
            raise ConfigError(
                f"Secret {name} has unknown source {source!r} (expected one of "
                f"{', '.join(SECRET_SOURCES)})",
                field="secrets",
            )
        if source in ("vault", "dotenv") and not key:
            raise ConfigError(f"Secret {name} needs a {source} path", field="secrets")
        return cls(name=name, source=source, key=key, field=fld)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"source": self.source}
        if self.key is not None:
            payload["key"] = self.key
        if self.field is not None:
            payload["field"] = self.field
        return payload


@dataclass(frozen=True)
class HealthCheck:
    command: str
    interval: float = 5.0
    timeout: float = 120.0
    in_container: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "interval": self.interval,
            "timeout": self.timeout,
            "in_container": self.in_container,
        }


@dataclass(frozen=True)
class DeploymentDescriptor:
    """What to deploy and where. Immutable for the length of a deploy run."""

    service: str
    image: ImageReference
    host: HostTarget
    health_check: HealthCheck
    container_name: str = ""
    environment: Tuple[Tuple[str, str], ...] = ()
    secrets: Tuple[SecretReference, ...] = ()
    ports: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    network: Optional[str] = None
    restart_policy: str = "unless-stopped"
    post_deploy: Tuple[str, ...] = ()
    rollback: bool = True
    source: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.container_name:
            object.__setattr__(self, "container_name", self.service)

    @property
    def env(self) -> Dict[str, str]:
        return dict(self.environment)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], *, source: Optional[str] = None) -> "DeploymentDescriptor":
        from .loader import build_descriptor

        return build_descriptor(payload, source=source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "image": str(self.image),
            "host": self.host.to_dict(),
            "container_name": self.container_name,
            "environment": dict(self.environment),
            "secrets": {ref.name: ref.to_dict() for ref in self.secrets},
            "ports": list(self.ports),
            "volumes": list(self.volumes),
            "network": self.network,
            "restart_policy": self.restart_policy,
            "post_deploy": list(self.post_deploy),
            "health_check": self.health_check.to_dict(),
            "rollback": self.rollback,
        }


def validate_service_name(name: Any, field_name: str = "service") -> str:
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"`{field_name}` is required", field=field_name)
    if not _SERVICE_RE.match(name):
        raise ConfigError(
            f"`{field_name}` {name!r} may only contain letters, digits, '_', '.' and '-'",
            field=field_name,
        )
    return name


def validate_env_name(name: str) -> str:
    if not _ENV_NAME_RE.match(name):
        raise ConfigError(f"Invalid environment variable name {name!r}", field="environment")
    return name
