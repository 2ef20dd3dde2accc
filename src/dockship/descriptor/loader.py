"""Load and validate deployment descriptors."""

from __future__ import annotations

import json
import re
import socket
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from dotenv import dotenv_values

from ..config import HealthConfig
from ..errors import ConfigError
from ..utils.logging import get_logger
from .models import (
    AUTH_METHODS,
    DeploymentDescriptor,
    HealthCheck,
    HostTarget,
    ImageReference,
    SecretReference,
    validate_env_name,
    validate_service_name,
)

logger = get_logger(__name__)

_PORT_RE = re.compile(
    r"^(?:(?P<ip>[0-9.]+|\[[0-9a-fA-F:]+\]):)?(?:(?P<host>\d{1,5}):)?(?P<container>\d{1,5})(?:/(?:tcp|udp|sctp))?$"
)
_VOLUME_RE = re.compile(r"^[^:\s]+:/[^:\s]*(?::(?:ro|rw|z|Z|[a-z,]+))?$")

_KNOWN_KEYS = {
    "service",
    "image",
    "host",
    "container_name",
    "environment",
    "env_file",
    "secrets",
    "ports",
    "volumes",
    "network",
    "restart_policy",
    "post_deploy",
    "health_check",
    "rollback",
}
_RESTART_POLICIES = ("no", "always", "unless-stopped", "on-failure")

HostResolver = Callable[[str, int], Any]


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"`{key}` is required and must be a non-empty string", field=key)
    return value.strip()


def _string_list(payload: Dict[str, Any], key: str) -> tuple:
    value = payload.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
        raise ConfigError(f"`{key}` must be a list of non-empty strings", field=key)
    return tuple(v.strip() for v in value)


def _build_host(raw: Any) -> HostTarget:
    if isinstance(raw, str):
        raw = {"address": raw}
    if not isinstance(raw, dict):
        raise ConfigError("`host` must be a string or an object", field="host")
    address = raw.get("address") or raw.get("host")
    if not isinstance(address, str) or not address.strip():
        raise ConfigError("`host.address` is required", field="host")
    address = address.strip()
    username = raw.get("username") or raw.get("user")
    # user@host 形式
    if "@" in address:
        username, address = address.split("@", 1)
    port = raw.get("port")
    if address.count(":") == 1:
        address, port = address.rsplit(":", 1)
    if port is not None:
        try:
            port = int(port)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"`host.port` must be an integer, got {port!r}", field="host") from exc
        if not 0 < port < 65536:
            raise ConfigError(f"`host.port` {port} is out of range", field="host")
    auth_method = raw.get("auth_method")
    if auth_method is not None and auth_method not in AUTH_METHODS:
        raise ConfigError(
            f"`host.auth_method` must be one of {', '.join(AUTH_METHODS)}", field="host"
        )
    return HostTarget(
        address=address,
        port=port,
        username=username or None,
        auth_method=auth_method,
        key_path=raw.get("key_path"),
    )


def _build_health(raw: Any, defaults: HealthConfig) -> HealthCheck:
    if isinstance(raw, str):
        raw = {"command": raw}
    if not isinstance(raw, dict):
        raise ConfigError("`health_check` must be a string or an object", field="health_check")
    command = raw.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ConfigError("`health_check.command` is required", field="health_check")
    try:
        interval = float(raw.get("interval", defaults.interval))
        timeout = float(raw.get("timeout", defaults.timeout))
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            "`health_check.interval` and `health_check.timeout` must be numbers",
            field="health_check",
        ) from exc
    if interval <= 0 or timeout <= 0:
        raise ConfigError(
            "`health_check.interval` and `health_check.timeout` must be positive",
            field="health_check",
        )
    return HealthCheck(
        command=command.strip(),
        interval=interval,
        timeout=timeout,
        in_container=bool(raw.get("in_container", False)),
    )


def _build_environment(payload: Dict[str, Any], base_dir: Optional[Path]) -> tuple:
    env: Dict[str, str] = {}
    env_file = payload.get("env_file")
    if env_file:
        env_path = Path(env_file)
        if base_dir is not None and not env_path.is_absolute():
            env_path = base_dir / env_path
        if not env_path.is_file():
            raise ConfigError(f"env_file {env_path} does not exist", field="env_file")
        for key, value in dotenv_values(env_path).items():
            env[key] = "" if value is None else value

    explicit = payload.get("environment") or {}
    if not isinstance(explicit, dict):
        raise ConfigError("`environment` must be an object of NAME: value", field="environment")
    for key, value in explicit.items():
        if value is None or isinstance(value, (dict, list)):
            raise ConfigError(f"Environment value for {key} must be a scalar", field="environment")
        env[key] = str(value).lower() if isinstance(value, bool) else str(value)

    for key in env:
        validate_env_name(key)
    return tuple(sorted(env.items()))


def _anchor(ref: SecretReference, base_dir: Optional[Path]) -> SecretReference:
    # dotenv 路径相对于描述文件所在目录
    if ref.source != "dotenv" or base_dir is None or Path(ref.lookup_key).is_absolute():
        return ref
    return SecretReference(
        name=ref.name, source=ref.source, key=str(base_dir / ref.lookup_key), field=ref.field
    )


def _build_secrets(payload: Dict[str, Any], environment: tuple, base_dir: Optional[Path]) -> tuple:
    raw = payload.get("secrets") or {}
    if isinstance(raw, list):
        raw = {name: None for name in raw}
    if not isinstance(raw, dict):
        raise ConfigError("`secrets` must be an object or a list of names", field="secrets")
    refs = tuple(
        _anchor(SecretReference.parse(name, spec), base_dir) for name, spec in sorted(raw.items())
    )
    clashes = {name for name, _ in environment} & {ref.name for ref in refs}
    if clashes:
        raise ConfigError(
            f"{', '.join(sorted(clashes))} defined both as plain environment and as a secret",
            field="secrets",
        )
    return refs


def build_descriptor(
    payload: Dict[str, Any],
    *,
    source: Optional[str] = None,
    base_dir: Optional[Path] = None,
    health_defaults: Optional[HealthConfig] = None,
) -> DeploymentDescriptor:
    """Validate a raw mapping and turn it into a :class:`DeploymentDescriptor`."""
    if not isinstance(payload, dict):
        raise ConfigError("Descriptor must be a JSON object")
    unknown = {k for k in payload if not k.startswith("_")} - _KNOWN_KEYS
    if unknown:
        raise ConfigError(f"Unknown descriptor keys: {', '.join(sorted(unknown))}")

    service = validate_service_name(payload.get("service"))
    image = ImageReference.parse(_require_str(payload, "image"))
    if "host" not in payload:
        raise ConfigError("`host` is required", field="host")
    host = _build_host(payload["host"])
    if "health_check" not in payload:
        raise ConfigError("`health_check` is required", field="health_check")
    health = _build_health(payload["health_check"], health_defaults or HealthConfig())

    container_name = payload.get("container_name") or service
    validate_service_name(container_name, "container_name")

    ports = _string_list(payload, "ports")
    for port in ports:
        if not _PORT_RE.match(port):
            raise ConfigError(f"Malformed port mapping {port!r}", field="ports")
    volumes = _string_list(payload, "volumes")
    for volume in volumes:
        if not _VOLUME_RE.match(volume):
            raise ConfigError(
                f"Malformed volume {volume!r} (expected name:/container/path[:mode])",
                field="volumes",
            )

    restart_policy = payload.get("restart_policy") or "unless-stopped"
    if not isinstance(restart_policy, str) or restart_policy.split(":", 1)[0] not in _RESTART_POLICIES:
        raise ConfigError(f"Unknown restart policy {restart_policy!r}", field="restart_policy")

    network = payload.get("network")
    if network is not None and (not isinstance(network, str) or not network.strip()):
        raise ConfigError("`network` must be a non-empty string", field="network")

    rollback = payload.get("rollback", True)
    if not isinstance(rollback, bool):
        raise ConfigError("`rollback` must be true or false", field="rollback")

    environment = _build_environment(payload, base_dir)
    return DeploymentDescriptor(
        service=service,
        image=image,
        host=host,
        health_check=health,
        container_name=container_name,
        environment=environment,
        secrets=_build_secrets(payload, environment, base_dir),
        ports=ports,
        volumes=volumes,
        network=network,
        restart_policy=restart_policy,
        post_deploy=_string_list(payload, "post_deploy"),
        rollback=rollback,
        source=source,
    )


def check_host_resolves(host: HostTarget, resolver: Optional[HostResolver] = None) -> None:
    """Fail with ConfigError when the target host has no address."""
    if host.is_local:
        return
    resolver = resolver or socket.getaddrinfo
    try:
        resolver(host.address, host.port or 22)
    except (socket.gaierror, UnicodeError) as exc:
        raise ConfigError(
            f"Target host {host.address!r} does not resolve: {exc}",
            field="host",
            hint=f"check that {host.address} is reachable by name from this machine",
        ) from exc


def load_descriptor(
    path: Union[str, Path],
    *,
    resolve_host: bool = True,
    resolver: Optional[HostResolver] = None,
    health_defaults: Optional[HealthConfig] = None,
) -> DeploymentDescriptor:
    """Read, validate and return the descriptor stored at `path`."""
    descriptor_path = Path(path)
    if not descriptor_path.is_file():
        raise ConfigError(f"Descriptor {descriptor_path} does not exist", hint="check the path")
    try:
        payload = json.loads(descriptor_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Descriptor {descriptor_path} is not valid JSON: {exc}") from exc

    descriptor = build_descriptor(
        payload,
        source=str(descriptor_path.resolve()),
        base_dir=descriptor_path.resolve().parent,
        health_defaults=health_defaults,
    )
    if resolve_host:
        check_host_resolves(descriptor.host, resolver)
    logger.debug(
        "Loaded descriptor for %s: %s -> %s", descriptor.service, descriptor.image, descriptor.host.address
    )
    return descriptor


def dump_descriptor(descriptor: DeploymentDescriptor, path: Union[str, Path]) -> None:
    Path(path).write_text(json.dumps(descriptor.to_dict(), indent=2) + "\n", encoding="utf-8")
