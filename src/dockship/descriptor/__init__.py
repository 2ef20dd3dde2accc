"""Deployment descriptor loading and validation."""

from .loader import build_descriptor, check_host_resolves, dump_descriptor, load_descriptor
from .models import (
    DeploymentDescriptor,
    HealthCheck,
    HostTarget,
    ImageReference,
    SecretReference,
)

__all__ = [
    "DeploymentDescriptor",
    "HealthCheck",
    "HostTarget",
    "ImageReference",
    "SecretReference",
    "build_descriptor",
    "check_host_resolves",
    "dump_descriptor",
    "load_descriptor",
]
