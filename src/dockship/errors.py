"""Error taxonomy for dockship.

Every error a deploy run can end with derives from :class:`DeployError` and
carries what the CLI needs to report it: the step that was executing, the
service being deployed, a remediation hint and a process exit code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .executor.host import CommandResult


class DeployError(RuntimeError):
    """Base class for failures surfaced to the operator."""

    exit_code = 1
    default_hint = "re-run with -v for details"

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        service: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.service = service
        self.hint = hint or self.default_hint

    def describe(self) -> str:
        return (
            f"{self.message} (service={self.service or '-'}, "
            f"step={self.step or '-'}; hint: {self.hint})"
        )


class ConfigError(DeployError):
    """Malformed or missing descriptor / configuration fields."""

    exit_code = 10
    default_hint = "fix the descriptor and run `dockship validate` again"

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs) -> None:
        kwargs.setdefault("step", "load_descriptor")
        if field and "hint" not in kwargs:
            kwargs["hint"] = f"check the `{field}` field"
        super().__init__(message, **kwargs)
        self.field = field


class SecretUnavailable(DeployError):
    """A referenced secret could not be resolved from its backend."""

    exit_code = 11

    def __init__(self, name: str, reason: str, **kwargs) -> None:
        kwargs.setdefault("step", "resolve_secrets")
        kwargs.setdefault("hint", f"check {name}")
        super().__init__(f"Secret {name} is unavailable: {reason}", **kwargs)
        self.name = name


class RemoteConnectionError(DeployError):
    """Authentication or network failure talking to the target host."""

    exit_code = 12
    default_hint = "check the host address, SSH credentials and network access"


class RemoteCommandError(DeployError):
    """A remote step exited with a non-zero status."""

    exit_code = 13
    default_hint = "inspect the command output above and the container logs"

    def __init__(self, message: str, *, result: Optional["CommandResult"] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.result = result


class HealthCheckTimeout(DeployError):
    """The service never reported healthy within the configured timeout."""

    exit_code = 14
    default_hint = "check the container logs and the health-check command"


class DeploymentInProgress(DeployError):
    """Another deploy of the same service has not finished yet."""

    exit_code = 15
    default_hint = "wait for the running deploy, or pass --force if it is stale"


class RollbackUnavailable(DeployError):
    """There is no earlier known-good image to return to."""

    exit_code = 16
    default_hint = "deploy a known-good image explicitly"


class DeploymentCancelled(DeployError):
    """The run was stopped by a signal between remote commands."""

    exit_code = 130
    default_hint = "the host was left after the last completed command; check status"
