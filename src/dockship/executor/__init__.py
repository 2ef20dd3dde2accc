"""Remote execution of the deployment sequence."""

from .commands import DockerCommands, parse_digest_output
from .executor import RemoteExecutor, Step
from .host import CommandResult, RemoteHost, build_env_script
from .retry import RetryPolicy

__all__ = [
    "CommandResult",
    "DockerCommands",
    "RemoteExecutor",
    "RemoteHost",
    "RetryPolicy",
    "Step",
    "build_env_script",
    "parse_digest_output",
]
