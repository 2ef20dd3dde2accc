"""The capability every target host exposes to the executor."""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def tail(self, lines: int = 5) -> str:
        text = self.stderr or self.stdout
        return "\n".join(text.splitlines()[-lines:])


def build_env_script(command: str, env: Mapping[str, str]) -> str:
    """Shell script exporting `env` and then running `command`.

    The script is written to the shell's stdin so values never appear in a
    process argument list.
    """
    lines = [f"export {name}={shlex.quote(value)}" for name, value in env.items()]
    lines.append(command)
    return "\n".join(lines) + "\n"


class RemoteHost(ABC):
    """A host that can run shell commands: ``run(cmd) -> CommandResult``.

    Implementations raise ``RemoteConnectionError`` when the channel itself
    fails and return a non-zero ``CommandResult`` when the command does.
    """

    name: str = "host"

    @abstractmethod
    def connect(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def run(
        self,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        raise NotImplementedError

    def __enter__(self) -> "RemoteHost":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
