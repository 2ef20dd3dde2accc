"""Local command execution session."""

from __future__ import annotations

import os
import subprocess
from typing import Mapping, Optional

from ..errors import RemoteConnectionError
from ..executor.host import CommandResult, RemoteHost


class LocalSession(RemoteHost):
    """
    Local command execution session.

    Provides the same interface as SSHSession but executes commands on this
    machine through ``sh``. Used when a descriptor's host is ``local``.
    """

    name = "local"

    def __init__(self, working_dir: Optional[str] = None, shell: str = "/bin/sh") -> None:
        """
        Initialize local session.

        Args:
            working_dir: Working directory for commands. Defaults to home directory.
            shell: Shell used to interpret commands.
        """
        self.working_dir = working_dir or os.path.expanduser("~")
        self.shell = shell
        self._connected = False

    def connect(self) -> None:
        """No-op for local session (for API compatibility with SSHSession)."""
        self._connected = True

    def close(self) -> None:
        """No-op for local session (for API compatibility with SSHSession)."""
        self._connected = False

    def run(
        self,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        if timeout is None:
            timeout = 600

        # env 通过子进程环境传入，不出现在命令行
        process_env = dict(os.environ)
        if env:
            process_env.update(env)
        try:
            completed = subprocess.run(
                [self.shell, "-c", command],
                cwd=self.working_dir,
                env=process_env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            stdout = exc.stdout.decode("utf-8", "replace") if isinstance(exc.stdout, bytes) else (exc.stdout or "")
            return CommandResult(
                command=command,
                stdout=stdout.strip(),
                stderr=f"TIMEOUT: Command did not complete within {timeout} seconds.",
                exit_status=-1,
            )
        except OSError as exc:
            raise RemoteConnectionError(f"Cannot start {self.shell}: {exc}") from exc

        return CommandResult(
            command=command,
            stdout=completed.stdout.strip(),
            stderr=completed.stderr.strip(),
            exit_status=completed.returncode,
        )
