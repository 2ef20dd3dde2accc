"""SSH session management built on Paramiko."""

from __future__ import annotations

import sys
import time
from typing import Callable, Mapping, Optional

import paramiko

from ..errors import RemoteConnectionError
from ..executor.host import CommandResult, RemoteHost, build_env_script
from ..utils.logging import get_logger
from .credentials import SSHCredentials

logger = get_logger(__name__)


class SSHSession(RemoteHost):
    """High-level wrapper around paramiko.SSHClient."""

    def __init__(
        self,
        credentials: SSHCredentials,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
        idle_timeout: int = 300,
        stream_output: bool = False,
    ) -> None:
        self.credentials = credentials
        self.name = credentials.host
        self.idle_timeout = idle_timeout
        self.stream_output = stream_output
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        if self._client:
            return
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            connect_kwargs = {
                "hostname": self.credentials.host,
                "port": self.credentials.port,
                "username": self.credentials.username,
                "timeout": self.credentials.timeout,
                "look_for_keys": False,
                "allow_agent": False,
            }
            if self.credentials.auth_method == "password":
                connect_kwargs["password"] = self.credentials.password
            else:
                connect_kwargs["key_filename"] = self.credentials.key_path
                if self.credentials.passphrase:
                    connect_kwargs["passphrase"] = self.credentials.passphrase
            client.connect(**connect_kwargs)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise RemoteConnectionError(
                f"Cannot connect to {self.credentials.username}@{self.credentials.host}:"
                f"{self.credentials.port}: {exc}",
                step="connect",
            ) from exc
        logger.debug("Connected to %s", self.credentials.host)
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def run(
        self,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        """
        Execute a command on the remote server.

        Args:
            command: The command to execute
            env: Variables exported before the command runs. They are sent
                over the channel's stdin, never on the command line.
            timeout: Total timeout in seconds (default: 600)

        Returns:
            CommandResult with command output and exit status

        Raises:
            RemoteConnectionError: the transport failed; the session is
                dropped so the next call reconnects.
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        # 设置默认总超时
        if timeout is None:
            timeout = 600

        try:
            if env:
                stdin, stdout, stderr = self._client.exec_command("sh -s", timeout=timeout)
                stdin.write(build_env_script(command, env))
                stdin.flush()
                stdin.channel.shutdown_write()
            else:
                stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
            return self._read_output(command, stdout, stderr, timeout)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            self.close()
            raise RemoteConnectionError(
                f"Connection to {self.credentials.host} failed while running a command: {exc}",
            ) from exc

    def _read_output(self, command: str, stdout, stderr, timeout: int) -> CommandResult:
        """Collect output until the command exits or a deadline passes.

        The exit status is only read once the channel reports one, and both
        buffers are drained on every pass so a chatty command never blocks on
        a full window.
        """
        channel = stdout.channel
        stdout_chunks = []
        stderr_chunks = []
        start_time = time.time()
        last_activity_time = time.time()

        channel.setblocking(0)

        def drain() -> bool:
            active = False
            while channel.recv_ready():
                chunk = channel.recv(1024).decode("utf-8", errors="replace")
                stdout_chunks.append(chunk)
                if self.stream_output:
                    sys.stdout.write(chunk)
                    sys.stdout.flush()
                active = True
            while channel.recv_stderr_ready():
                chunk = channel.recv_stderr(1024).decode("utf-8", errors="replace")
                stderr_chunks.append(chunk)
                if self.stream_output:
                    sys.stderr.write(chunk)
                    sys.stderr.flush()
                active = True
            return active

        while not channel.exit_status_ready():
            if drain():
                last_activity_time = time.time()

            # 长时间无输出
            if time.time() - last_activity_time > self.idle_timeout:
                channel.close()
                return CommandResult(
                    command=command,
                    stdout="".join(stdout_chunks).strip(),
                    stderr=f"IDLE_TIMEOUT: No output for {self.idle_timeout} seconds.",
                    exit_status=-1,
                )

            if time.time() - start_time > timeout:
                channel.close()
                return CommandResult(
                    command=command,
                    stdout="".join(stdout_chunks).strip(),
                    stderr=f"TOTAL_TIMEOUT: Command exceeded {timeout} seconds total execution time.",
                    exit_status=-2,
                )

            time.sleep(0.05)

        drain()
        return CommandResult(
            command=command,
            stdout="".join(stdout_chunks).strip(),
            stderr="".join(stderr_chunks).strip(),
            exit_status=channel.recv_exit_status(),
        )
