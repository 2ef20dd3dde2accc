"""Runs the deployment sequence against one host."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from ..descriptor.models import DeploymentDescriptor, ImageReference
from ..errors import (
    DeploymentCancelled,
    HealthCheckTimeout,
    RemoteCommandError,
    RemoteConnectionError,
)
from ..utils.logging import get_logger
from .commands import DockerCommands, parse_digest_output
from .host import CommandResult, RemoteHost
from .retry import RetryPolicy

logger = get_logger(__name__)


class Step(str, Enum):
    """Deployment steps, in execution order."""

    PULL = "pull"
    RECREATE = "recreate"
    POST_DEPLOY = "post_deploy"
    HEALTH_CHECK = "health_check"
    ROLLBACK = "rollback"


class RemoteExecutor:
    """
    Executes pull → recreate → post-deploy → health check on a RemoteHost.

    Every remote command is idempotent and retried by the RetryPolicy.
    Cancellation is only observed between commands: a command that has been
    sent is always allowed to return.
    """

    def __init__(
        self,
        host: RemoteHost,
        *,
        commands: Optional[DockerCommands] = None,
        retry: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        command_timeout: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host
        self.commands = commands or DockerCommands()
        self.cancel_event = cancel_event or threading.Event()
        self.retry = retry or RetryPolicy()
        # backoff 等待也可以被取消
        self.retry.wait = self._wait_or_cancel
        self.command_timeout = command_timeout
        self.clock = clock
        self.last_step: Optional[str] = None
        self.retries: Dict[str, int] = {}
        self.health_attempts = 0

    # ------------------------------------------------------------------
    # helpers

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise DeploymentCancelled("Deployment cancelled", step=self.last_step)

    def _wait_or_cancel(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise DeploymentCancelled("Deployment cancelled", step=self.last_step)

    def _count_retry(self, step: str) -> Callable[[int, Exception], None]:
        def on_retry(attempt: int, exc: Exception) -> None:
            self.retries[step] = self.retries.get(step, 0) + 1

        return on_retry

    def _run_once(
        self, step: str, command: str, env: Optional[Mapping[str, str]] = None
    ) -> CommandResult:
        self._check_cancelled()
        logger.debug("[%s] $ %s", step, command)
        try:
            result = self.host.run(command, env=env, timeout=self.command_timeout)
        except RemoteConnectionError as exc:
            exc.step = exc.step or step
            raise
        if not result.ok:
            raise RemoteCommandError(
                f"{step} exited with status {result.exit_status}: {result.tail() or 'no output'}",
                step=step,
                result=result,
            )
        return result

    def _run_step(
        self, step: str, command: str, env: Optional[Mapping[str, str]] = None
    ) -> CommandResult:
        self.last_step = step
        return self.retry.call(
            lambda: self._run_once(step, command, env),
            step=step,
            on_retry=self._count_retry(step),
        )

    # ------------------------------------------------------------------
    # steps

    def pull(self, image: ImageReference) -> tuple[str, str]:
        """Pull `image`; return its pinned reference and digest."""
        logger.info("Pulling %s on %s", image, self.host.name)
        self._run_step(Step.PULL.value, self.commands.pull(image))
        result = self._run_step(Step.PULL.value, self.commands.inspect_digest(image))
        pinned, digest = parse_digest_output(image, result.stdout)
        logger.info("Resolved %s to %s", image, digest or pinned)
        return pinned, digest

    def recreate(
        self,
        descriptor: DeploymentDescriptor,
        image_ref: str,
        env: Mapping[str, str],
        step: str = Step.RECREATE.value,
    ) -> None:
        logger.info("Recreating container %s from %s", descriptor.container_name, image_ref)
        command = self.commands.recreate(descriptor, image_ref, env.keys())
        self._run_step(step, command, env=env or None)

    def run_post_deploy(self, descriptor: DeploymentDescriptor) -> None:
        for index, command in enumerate(descriptor.post_deploy, 1):
            logger.info("Post-deploy %d/%d: %s", index, len(descriptor.post_deploy), command)
            self._run_step(
                Step.POST_DEPLOY.value,
                self.commands.exec(descriptor.container_name, command),
            )

    def _probe(self, descriptor: DeploymentDescriptor) -> bool:
        health = descriptor.health_check
        command = (
            self.commands.exec(descriptor.container_name, health.command)
            if health.in_container
            else health.command
        )
        try:
            result = self.host.run(command, timeout=max(1, int(health.interval * 2)))
        except RemoteConnectionError as exc:
            # 连接抖动不算健康检查通过，继续轮询
            logger.warning("Health probe could not reach %s: %s", self.host.name, exc)
            return False
        if not result.ok:
            logger.debug("Health probe failed (%d): %s", result.exit_status, result.tail(2))
        return result.ok

    def wait_healthy(self, descriptor: DeploymentDescriptor) -> int:
        """Poll the health check until it passes; return the number of probes."""
        self.last_step = Step.HEALTH_CHECK.value
        health = descriptor.health_check
        deadline = self.clock() + health.timeout
        attempts = 0
        logger.info(
            "Waiting for %s to become healthy (every %.1fs, up to %.0fs)",
            descriptor.service,
            health.interval,
            health.timeout,
        )
        while True:
            self._check_cancelled()
            attempts += 1
            self.health_attempts = attempts
            if self._probe(descriptor):
                logger.info("%s is healthy after %d probe(s)", descriptor.service, attempts)
                return attempts
            remaining = deadline - self.clock()
            if remaining <= 0:
                self._log_container_tail(descriptor)
                raise HealthCheckTimeout(
                    f"{descriptor.service} did not become healthy within {health.timeout:.0f}s "
                    f"({attempts} probes)",
                    step=Step.HEALTH_CHECK.value,
                    service=descriptor.service,
                )
            self._wait_or_cancel(min(health.interval, remaining))

    def _log_container_tail(self, descriptor: DeploymentDescriptor) -> None:
        try:
            result = self.host.run(self.commands.logs(descriptor.container_name), timeout=30)
        except RemoteConnectionError as exc:
            logger.warning("Could not fetch container logs: %s", exc)
            return
        if result.stdout or result.stderr:
            logger.warning(
                "Last log lines of %s:\n%s",
                descriptor.container_name,
                "\n".join(filter(None, [result.stdout, result.stderr])),
            )

    # ------------------------------------------------------------------
    # sequences

    def deploy(self, descriptor: DeploymentDescriptor, env: Mapping[str, str]) -> tuple[str, str]:
        """Steps 1-4. Returns the pinned image reference and digest deployed."""
        pinned, digest = self.pull(descriptor.image)
        self.recreate(descriptor, pinned, env)
        self.run_post_deploy(descriptor)
        self.wait_healthy(descriptor)
        return pinned, digest

    def rollback(
        self, descriptor: DeploymentDescriptor, image_ref: str, env: Mapping[str, str]
    ) -> None:
        """Recreate the container from `image_ref` and wait for it to be healthy."""
        logger.warning("Rolling back %s to %s", descriptor.service, image_ref)
        self.recreate(descriptor, image_ref, env, step=Step.ROLLBACK.value)
        self.wait_healthy(descriptor)
