"""Deployment orchestrator: config → secrets → remote execution → ledger."""

from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

from ..config import AppConfig
from ..descriptor import DeploymentDescriptor, load_descriptor
from ..errors import (
    ConfigError,
    DeployError,
    DeploymentCancelled,
    HealthCheckTimeout,
    RemoteCommandError,
    RemoteConnectionError,
    RollbackUnavailable,
)
from ..executor import DockerCommands, RemoteExecutor, RemoteHost, RetryPolicy, Step
from ..local import LocalSession
from ..secrets import SecretResolver
from ..ssh import SSHCredentials, SSHSession
from ..state import DeploymentLedger, DeploymentRecord, Outcome, ServiceStatus
from ..state.models import utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)

HostFactory = Callable[[DeploymentDescriptor], RemoteHost]

# 容器开始重建后出现这些错误会触发自动回滚
_ROLLBACK_TRIGGERS = (HealthCheckTimeout, RemoteCommandError, RemoteConnectionError)


class DeploymentOrchestrator:
    """
    Runs one deploy strictly in sequence:

    1. register the attempt in the ledger (one in-progress attempt per service)
    2. resolve secrets, before any remote contact
    3. pull, recreate, post-deploy, health check on the target host
    4. record the outcome, rolling back to the running image when allowed
    """

    def __init__(
        self,
        config: AppConfig,
        ledger: DeploymentLedger,
        resolver: SecretResolver,
        *,
        host_factory: Optional[HostFactory] = None,
        retry_factory: Optional[Callable[[], RetryPolicy]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.resolver = resolver
        self.host_factory = host_factory or self._default_host
        self.retry_factory = retry_factory or self._default_retry
        self.cancel_event = cancel_event or threading.Event()

    # ------------------------------------------------------------------
    # wiring

    def _default_host(self, descriptor: DeploymentDescriptor) -> RemoteHost:
        if descriptor.host.is_local:
            return LocalSession()
        credentials = SSHCredentials.for_target(descriptor.host, self.config.ssh)
        return SSHSession(
            credentials,
            idle_timeout=self.config.executor.idle_timeout,
            stream_output=self.config.executor.stream_output,
        )

    def _default_retry(self) -> RetryPolicy:
        executor_cfg = self.config.executor
        return RetryPolicy(
            max_attempts=executor_cfg.max_attempts,
            initial_delay=executor_cfg.backoff_seconds,
            multiplier=executor_cfg.backoff_multiplier,
        )

    def _executor(self, host: RemoteHost) -> RemoteExecutor:
        return RemoteExecutor(
            host,
            commands=DockerCommands(self.config.executor.docker_binary),
            retry=self.retry_factory(),
            cancel_event=self.cancel_event,
            command_timeout=self.config.executor.command_timeout,
        )

    def _fail(
        self,
        record: DeploymentRecord,
        exc: BaseException,
        executor: Optional[RemoteExecutor],
        **fields,
    ) -> DeploymentRecord:
        step = executor.last_step if executor else None
        if isinstance(exc, DeployError):
            exc.service = exc.service or record.service
            exc.step = exc.step or step
            step = exc.step
            message = exc.message
        else:
            message = f"{type(exc).__name__}: {exc}"
        cancelled = isinstance(exc, (DeploymentCancelled, KeyboardInterrupt))
        outcome = Outcome.CANCELLED if cancelled else Outcome.FAILED
        return self.ledger.record_outcome(
            record,
            outcome,
            step=step,
            error=message,
            retries=dict(executor.retries) if executor else {},
            **fields,
        )

    # ------------------------------------------------------------------
    # operations

    def deploy(self, descriptor: DeploymentDescriptor, *, force: bool = False) -> DeploymentRecord:
        service = descriptor.service
        running = self.ledger.running(service)
        record = self.ledger.record_start(
            service,
            str(descriptor.image),
            force=force,
            previous_digest=running.digest if running else None,
            descriptor_path=descriptor.source,
        )
        logger.info("Deploying %s (%s) as attempt %s", service, descriptor.image, record.deploy_id)

        executor: Optional[RemoteExecutor] = None
        deployed: Dict[str, str] = {}
        rollback_row: Optional[DeploymentRecord] = None
        try:
            with self.resolver.resolve(descriptor.secrets, service=service) as secrets:
                env = {**descriptor.env, **secrets}
                try:
                    host = self.host_factory(descriptor)
                    executor = self._executor(host)
                    with host:
                        pinned, digest = executor.pull(descriptor.image)
                        deployed = {"image_ref": pinned, "digest": digest}
                        try:
                            executor.recreate(descriptor, pinned, env)
                            executor.run_post_deploy(descriptor)
                            executor.wait_healthy(descriptor)
                        except _ROLLBACK_TRIGGERS as exc:
                            rollback_row = self._auto_rollback(
                                descriptor, record, running, digest, executor, env, exc
                            )
                            raise
                finally:
                    env.clear()
        except BaseException as exc:
            self._fail(record, exc, executor, **deployed)
            if rollback_row is not None:
                self.ledger.append(rollback_row)
            raise

        final = self.ledger.record_outcome(
            record,
            Outcome.SUCCESS,
            step=executor.last_step,
            retries=dict(executor.retries),
            **deployed,
        )
        logger.info(
            "%s deployed: %s (retries: %d)", service, deployed.get("digest") or deployed.get("image_ref"), final.retry_count
        )
        return final

    def _auto_rollback(
        self,
        descriptor: DeploymentDescriptor,
        record: DeploymentRecord,
        running: Optional[DeploymentRecord],
        new_digest: str,
        executor: RemoteExecutor,
        env: Dict[str, str],
        cause: DeployError,
    ) -> Optional[DeploymentRecord]:
        """Make the single rollback attempt; return the ledger row describing it."""
        if not descriptor.rollback:
            cause.hint = f"automatic rollback is disabled; run `dockship rollback {descriptor.service}`"
            return None
        if running is None or not running.image_ref:
            cause.hint = "no earlier successful deploy to roll back to; fix and redeploy"
            return None
        if running.digest and running.digest == new_digest:
            cause.hint = "the failing image is the one that was already running; fix and redeploy"
            return None

        failed_step = executor.last_step
        row = DeploymentRecord(
            deploy_id=f"{record.deploy_id}-rb",
            service=descriptor.service,
            image=running.image,
            digest=running.digest,
            image_ref=running.image_ref,
            previous_digest=new_digest or None,
            descriptor_path=descriptor.source,
            rollback_of=record.deploy_id,
        )
        try:
            executor.rollback(descriptor, running.image_ref, env)
        except DeployError as exc:
            logger.error("Rollback of %s failed: %s", descriptor.service, exc.message)
            cause.hint = f"automatic rollback failed ({exc.message}); the host needs manual attention"
            return row.evolve(
                outcome=Outcome.FAILED,
                finished_at=utcnow(),
                step=Step.ROLLBACK.value,
                error=exc.message,
            )
        finally:
            executor.last_step = failed_step
        cause.hint = f"rolled back to {running.image}; check the container logs before redeploying"
        logger.warning("%s rolled back to %s", descriptor.service, running.image)
        return row.evolve(outcome=Outcome.ROLLED_BACK, finished_at=utcnow(), step=Step.ROLLBACK.value)

    def rollback(
        self, service: str, *, descriptor: Optional[DeploymentDescriptor] = None
    ) -> DeploymentRecord:
        """Return `service` to the last success before the image now running."""
        running = self.ledger.running(service)
        if running is None:
            raise RollbackUnavailable(
                f"No successful deploy of {service} is recorded", service=service, step="rollback"
            )
        target = self.ledger.rollback_target(service)
        if target is None or not target.image_ref:
            raise RollbackUnavailable(
                f"No earlier known-good image of {service} than {running.image}",
                service=service,
                step="rollback",
            )
        if descriptor is None:
            path = running.descriptor_path or target.descriptor_path
            if not path:
                raise RollbackUnavailable(
                    f"The ledger does not say which descriptor deployed {service}",
                    service=service,
                    step="rollback",
                    hint="pass --descriptor",
                )
            descriptor = load_descriptor(path, health_defaults=self.config.health)
        if descriptor.service != service:
            raise ConfigError(
                f"Descriptor is for {descriptor.service!r}, not {service!r}",
                field="service",
                service=service,
            )

        record = self.ledger.record_start(
            service,
            target.image,
            previous_digest=running.digest,
            descriptor_path=descriptor.source,
            rollback_of=running.deploy_id,
        )
        logger.info("Rolling back %s from %s to %s", service, running.image, target.image)
        executor: Optional[RemoteExecutor] = None
        try:
            with self.resolver.resolve(descriptor.secrets, service=service) as secrets:
                env = {**descriptor.env, **secrets}
                try:
                    host = self.host_factory(descriptor)
                    executor = self._executor(host)
                    with host:
                        executor.rollback(descriptor, target.image_ref, env)
                finally:
                    env.clear()
        except BaseException as exc:
            self._fail(record, exc, executor)
            raise
        return self.ledger.record_outcome(
            record,
            Outcome.ROLLED_BACK,
            digest=target.digest,
            image_ref=target.image_ref,
            step=Step.ROLLBACK.value,
            retries=dict(executor.retries),
        )

    def status(self, service: str) -> ServiceStatus:
        return self.ledger.status(service)
