import threading
import unittest

from dockship.config import AppConfig
from dockship.errors import (
    ConfigError,
    DeploymentCancelled,
    DeploymentInProgress,
    HealthCheckTimeout,
    RollbackUnavailable,
    SecretUnavailable,
)
from dockship.orchestrator import DeploymentOrchestrator
from dockship.secrets import EnvironmentBackend, SecretResolver
from dockship.state import InMemoryLedger, Outcome

from fakes import FakeDockerHost, digest_of, make_descriptor, no_wait_retry


class BlockingDockerHost(FakeDockerHost):
    """Holds `docker pull` until released."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def run(self, command, *, env=None, timeout=None):
        if command.startswith("docker pull "):
            self.entered.set()
            self.release.wait(5)
        return super().run(command, env=env, timeout=timeout)


class OrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = InMemoryLedger()
        self.host = FakeDockerHost()
        self.hosts_created = []
        self.environ = {"JWT_SECRET": "jwt-s3cr3t-value"}

    def _orchestrator(self, host=None, cancel_event=None) -> DeploymentOrchestrator:
        target = host or self.host

        def host_factory(descriptor):
            self.hosts_created.append(descriptor.service)
            return target

        return DeploymentOrchestrator(
            AppConfig(),
            self.ledger,
            SecretResolver({"env": EnvironmentBackend(self.environ)}),
            host_factory=host_factory,
            retry_factory=no_wait_retry,
            cancel_event=cancel_event,
        )

    def _pinned(self, tag: str) -> str:
        return f"app@{digest_of(tag)}"

    def test_successful_deploy_is_recorded(self) -> None:
        descriptor = make_descriptor(secrets=["JWT_SECRET"], environment={"PORT": "8080"})
        record = self._orchestrator().deploy(descriptor)

        self.assertEqual(record.outcome, Outcome.SUCCESS)
        self.assertEqual(record.digest, digest_of("v1"))
        self.assertEqual(record.image_ref, self._pinned("v1"))
        self.assertEqual(record.step, "health_check")
        self.assertEqual(self.ledger.current("app"), record)
        self.assertEqual(self.ledger.get_last_success("app"), record)

        command, env = next(c for c in self.host.calls if " docker run " in c[0])
        self.assertEqual(env, {"PORT": "8080", "JWT_SECRET": "jwt-s3cr3t-value"})
        self.assertNotIn("jwt-s3cr3t-value", command)

    def test_failed_health_check_rolls_back_to_previous_image(self) -> None:
        orchestrator = self._orchestrator()
        v1 = orchestrator.deploy(make_descriptor(image="app:v1"))
        self.host.unhealthy_tags.add("v2")

        with self.assertRaises(HealthCheckTimeout) as ctx:
            orchestrator.deploy(make_descriptor(image="app:v2"))

        self.assertEqual(ctx.exception.service, "app")
        self.assertEqual(ctx.exception.step, "health_check")
        self.assertTrue(ctx.exception.hint.startswith("rolled back to app:v1"))
        # v2 was started once and v1 recreated exactly once afterwards
        self.assertEqual(
            self.host.recreated, [self._pinned("v1"), self._pinned("v2"), self._pinned("v1")]
        )
        self.assertEqual(self.host.running, self._pinned("v1"))

        rollback_row, failed_row, first = self.ledger.history("app")
        self.assertEqual(first, v1)
        self.assertEqual(failed_row.outcome, Outcome.FAILED)
        self.assertEqual(failed_row.image, "app:v2")
        self.assertEqual(failed_row.digest, digest_of("v2"))
        self.assertEqual(failed_row.step, "health_check")
        self.assertEqual(rollback_row.outcome, Outcome.ROLLED_BACK)
        self.assertEqual(rollback_row.image, "app:v1")
        self.assertEqual(rollback_row.image_ref, self._pinned("v1"))
        self.assertEqual(rollback_row.rollback_of, failed_row.deploy_id)
        self.assertIsNotNone(rollback_row.finished_at)
        self.assertEqual(self.ledger.running("app"), rollback_row)
        self.assertFalse(self.ledger.status("app").in_progress)

    def test_failing_rollback_is_recorded_as_failed(self) -> None:
        orchestrator = self._orchestrator()
        orchestrator.deploy(make_descriptor(image="app:v1"))
        self.host.unhealthy_tags.update({"v1", "v2"})

        with self.assertRaises(HealthCheckTimeout) as ctx:
            orchestrator.deploy(make_descriptor(image="app:v2"))

        self.assertIn("automatic rollback failed", ctx.exception.hint)
        rollback_row, failed_row, _ = self.ledger.history("app")
        self.assertEqual(failed_row.outcome, Outcome.FAILED)
        self.assertEqual(rollback_row.outcome, Outcome.FAILED)
        self.assertEqual(rollback_row.step, "rollback")
        self.assertEqual(len(self.host.recreated), 3)

    def test_no_rollback_without_earlier_success(self) -> None:
        self.host.unhealthy_tags.add("v1")
        with self.assertRaises(HealthCheckTimeout) as ctx:
            self._orchestrator().deploy(make_descriptor(image="app:v1"))
        self.assertIn("no earlier successful deploy", ctx.exception.hint)
        self.assertEqual(len(self.host.recreated), 1)
        self.assertEqual([r.outcome for r in self.ledger.history("app")], [Outcome.FAILED])

    def test_rollback_can_be_disabled(self) -> None:
        orchestrator = self._orchestrator()
        orchestrator.deploy(make_descriptor(image="app:v1"))
        self.host.unhealthy_tags.add("v2")
        with self.assertRaises(HealthCheckTimeout) as ctx:
            orchestrator.deploy(make_descriptor(image="app:v2", rollback=False))
        self.assertIn("automatic rollback is disabled", ctx.exception.hint)
        self.assertEqual(len(self.host.recreated), 2)
        self.assertEqual(self.ledger.current("app").outcome, Outcome.FAILED)

    def test_missing_secret_fails_before_contacting_host(self) -> None:
        self.environ.clear()
        descriptor = make_descriptor(secrets=["JWT_SECRET"])

        with self.assertRaises(SecretUnavailable) as ctx:
            self._orchestrator().deploy(descriptor)

        self.assertEqual(ctx.exception.name, "JWT_SECRET")
        self.assertEqual(ctx.exception.service, "app")
        self.assertEqual(self.hosts_created, [])
        self.assertEqual(self.host.calls, [])
        current = self.ledger.current("app")
        self.assertEqual(current.outcome, Outcome.FAILED)
        self.assertEqual(current.step, "resolve_secrets")

    def test_missing_ssh_credentials_fail_at_connect(self) -> None:
        orchestrator = DeploymentOrchestrator(
            AppConfig(),
            self.ledger,
            SecretResolver({"env": EnvironmentBackend(self.environ)}),
            retry_factory=no_wait_retry,
        )
        with self.assertRaises(ConfigError) as ctx:
            orchestrator.deploy(make_descriptor())
        self.assertEqual(ctx.exception.step, "connect")
        current = self.ledger.current("app")
        self.assertEqual(current.outcome, Outcome.FAILED)
        self.assertEqual(current.step, "connect")

    def test_flaky_migration_succeeds_with_one_retry(self) -> None:
        self.host.exec_failures["./manage.py migrate"] = 1
        descriptor = make_descriptor(post_deploy=["./manage.py migrate"])

        record = self._orchestrator().deploy(descriptor)

        self.assertEqual(record.outcome, Outcome.SUCCESS)
        self.assertEqual(record.retry_count, 1)
        self.assertEqual(record.retries, {"post_deploy": 1})
        self.assertEqual(len(self.host.recreated), 1)

    def test_refuses_second_deploy_while_one_is_in_progress(self) -> None:
        host = BlockingDockerHost()
        orchestrator = self._orchestrator(host)
        results = []
        worker = threading.Thread(
            target=lambda: results.append(orchestrator.deploy(make_descriptor(image="app:v1")))
        )
        worker.start()
        try:
            self.assertTrue(host.entered.wait(5))
            with self.assertRaises(DeploymentInProgress):
                orchestrator.deploy(make_descriptor(image="app:v2"))
        finally:
            host.release.set()
            worker.join(5)

        self.assertEqual(results[0].outcome, Outcome.SUCCESS)
        self.assertEqual(len(self.ledger.attempts("app")), 1)
        self.assertEqual(host.recreated, [self._pinned("v1")])

    def test_force_abandons_stale_attempt(self) -> None:
        stale = self.ledger.record_start("app", "app:v0")
        with self.assertRaises(DeploymentInProgress):
            self._orchestrator().deploy(make_descriptor())
        self.assertEqual(self.hosts_created, [])

        record = self._orchestrator().deploy(make_descriptor(), force=True)
        outcomes = {r.deploy_id: r.outcome for r in self.ledger.attempts("app")}
        self.assertEqual(outcomes[stale.deploy_id], Outcome.ABANDONED)
        self.assertEqual(outcomes[record.deploy_id], Outcome.SUCCESS)

    def test_cancel_during_health_polling(self) -> None:
        cancel = threading.Event()
        orchestrator = self._orchestrator(cancel_event=cancel)
        orchestrator.deploy(make_descriptor(image="app:v1"))
        self.host.unhealthy_tags.add("v2")
        self.host.on_probe = cancel.set

        with self.assertRaises(DeploymentCancelled) as ctx:
            orchestrator.deploy(make_descriptor(image="app:v2"))

        self.assertEqual(ctx.exception.exit_code, 130)
        current = self.ledger.current("app")
        self.assertEqual(current.outcome, Outcome.CANCELLED)
        self.assertEqual(current.step, "health_check")
        # the recreate that was already sent completed; nothing ran after it
        self.assertEqual(self.host.running, self._pinned("v2"))
        self.assertEqual(len(self.host.recreated), 2)

    def test_manual_rollback(self) -> None:
        orchestrator = self._orchestrator()
        orchestrator.deploy(make_descriptor(image="app:v1"))
        v2 = orchestrator.deploy(make_descriptor(image="app:v2"))

        record = orchestrator.rollback("app", descriptor=make_descriptor(image="app:v2"))

        self.assertEqual(record.outcome, Outcome.ROLLED_BACK)
        self.assertEqual(record.image, "app:v1")
        self.assertEqual(record.image_ref, self._pinned("v1"))
        self.assertEqual(record.previous_digest, v2.digest)
        self.assertEqual(record.rollback_of, v2.deploy_id)
        self.assertEqual(self.host.running, self._pinned("v1"))
        self.assertEqual(orchestrator.status("app").current, record)

    def test_repeated_rollback_keeps_walking_back(self) -> None:
        orchestrator = self._orchestrator()
        for tag in ("v0", "v1", "v2"):
            orchestrator.deploy(make_descriptor(image=f"app:{tag}"))

        first = orchestrator.rollback("app", descriptor=make_descriptor(image="app:v2"))
        second = orchestrator.rollback("app", descriptor=make_descriptor(image="app:v2"))

        self.assertEqual(first.image, "app:v1")
        self.assertEqual(second.image, "app:v0")
        self.assertEqual(second.previous_digest, digest_of("v1"))
        self.assertEqual(self.host.running, self._pinned("v0"))
        with self.assertRaises(RollbackUnavailable):
            orchestrator.rollback("app", descriptor=make_descriptor(image="app:v2"))

    def test_manual_rollback_errors(self) -> None:
        orchestrator = self._orchestrator()
        with self.assertRaises(RollbackUnavailable):
            orchestrator.rollback("app", descriptor=make_descriptor())

        orchestrator.deploy(make_descriptor(image="app:v1"))
        with self.assertRaises(RollbackUnavailable):
            orchestrator.rollback("app", descriptor=make_descriptor())

        orchestrator.deploy(make_descriptor(image="app:v2"))
        with self.assertRaises(ConfigError):
            orchestrator.rollback("app", descriptor=make_descriptor(service="other"))
        with self.assertRaises(RollbackUnavailable) as ctx:
            orchestrator.rollback("app")
        self.assertEqual(ctx.exception.hint, "pass --descriptor")


if __name__ == "__main__":
    unittest.main()
