import io
import logging
import tempfile
import unittest
from pathlib import Path
from typing import Optional

import requests

from dockship.config import VaultConfig
from dockship.descriptor import SecretReference
from dockship.errors import SecretUnavailable
from dockship.secrets import (
    DotenvBackend,
    EnvironmentBackend,
    SecretResolver,
    VaultBackend,
)
from dockship.utils.logging import SecretRedactingFilter


class FakeResponse:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error: Optional[Exception] = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict] = []

    def get(self, url, headers=None, timeout=None, verify=True):
        self.requests.append({"url": url, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


def _vault(session: FakeSession, **overrides) -> VaultBackend:
    config = VaultConfig(address="https://vault.internal:8200/", token="s.token", namespace="ops")
    for key, value in overrides.items():
        setattr(config, key, value)
    return VaultBackend(config, session=session)  # type: ignore[arg-type]


class EnvironmentBackendTests(unittest.TestCase):
    def test_reads_lookup_key(self) -> None:
        backend = EnvironmentBackend({"API_JWT": "abc123"})
        ref = SecretReference(name="JWT_SECRET", key="API_JWT")
        self.assertEqual(backend.fetch(ref), "abc123")

    def test_missing_and_empty_values_are_unavailable(self) -> None:
        backend = EnvironmentBackend({"EMPTY": ""})
        for name in ("EMPTY", "ABSENT"):
            with self.subTest(name=name):
                with self.assertRaises(SecretUnavailable) as ctx:
                    backend.fetch(SecretReference(name=name))
                self.assertEqual(ctx.exception.name, name)
                self.assertEqual(ctx.exception.exit_code, 11)


class DotenvBackendTests(unittest.TestCase):
    def test_reads_named_field_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "prod.env").write_text("JWT=from-file\nOTHER=x\n", encoding="utf-8")
            backend = DotenvBackend(Path(tmp))
            value = backend.fetch(
                SecretReference(name="JWT_SECRET", source="dotenv", key="prod.env", field="JWT")
            )
        self.assertEqual(value, "from-file")

    def test_missing_file_or_key(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "prod.env").write_text("OTHER=x\n", encoding="utf-8")
            backend = DotenvBackend(Path(tmp))
            with self.assertRaises(SecretUnavailable):
                backend.fetch(SecretReference(name="JWT", source="dotenv", key="prod.env"))
            with self.assertRaises(SecretUnavailable):
                backend.fetch(SecretReference(name="JWT", source="dotenv", key="absent.env"))


class VaultBackendTests(unittest.TestCase):
    def test_reads_kv_v2_field(self) -> None:
        session = FakeSession(FakeResponse(200, {"data": {"data": {"jwt": "v2-value"}}}))
        backend = _vault(session)
        value = backend.fetch(
            SecretReference(name="JWT_SECRET", source="vault", key="secret/data/api", field="jwt")
        )
        self.assertEqual(value, "v2-value")
        request = session.requests[0]
        self.assertEqual(request["url"], "https://vault.internal:8200/v1/secret/data/api")
        self.assertEqual(request["headers"]["X-Vault-Token"], "s.token")
        self.assertEqual(request["headers"]["X-Vault-Namespace"], "ops")

    def test_reads_kv_v1_field_defaulting_to_name(self) -> None:
        session = FakeSession(FakeResponse(200, {"data": {"JWT_SECRET": "v1-value"}}))
        value = _vault(session).fetch(
            SecretReference(name="JWT_SECRET", source="vault", key="kv/api")
        )
        self.assertEqual(value, "v1-value")

    def test_failures_become_secret_unavailable(self) -> None:
        ref = SecretReference(name="JWT_SECRET", source="vault", key="secret/data/api")
        sessions = {
            "forbidden": FakeSession(FakeResponse(403)),
            "not found": FakeSession(FakeResponse(404)),
            "server error": FakeSession(FakeResponse(500)),
            "bad json": FakeSession(FakeResponse(200, None)),
            "missing field": FakeSession(FakeResponse(200, {"data": {"data": {}}})),
            "network": FakeSession(error=requests.ConnectionError("refused")),
        }
        for label, session in sessions.items():
            with self.subTest(label):
                with self.assertRaises(SecretUnavailable):
                    _vault(session).fetch(ref)

    def test_unconfigured_vault_makes_no_request(self) -> None:
        session = FakeSession(FakeResponse(200, {"data": {"JWT_SECRET": "x"}}))
        with self.assertRaises(SecretUnavailable):
            _vault(session, token=None).fetch(
                SecretReference(name="JWT_SECRET", source="vault", key="kv/api")
            )
        self.assertEqual(session.requests, [])


class SecretResolverTests(unittest.TestCase):
    def test_resolves_all_references(self) -> None:
        resolver = SecretResolver(
            {"env": EnvironmentBackend({"JWT_SECRET": "jwt-value", "DB": "postgres://x"})}
        )
        refs = [SecretReference(name="JWT_SECRET"), SecretReference(name="DATABASE_URL", key="DB")]
        with resolver.resolve(refs, service="api") as secrets:
            self.assertEqual(dict(secrets), {"JWT_SECRET": "jwt-value", "DATABASE_URL": "postgres://x"})
            self.assertNotIn("jwt-value", repr(secrets))
        self.assertTrue(secrets.scrubbed)
        self.assertEqual(len(secrets), 0)

    def test_miss_names_secret_and_service(self) -> None:
        resolver = SecretResolver({"env": EnvironmentBackend({})})
        with self.assertRaises(SecretUnavailable) as ctx:
            resolver.resolve([SecretReference(name="JWT_SECRET")], service="api")
        self.assertEqual(ctx.exception.name, "JWT_SECRET")
        self.assertEqual(ctx.exception.service, "api")
        self.assertEqual(ctx.exception.step, "resolve_secrets")

    def test_unknown_backend(self) -> None:
        resolver = SecretResolver({"env": EnvironmentBackend({})})
        with self.assertRaises(SecretUnavailable):
            resolver.resolve([SecretReference(name="JWT_SECRET", source="vault", key="kv/x")])

    def test_values_are_masked_in_logs_while_resolved(self) -> None:
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.addFilter(SecretRedactingFilter())
        logger = logging.getLogger("dockship.tests.redaction")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
        resolver = SecretResolver({"env": EnvironmentBackend({"JWT_SECRET": "hunter2-value"})})
        try:
            with resolver.resolve([SecretReference(name="JWT_SECRET")]):
                logger.info("connecting with %s", "hunter2-value")
            logger.info("after %s", "hunter2-value")
        finally:
            logger.removeHandler(handler)
        lines = stream.getvalue().splitlines()
        self.assertEqual(lines[0], "connecting with ***")
        self.assertEqual(lines[1], "after hunter2-value")


if __name__ == "__main__":
    unittest.main()
