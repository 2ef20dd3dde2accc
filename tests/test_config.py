import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from dockship.config import AppConfig, load_config
from dockship.errors import ConfigError


class ConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _write(self, text: str) -> str:
        path = self.root / "config.json"
        path.write_text(text.strip(), encoding="utf-8")
        return str(path)

    def test_loads_default_config(self) -> None:
        config = load_config()
        self.assertIsInstance(config, AppConfig)
        self.assertEqual(config.executor.max_attempts, 3)
        self.assertEqual(config.health.interval, 5.0)

    def test_loads_custom_config(self) -> None:
        path = self._write(
            """
{
  "executor": {"max_attempts": 5, "docker_binary": "sudo -n docker"},
  "health": {"timeout": 300, "_comment": "slow boot"}
}
"""
        )
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(path)
        self.assertEqual(config.executor.max_attempts, 5)
        self.assertEqual(config.executor.docker_binary, "sudo -n docker")
        self.assertEqual(config.executor.backoff_seconds, 2.0)
        self.assertEqual(config.health.timeout, 300)
        self.assertEqual(config.health.interval, 5.0)

    def test_env_vars_override_file(self) -> None:
        path = self._write('{"ssh": {"default_username": "ops"}}')
        env = {
            "DOCKSHIP_SSH_USERNAME": "deploy",
            "DOCKSHIP_SSH_KEY_PATH": "/keys/deploy",
            "VAULT_ADDR": "https://vault.internal:8200",
            "VAULT_TOKEN": "s.abc",
            "DOCKSHIP_LEDGER_PATH": "/var/lib/dockship/ledger.jsonl",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config(path)
        self.assertEqual(config.ssh.default_username, "deploy")
        self.assertEqual(config.ssh.default_key_path, "/keys/deploy")
        self.assertEqual(config.ssh.default_auth_method, "key")
        self.assertEqual(config.vault.address, "https://vault.internal:8200")
        self.assertEqual(config.vault.token, "s.abc")
        self.assertEqual(config.state.ledger_path, "/var/lib/dockship/ledger.jsonl")

    def test_invalid_configs(self) -> None:
        with self.assertRaises(ConfigError):
            load_config(str(self.root / "absent.json"))
        with self.assertRaises(ConfigError):
            load_config(self._write('{"executor": {"retries": 3}}'))
        with self.assertRaises(ConfigError):
            load_config(self._write("{oops"))
        with mock.patch.dict(os.environ, {"DOCKSHIP_SSH_PORT": "twenty-two"}, clear=True):
            with self.assertRaises(ConfigError):
                load_config(self._write("{}"))


if __name__ == "__main__":
    unittest.main()
