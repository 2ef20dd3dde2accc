import logging
import unittest

from dockship.utils.logging import (
    SecretRedactingFilter,
    configure_logging,
    register_secrets,
    unregister_secrets,
)


class RedactionTests(unittest.TestCase):
    def _record(self, msg: str, *args) -> logging.LogRecord:
        return logging.LogRecord("dockship.test", logging.INFO, __file__, 1, msg, args, None)

    def test_masks_registered_values(self) -> None:
        register_secrets(["postgres://u:pw@db/app", "pw", "tok-123456"])
        try:
            record = self._record("url=%s token=%s", "postgres://u:pw@db/app", "tok-123456")
            SecretRedactingFilter().filter(record)
            self.assertEqual(record.getMessage(), "url=*** token=***")
            # values shorter than three characters are left alone
            short = self._record("pw is short")
            SecretRedactingFilter().filter(short)
            self.assertEqual(short.getMessage(), "pw is short")
        finally:
            unregister_secrets(["postgres://u:pw@db/app", "pw", "tok-123456"])

        record = self._record("token=%s", "tok-123456")
        SecretRedactingFilter().filter(record)
        self.assertEqual(record.getMessage(), "token=tok-123456")

    def test_configure_installs_filter_on_root_handlers(self) -> None:
        configure_logging()
        root = logging.getLogger()
        for handler in root.handlers:
            self.assertTrue(any(isinstance(f, SecretRedactingFilter) for f in handler.filters))
        self.assertEqual(logging.getLogger("paramiko").level, logging.WARNING)


if __name__ == "__main__":
    unittest.main()
