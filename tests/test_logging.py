from __future__ import annotations

import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from mcphost.logging_utils import DEBUG_ENV, create_session_logger


class LoggingTests(unittest.TestCase):
    def tearDown(self) -> None:
        logger = logging.getLogger("mcphost")
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        logger.propagate = True

    def test_create_session_logger_creates_timestamped_file(self) -> None:
        with tempfile.TemporaryDirectory(prefix="mcphost-logs-") as temp_dir:
            logger, log_path = create_session_logger(log_dir=temp_dir, debug=False)
            logger.info("supervisor started servers=2")

            path = Path(log_path)
            self.assertTrue(path.exists())
            self.assertRegex(path.name, r"^session_\d{8}_\d{6}\.log$")

            content = path.read_text(encoding="utf-8")
            self.assertIn("supervisor started servers=2", content)

    def test_module_loggers_write_debug_to_the_session_file(self) -> None:
        with tempfile.TemporaryDirectory(prefix="mcphost-logs-") as temp_dir:
            _logger, log_path = create_session_logger(log_dir=temp_dir, debug=False)
            logging.getLogger("mcphost.client").debug("echo: send method=tools/list id=2")

            content = Path(log_path).read_text(encoding="utf-8")
            self.assertIn("mcphost.client: echo: send method=tools/list id=2", content)

    def test_debug_flag_adds_console_handler(self) -> None:
        with tempfile.TemporaryDirectory(prefix="mcphost-logs-") as temp_dir:
            with mock.patch.dict(os.environ, {DEBUG_ENV: ""}):
                quiet, _ = create_session_logger(log_dir=temp_dir, debug=False)
                self.assertEqual(len(quiet.handlers), 1)

                loud, _ = create_session_logger(log_dir=temp_dir, debug=True)
                self.assertEqual(len(loud.handlers), 2)

            with mock.patch.dict(os.environ, {DEBUG_ENV: "1"}):
                from_env, _ = create_session_logger(log_dir=temp_dir, debug=False)
                self.assertEqual(len(from_env.handlers), 2)


if __name__ == "__main__":
    unittest.main()
