"""Tests for structlog configuration."""

from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
import structlog

from royalnet_matrix.logging import PACKAGE_LOGGER, configure_logging, get_logger


@pytest.fixture(autouse=True)
def _restore_logging() -> Generator[None]:
    """Restore root logger and structlog state after each test."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    package = logging.getLogger(PACKAGE_LOGGER)
    package_level = package.level
    yield
    root.handlers = original_handlers
    root.setLevel(original_level)
    package.setLevel(package_level)
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_verbose_enables_debug(self) -> None:
        configure_logging(verbose=True)
        assert logging.getLogger(PACKAGE_LOGGER).level == logging.DEBUG
        assert logging.getLogger().level == logging.WARNING

    def test_default_is_info(self) -> None:
        configure_logging()
        assert logging.getLogger(PACKAGE_LOGGER).level == logging.INFO

    def test_json_mode_output(self, capfd: pytest.CaptureFixture[str]) -> None:
        configure_logging(verbose=True, log_json=True)
        get_logger("royalnet_matrix.test").warning("command.failed", room_id="!r")
        parsed = json.loads(capfd.readouterr().err.strip())
        assert parsed["event"] == "command.failed"
        assert parsed["room_id"] == "!r"
        assert parsed["level"] == "warning"
        assert parsed["logger"] == "royalnet_matrix.test"
        assert "timestamp" in parsed

    def test_json_keeps_non_ascii(self, capfd: pytest.CaptureFixture[str]) -> None:
        configure_logging(log_json=True)
        get_logger("royalnet_matrix.test").info("reply", text="⚠️ Comando sconosciuto.")
        assert "⚠️ Comando sconosciuto." in capfd.readouterr().err

    def test_debug_suppressed_when_not_verbose(
        self, capfd: pytest.CaptureFixture[str]
    ) -> None:
        configure_logging(log_json=True)
        get_logger("royalnet_matrix.test").debug("command.error")
        assert capfd.readouterr().err == ""

    def test_nio_debug_is_suppressed(self, capfd: pytest.CaptureFixture[str]) -> None:
        configure_logging(verbose=True, log_json=True)
        logging.getLogger("nio.client").debug("sync noise")
        assert capfd.readouterr().err == ""

    def test_idempotent_calls(self) -> None:
        """Multiple configure_logging calls don't stack handlers."""
        configure_logging(log_json=False)
        configure_logging(log_json=True)
        assert len(logging.getLogger().handlers) == 1
