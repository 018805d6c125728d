"""Unit tests for logging infrastructure."""
import pytest
import logging
from pathlib import Path
from vhoster.infrastructure.logging import setup_logging


@pytest.fixture(autouse=True)
def reset_root_logger():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


def test_setup_logging_creates_log_file(tmp_path):
    """Test that setup_logging creates log file."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()

    logger = setup_logging(log_dir, debug=False)

    assert isinstance(logger, logging.Logger)
    assert (log_dir / "vhoster.log").exists()


def test_setup_logging_debug_mode(tmp_path):
    logger = setup_logging(tmp_path, debug=True)
    assert logger.getEffectiveLevel() == logging.DEBUG


def test_setup_logging_normal_mode(tmp_path):
    logger = setup_logging(tmp_path, debug=False)
    assert logger.getEffectiveLevel() == logging.INFO


def test_setup_logging_creates_log_dir(tmp_path):
    """Test that setup_logging creates the directory if missing."""
    log_dir = tmp_path / "missing"

    setup_logging(log_dir, debug=False)

    assert log_dir.is_dir()


def test_setup_logging_custom_path(tmp_path):
    custom = tmp_path / "elsewhere" / "server.log"

    setup_logging(tmp_path / "logs", log_path=custom)
    logging.getLogger("vhoster.test").info("custom path message")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert custom.exists()
    assert "custom path message" in custom.read_text()
    assert not (tmp_path / "logs" / "vhoster.log").exists()


def test_setup_logging_writes_to_file(tmp_path):
    """Test that logger actually writes to file."""
    setup_logging(tmp_path, debug=False)
    logging.getLogger("vhoster.pipeline.orchestrator").info("UPLOAD_STORED: abc")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = (tmp_path / "vhoster.log").read_text()
    assert "UPLOAD_STORED: abc" in content
    assert "Logging initialized" in content
