import logging
import os
import sys

from feedsentry.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("FS_LOG_LEVEL", "INFO")
    monkeypatch.setenv("FS_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("feedsentry.worker")
        configure_logging("feedsentry.worker")

        stdout_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stdout_handlers) == 1
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_log_level_overrides(monkeypatch):
    monkeypatch.setenv("FS_LOG_LEVELS", "feedsentry.fetch=debug, bogus")
    logger = logging.getLogger("feedsentry.fetch")
    original = logger.level
    try:
        configure_logging("feedsentry")
        assert logger.level == logging.DEBUG
    finally:
        logger.setLevel(original)


def test_log_event_formats_fields(caplog):
    logger = logging.getLogger("feedsentry.test")
    with caplog.at_level(logging.INFO, logger="feedsentry.test"):
        log_event(logger, logging.INFO, "run_finished", feed_id="acme", indexed=3)
    assert "event=run_finished feed_id=acme indexed=3" in caplog.text
