import logging
import sys

from newsrelay.utils import configure_logging, log_event


def _stdout_handlers():
    return [
        handler
        for handler in logging.getLogger().handlers
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout
    ]


def test_configure_logging_is_idempotent():
    before = list(logging.getLogger().handlers)
    try:
        configure_logging("newsrelay.test")
        configure_logging("newsrelay.test")
        assert len(_stdout_handlers()) == 1
    finally:
        for handler in logging.getLogger().handlers[:]:
            if handler not in before:
                logging.getLogger().removeHandler(handler)


def test_log_level_overrides(monkeypatch):
    monkeypatch.setenv("NR_LOG_LEVELS", "newsrelay.noisy=ERROR, broken-entry")
    before = list(logging.getLogger().handlers)
    try:
        configure_logging("newsrelay.test")
        assert logging.getLogger("newsrelay.noisy").level == logging.ERROR
    finally:
        logging.getLogger("newsrelay.noisy").setLevel(logging.NOTSET)
        for handler in logging.getLogger().handlers[:]:
            if handler not in before:
                logging.getLogger().removeHandler(handler)


def test_log_event_formats_key_values(caplog):
    logger = logging.getLogger("newsrelay.test")
    with caplog.at_level(logging.INFO, logger="newsrelay.test"):
        log_event(logger, logging.INFO, "job_claimed", job_id=3, worker_id="w-1")
    assert caplog.messages == ["event=job_claimed job_id=3 worker_id=w-1"]
