"""Logging setup is idempotent and the summary panel respects the rich toggle."""

from __future__ import annotations

import structlog

from agent_mail_core import logging_config
from agent_mail_core.config import get_settings


def test_configure_logging_is_idempotent(isolated_env, monkeypatch):
    calls = []
    monkeypatch.setattr(structlog, "configure", lambda **kwargs: calls.append(kwargs))
    logging_config.reset_logging_state()
    try:
        logging_config.configure_logging(get_settings())
        logging_config.configure_logging(get_settings())
        assert len(calls) == 1
        assert calls[0]["cache_logger_on_first_use"] is True
    finally:
        logging_config.reset_logging_state()


def test_print_panel_is_silent_without_rich(isolated_env, monkeypatch):
    printed = []
    monkeypatch.setattr(logging_config.console, "print", lambda *args, **kwargs: printed.append(args))
    logging_config.print_panel("expired=1", title="File Reservations Cleanup")
    assert printed == []

    monkeypatch.setenv("LOG_RICH_ENABLED", "true")
    from agent_mail_core.config import clear_settings_cache

    clear_settings_cache()
    logging_config.print_panel("expired=1", title="File Reservations Cleanup")
    assert len(printed) == 1
