"""structlog and stdlib logging setup, plus the shared rich console."""

from __future__ import annotations

import logging

import structlog
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from .config import Settings, get_settings

console = Console(stderr=True, soft_wrap=True)

_LOGGING_CONFIGURED = False


def configure_logging(settings: Settings | None = None) -> None:
    """Initialize structlog and stdlib logging formatting. Idempotent."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    resolved = settings or get_settings()
    level = getattr(logging, resolved.log_level.upper(), logging.INFO)
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if resolved.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "project", "agent"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    if resolved.log_rich_enabled:
        handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
        logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=[handler])
    else:
        logging.basicConfig(level=level)

    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    logging.getLogger("git.util").setLevel(logging.INFO)
    logging.getLogger("git.cmd").setLevel(logging.INFO)
    logging.getLogger("filelock").setLevel(logging.INFO)
    _LOGGING_CONFIGURED = True


def reset_logging_state() -> None:
    """Test helper: allow ``configure_logging`` to run again."""
    global _LOGGING_CONFIGURED
    _LOGGING_CONFIGURED = False
    structlog.reset_defaults()


def print_panel(body: str, *, title: str, border_style: str = "cyan") -> None:
    """Render a compact summary panel when the rich console is enabled."""
    if not get_settings().log_rich_enabled:
        return
    console.print(Panel.fit(body, title=title, border_style=border_style))
