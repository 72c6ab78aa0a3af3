"""Optional background helpers. Nothing here starts on its own; the host process owns scheduling."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings
from .logging_config import print_panel
from .reservations import sweep_expired


async def reservation_sweep_loop(
    *,
    interval_seconds: Optional[float] = None,
    stop_event: asyncio.Event,
) -> int:
    """Expire lapsed file reservations every ``interval_seconds`` until ``stop_event`` is set.

    Returns the total number of reservations expired over the loop's lifetime.
    """
    settings = get_settings()
    log = structlog.get_logger("tasks")
    if not settings.file_reservations_cleanup_enabled:
        log.info("file_reservations_cleanup_disabled")
        return 0
    interval = float(interval_seconds if interval_seconds is not None else settings.file_reservations_cleanup_interval_seconds)
    total = 0
    while not stop_event.is_set():
        try:
            expired = await sweep_expired()
        except (SQLAlchemyError, OSError) as exc:
            log.warning("file_reservations_cleanup_failed", error=str(exc)[:200])
        else:
            total += expired
            if expired:
                log.info("file_reservations_cleanup", expired=expired, total=total)
                print_panel(f"expired={expired} total={total}", title="File Reservations Cleanup")
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=max(interval, 0.01))
    return total
