"""Two-phase archive mirroring with a typed durability result.

The index transaction is the durability boundary. Everything here runs after
it has committed: archive failures are retried, then reported as DEGRADED
instead of propagating to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from git.exc import GitError

from .config import Settings
from .errors import ArchiveWriteDegraded, LockTimeout
from .storage import GitIndexLockError, ProjectLock, acquire_commit_lock, acquire_project_lock, commit, ensure_archive

_logger = logging.getLogger(__name__)

ArchiveWriter = Callable[[ProjectLock], Awaitable[Any]]

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (LockTimeout, GitIndexLockError, GitError, OSError, ValueError)


class Durability(str, Enum):
    DURABLE = "durable"
    DEGRADED = "degraded"


@dataclass(slots=True)
class MirrorResult:
    durability: Durability
    commit_sha: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.durability is Durability.DEGRADED

    def raise_for_degraded(self) -> None:
        """Raise ``ArchiveWriteDegraded`` for callers that need strict archive durability."""
        if self.degraded:
            raise ArchiveWriteDegraded(
                f"Archive mirror failed after {self.attempts} attempt(s): {self.error}",
                data={"attempts": self.attempts, "error": self.error},
            )

    def to_payload(self) -> dict[str, Any]:
        return {
            "durability": self.durability.value,
            "commit_sha": self.commit_sha,
            "attempts": self.attempts,
            "error": self.error,
        }


async def _mirror_once(settings: Settings, slug: str, writer: ArchiveWriter, commit_message: str) -> Optional[str]:
    archive = await ensure_archive(settings, slug)
    async with acquire_project_lock(archive) as project_lock:
        await writer(project_lock)
        async with acquire_commit_lock(project_lock) as commit_lock:
            return await commit(project_lock, commit_lock, commit_message)


async def mirror_to_archive(
    settings: Settings,
    slug: str,
    writer: ArchiveWriter,
    commit_message: str,
    *,
    attempts: Optional[int] = None,
    label: str = "mirror",
) -> MirrorResult:
    """Write documents under the project lock and commit them under the commit lock.

    ``writer`` receives the held ``ProjectLock`` and must be idempotent: a
    retried attempt re-runs it from scratch. Never raises for archive failures.
    """
    max_attempts = max(1, attempts if attempts is not None else settings.storage.write_attempts)
    base_delay = max(settings.storage.write_backoff_seconds, 0.0)
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            sha = await _mirror_once(settings, slug, writer, commit_message)
            if attempt > 1:
                _logger.info(
                    "archive.mirror_recovered",
                    extra={"project": slug, "label": label, "attempts": attempt},
                )
            return MirrorResult(durability=Durability.DURABLE, commit_sha=sha, attempts=attempt)
        except _RETRYABLE_ERRORS as exc:
            last_error = exc
            if attempt >= max_attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            jitter = delay * 0.25 * (2 * random.random() - 1)
            _logger.warning(
                "archive.mirror_retry",
                extra={
                    "project": slug,
                    "label": label,
                    "attempt": attempt,
                    "error": str(exc)[:200],
                },
            )
            await asyncio.sleep(max(0.0, delay + jitter))

    error_text = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown error"
    _logger.error(
        "archive.mirror_degraded",
        extra={"project": slug, "label": label, "attempts": max_attempts, "error": error_text[:500]},
    )
    return MirrorResult(durability=Durability.DEGRADED, attempts=max_attempts, error=error_text)
