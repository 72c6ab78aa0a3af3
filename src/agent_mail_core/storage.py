"""Git-backed document archive with per-project and commit-level locking.

Locking discipline:
- Per-project archive lock (``projects/<slug>/.archive.lock``) serializes every
  document write for that project.
- A single commit lock (``<root>/.commit.lock``) serializes the stage + commit
  step across projects, because the git index supports one writer at a time.
- Acquisition order is always project lock, then commit lock; release happens
  in reverse. ``acquire_commit_lock`` takes the project handle to enforce this.

Both locks are ``SoftFileLock`` files with ``.owner.json`` metadata (pid,
created_ts). A lock whose owner is dead or whose age exceeds the configured
staleness threshold is reclaimed with a warning. A process-level
``asyncio.Lock`` per (loop, path) serializes coroutines inside one process and
rejects re-entrant acquisition.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import random
import re
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence

import psutil
from filelock import SoftFileLock, Timeout
from git import Actor, Repo

from .config import Settings
from .errors import LockTimeout
from .utils import validate_thread_id_format

_logger = logging.getLogger(__name__)
_SUBJECT_SLUG_RE = re.compile(r"[^a-zA-Z0-9._-]+")

_GITATTRIBUTES = "*.json text\n*.md text\n"
_GITIGNORE = "*.lock\n*.lock.owner.json\n"


@dataclass(slots=True)
class ProjectArchive:
    settings: Settings
    slug: str
    # Project-specific root inside the single global archive repo
    root: Path
    # The single Git repo object rooted at settings.storage.root
    repo: Repo
    # Advisory file lock guarding archive writes for this project
    lock_path: Path
    # Working directory of the archive repo
    repo_root: Path

    @property
    def commit_lock_path(self) -> Path:
        return self.repo_root / ".commit.lock"


@dataclass(slots=True, eq=False)
class ProjectLock:
    """Handle proving the caller holds a project's archive lock.

    Documents written through the handle are tracked as pending until
    ``commit`` stages them.
    """

    archive: ProjectArchive
    path: Path
    acquired_at: float
    pending: list[str] = field(default_factory=list)
    held: bool = True


@dataclass(slots=True, eq=False)
class CommitLock:
    project_lock: ProjectLock
    path: Path
    acquired_at: float
    held: bool = True


_PROCESS_LOCKS: dict[tuple[int, str], asyncio.Lock] = {}
_PROCESS_LOCK_OWNERS: dict[tuple[int, str], int] = {}

_REPO_CACHE: dict[str, Repo] = {}
_REPO_CACHE_LOCK: asyncio.Lock | None = None


def _get_repo_cache_lock() -> asyncio.Lock:
    global _REPO_CACHE_LOCK
    if _REPO_CACHE_LOCK is None:
        _REPO_CACHE_LOCK = asyncio.Lock()
    return _REPO_CACHE_LOCK


def clear_repo_cache() -> int:
    """Close all cached Repo objects and clear the cache.

    Returns the number of repos that were closed. Call during shutdown or
    between tests.
    """
    global _REPO_CACHE_LOCK
    count = 0
    for repo in _REPO_CACHE.values():
        with contextlib.suppress(Exception):
            repo.close()
            count += 1
    _REPO_CACHE.clear()
    # The asyncio.Lock is bound to the loop that first awaited it.
    _REPO_CACHE_LOCK = None
    return count


async def _to_thread(func: Any, /, *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(func, *args, **kwargs)


class AsyncFileLock:
    """Async-friendly wrapper around SoftFileLock with metadata tracking and adaptive retries.

    The first attempt uses a short timeout (10% of the total) so uncontested
    locks are cheap. Every failed attempt checks for a stale owner and reclaims
    the lock when found; later attempts back off with jitter until the deadline.
    Raises ``TimeoutError`` when the deadline passes.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout_seconds: float = 60.0,
        stale_timeout_seconds: float = 180.0,
        max_retries: int = 5,
    ) -> None:
        self._path = Path(path)
        self._lock = SoftFileLock(str(self._path), thread_local=False)
        self._timeout = float(timeout_seconds) if timeout_seconds > 0 else 60.0
        self._stale_timeout = float(max(stale_timeout_seconds, 0.0))
        self._max_retries = max_retries
        self._pid = os.getpid()
        self._metadata_path = self._path.parent / f"{self._path.name}.owner.json"
        self._held = False
        self._lock_key = str(self._path.resolve())
        self._loop_key: tuple[int, str] | None = None
        self._process_lock: asyncio.Lock | None = None
        self._process_lock_held = False

    @property
    def path(self) -> Path:
        return self._path

    async def __aenter__(self) -> "AsyncFileLock":
        start = time.monotonic()
        loop = asyncio.get_running_loop()
        self._loop_key = (id(loop), self._lock_key)
        process_lock = _PROCESS_LOCKS.get(self._loop_key)
        if process_lock is None:
            process_lock = asyncio.Lock()
            _PROCESS_LOCKS[self._loop_key] = process_lock
        current_task = asyncio.current_task()
        current_task_id = id(current_task) if current_task else id(self)
        if _PROCESS_LOCK_OWNERS.get(self._loop_key) == current_task_id:
            raise RuntimeError(f"Re-entrant AsyncFileLock acquisition detected for {self._path}")
        self._process_lock = process_lock
        try:
            await asyncio.wait_for(process_lock.acquire(), timeout=self._timeout)
        except TimeoutError:
            self._process_lock = None
            raise TimeoutError(
                f"Timed out waiting for in-process holder of {self._path} after {self._timeout:.2f}s"
            ) from None
        self._process_lock_held = True
        _PROCESS_LOCK_OWNERS[self._loop_key] = current_task_id
        try:
            await _to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)
            for attempt in range(self._max_retries + 1):
                remaining = self._timeout - (time.monotonic() - start)
                if attempt == 0:
                    per_attempt_timeout = min(self._timeout * 0.1, 5.0)
                elif attempt == self._max_retries:
                    per_attempt_timeout = remaining
                else:
                    per_attempt_timeout = min(0.5 * (2**attempt), remaining)
                try:
                    await _to_thread(self._lock.acquire, max(per_attempt_timeout, 0.01))
                    self._held = True
                    await _to_thread(self._write_metadata)
                    if attempt > 0:
                        _logger.info(
                            "archive.lock.acquired_after_retry",
                            extra={
                                "path": str(self._path),
                                "attempts": attempt + 1,
                                "elapsed_seconds": round(time.monotonic() - start, 2),
                            },
                        )
                    return self
                except Timeout:
                    elapsed = time.monotonic() - start
                    cleaned = await _to_thread(self._cleanup_if_stale)
                    if cleaned:
                        # Reclaimed: retry immediately with whatever time is left.
                        continue
                    if elapsed >= self._timeout or attempt >= self._max_retries:
                        raise TimeoutError(
                            f"Timed out acquiring lock {self._path} after {elapsed:.2f}s "
                            f"({attempt + 1} attempts). No stale owner detected."
                        ) from None
                    backoff = min(0.05 * (2**attempt), 0.5)
                    jitter = backoff * 0.25 * (2 * random.random() - 1)
                    await asyncio.sleep(backoff + jitter)
            raise TimeoutError(f"Timed out acquiring lock {self._path}")
        except BaseException:
            if self._held:
                await _shielded(_to_thread(self._release_files))
                self._held = False
            self._release_process_lock()
            raise

    def _read_metadata(self) -> dict[str, Any]:
        if not self._metadata_path.exists():
            return {}
        try:
            payload = json.loads(self._metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return payload if isinstance(payload, dict) else {}

    def _cleanup_if_stale(self) -> bool:
        """Remove the lock and its metadata when the holder is presumed dead.

        Stale means the recorded owner pid no longer exists, or the lock is
        older than the staleness threshold (``created_ts`` from the metadata,
        else the lock file's mtime). A threshold of 0 disables the age check.
        """
        if not self._path.exists():
            return False
        metadata = self._read_metadata()
        pid_int: int | None = None
        with contextlib.suppress(TypeError, ValueError):
            pid_int = int(metadata["pid"]) if "pid" in metadata else None
        owner_alive = self._pid_alive(pid_int) if pid_int else None
        age: float | None = None
        created_ts = metadata.get("created_ts")
        if isinstance(created_ts, (int, float)):
            age = time.time() - float(created_ts)
        else:
            with contextlib.suppress(OSError):
                age = time.time() - self._path.stat().st_mtime

        is_stale = owner_alive is False or (
            self._stale_timeout > 0 and age is not None and age >= self._stale_timeout
        )
        if not is_stale:
            return False
        _logger.warning(
            "archive.lock.stale_reclaimed",
            extra={
                "path": str(self._path),
                "owner_pid": pid_int,
                "owner_alive": owner_alive,
                "age_seconds": round(age, 2) if age is not None else None,
                "stale_threshold_seconds": self._stale_timeout,
            },
        )
        with contextlib.suppress(OSError):
            self._path.unlink(missing_ok=True)
        with contextlib.suppress(OSError):
            self._metadata_path.unlink(missing_ok=True)
        return True

    def _write_metadata(self) -> None:
        payload = {
            "pid": self._pid,
            "created_ts": time.time(),
        }
        self._metadata_path.write_text(json.dumps(payload), encoding="utf-8")

    def _release_files(self) -> None:
        with contextlib.suppress(OSError):
            self._lock.release(force=True)
        self._metadata_path.unlink(missing_ok=True)
        self._path.unlink(missing_ok=True)

    def _release_process_lock(self) -> None:
        if self._loop_key is not None:
            _PROCESS_LOCK_OWNERS.pop(self._loop_key, None)
        if self._process_lock_held and self._process_lock:
            self._process_lock.release()
            self._process_lock_held = False
        if self._loop_key is not None and self._process_lock and not self._process_lock.locked():
            _PROCESS_LOCKS.pop(self._loop_key, None)
        self._process_lock = None
        self._loop_key = None

    async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: object) -> None:
        if self._held:
            # Release must survive cancellation, or the lock file outlives us.
            await _shielded(_to_thread(self._release_files))
            if sys.platform == "win32":
                await asyncio.sleep(0.01)
            self._held = False
        self._release_process_lock()

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        if pid <= 0:
            return False
        return bool(psutil.pid_exists(pid))


async def _shielded(coro: Any) -> Any:
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except BaseException:
        with contextlib.suppress(Exception):
            await task
        raise


@asynccontextmanager
async def _scoped_file_lock(path: Path, settings: Settings, timeout_seconds: float | None) -> AsyncIterator[AsyncFileLock]:
    timeout = settings.storage.lock_timeout_seconds if timeout_seconds is None else float(timeout_seconds)
    lock = AsyncFileLock(path, timeout_seconds=timeout, stale_timeout_seconds=settings.storage.stale_lock_seconds)
    try:
        await lock.__aenter__()
    except TimeoutError as exc:
        _logger.warning("archive.lock.timeout", extra={"path": str(path), "timeout_seconds": timeout})
        raise LockTimeout(str(exc), lock_path=str(path), timeout_seconds=timeout) from exc
    try:
        yield lock
    finally:
        await _shielded(lock.__aexit__(None, None, None))


@asynccontextmanager
async def acquire_project_lock(archive: ProjectArchive, *, timeout_seconds: float | None = None) -> AsyncIterator[ProjectLock]:
    """Hold the project's archive lock for the duration of the block.

    Raises ``LockTimeout`` if neither acquisition nor stale-lock reclamation
    succeeds before the deadline.
    """
    async with _scoped_file_lock(archive.lock_path, archive.settings, timeout_seconds):
        handle = ProjectLock(archive=archive, path=archive.lock_path, acquired_at=time.monotonic())
        try:
            yield handle
        finally:
            handle.held = False
            if handle.pending:
                _logger.warning(
                    "archive.uncommitted_writes",
                    extra={"project": archive.slug, "paths": list(handle.pending)},
                )


@asynccontextmanager
async def acquire_commit_lock(project_lock: ProjectLock, *, timeout_seconds: float | None = None) -> AsyncIterator[CommitLock]:
    """Hold the archive-wide commit lock; requires the project lock to be held already."""
    if not project_lock.held:
        raise RuntimeError("acquire_commit_lock requires a held project lock")
    archive = project_lock.archive
    async with _scoped_file_lock(archive.commit_lock_path, archive.settings, timeout_seconds):
        handle = CommitLock(project_lock=project_lock, path=archive.commit_lock_path, acquired_at=time.monotonic())
        try:
            yield handle
        finally:
            handle.held = False


async def ensure_archive_root(settings: Settings) -> tuple[Path, Repo]:
    repo_root = Path(settings.storage.root).expanduser().resolve()
    await _to_thread(repo_root.mkdir, parents=True, exist_ok=True)
    repo = await _ensure_repo(repo_root, settings)
    return repo_root, repo


async def ensure_archive(settings: Settings, slug: str) -> ProjectArchive:
    repo_root, repo = await ensure_archive_root(settings)
    project_root = repo_root / "projects" / slug
    await _to_thread(project_root.mkdir, parents=True, exist_ok=True)
    return ProjectArchive(
        settings=settings,
        slug=slug,
        root=project_root,
        repo=repo,
        lock_path=project_root / ".archive.lock",
        repo_root=repo_root,
    )


async def _ensure_repo(root: Path, settings: Settings) -> Repo:
    """Get or create the archive Repo, initializing it with an attributes/ignore commit."""
    cache_key = str(root.resolve())
    cached = _REPO_CACHE.get(cache_key)
    if cached is not None:
        return cached

    async with _get_repo_cache_lock():
        cached = _REPO_CACHE.get(cache_key)
        if cached is not None:
            return cached
        if (root / ".git").exists():
            repo = Repo(str(root))
            _REPO_CACHE[cache_key] = repo
            return repo

        repo = await _to_thread(Repo.init, str(root))

        def _configure_repo() -> None:
            with repo.config_writer() as cw:
                cw.set_value("commit", "gpgsign", "false")

        await _to_thread(_configure_repo)
        await _write_text(root / ".gitattributes", _GITATTRIBUTES)
        await _write_text(root / ".gitignore", _GITIGNORE)
        async with _scoped_file_lock(root / ".commit.lock", settings, None):
            await _commit_paths(repo, settings, "chore: initialize archive", [".gitattributes", ".gitignore"])
        _REPO_CACHE[cache_key] = repo
        return repo


def _resolve_in_project(archive: ProjectArchive, rel_path: str) -> Path:
    candidate = (archive.root / rel_path).resolve()
    root = archive.root.resolve()
    if candidate != root and root not in candidate.parents:
        raise ValueError(f"Archive path escapes project root: {rel_path!r}")
    return candidate


def _require_held(project_lock: ProjectLock) -> None:
    if not project_lock.held:
        raise RuntimeError(f"Project lock for {project_lock.archive.slug!r} is not held")


async def write_document(project_lock: ProjectLock, rel_path: str, content: str) -> str:
    """Write ``content`` at ``rel_path`` under the project root and mark it pending.

    Returns the repo-relative path that ``commit`` will stage.
    """
    _require_held(project_lock)
    archive = project_lock.archive
    target = _resolve_in_project(archive, rel_path)
    await _write_text(target, content)
    repo_rel = target.relative_to(archive.repo_root.resolve()).as_posix()
    if repo_rel not in project_lock.pending:
        project_lock.pending.append(repo_rel)
    return repo_rel


async def read_document(project_lock: ProjectLock, rel_path: str) -> Optional[str]:
    _require_held(project_lock)
    target = _resolve_in_project(project_lock.archive, rel_path)
    if not target.exists():
        return None
    return await _to_thread(target.read_text, encoding="utf-8")


async def commit(project_lock: ProjectLock, commit_lock: CommitLock, message: str) -> Optional[str]:
    """Stage and commit every pending write of the project.

    Returns the new commit sha, or None when nothing changed.
    """
    _require_held(project_lock)
    if not commit_lock.held or commit_lock.project_lock is not project_lock:
        raise RuntimeError("commit requires the commit lock acquired under this project lock")
    paths = list(project_lock.pending)
    if not paths:
        return None
    archive = project_lock.archive
    sha = await _commit_paths(archive.repo, archive.settings, message, paths)
    project_lock.pending.clear()
    return sha


def _is_git_index_lock_error(exc: BaseException) -> bool:
    """True for ``.git/index.lock`` contention (FileExistsError or a wrapping OSError)."""
    if isinstance(exc, FileExistsError):
        return True
    if isinstance(exc, OSError):
        err_str = str(exc).lower()
        if "index.lock" in err_str or "lock at" in err_str:
            return True
        cause = exc.__cause__
        if cause is not None and _is_git_index_lock_error(cause):
            return True
    return False


def _try_clean_stale_git_lock(repo_root: Path, max_age_seconds: float = 300.0) -> bool:
    """Remove ``.git/index.lock`` if it is older than ``max_age_seconds``."""
    lock_path = repo_root / ".git" / "index.lock"
    if not lock_path.exists():
        return False
    try:
        age = time.time() - lock_path.stat().st_mtime
    except OSError:
        return False
    if age <= max_age_seconds:
        return False
    lock_path.unlink(missing_ok=True)
    _logger.warning("archive.git_index_lock_removed", extra={"path": str(lock_path), "age_seconds": round(age, 2)})
    return True


class GitIndexLockError(Exception):
    """Raised when git index.lock contention cannot be resolved after retries."""

    def __init__(self, message: str, lock_path: Path, attempts: int):
        super().__init__(message)
        self.lock_path = lock_path
        self.attempts = attempts


async def _commit_paths(repo: Repo, settings: Settings, message: str, rel_paths: Sequence[str]) -> Optional[str]:
    """Add ``rel_paths`` to the index and commit; caller holds the commit lock."""
    working_tree = repo.working_tree_dir
    if working_tree is None:
        raise ValueError("Repository has no working tree directory")
    repo_root = Path(working_tree).resolve()
    actor = Actor(settings.storage.git_author_name, settings.storage.git_author_email)

    def _perform_commit() -> Optional[str]:
        index = repo.index
        index.add(list(rel_paths))
        if repo.head.is_valid() and not repo.is_dirty(index=True, working_tree=False, untracked_files=False):
            return None
        final_message = message if message.endswith("\n") else f"{message}\n"
        return index.commit(final_message, author=actor, committer=actor).hexsha

    max_index_lock_retries = 5
    for attempt in range(1, max_index_lock_retries + 2):
        try:
            return await _to_thread(_perform_commit)
        except OSError as exc:
            if not _is_git_index_lock_error(exc):
                raise
            if attempt > max_index_lock_retries:
                if _try_clean_stale_git_lock(repo_root, max_age_seconds=60.0):
                    continue
                lock_path = repo_root / ".git" / "index.lock"
                raise GitIndexLockError(
                    f"Git index.lock contention after {attempt} attempts. "
                    f"If this persists, remove: {lock_path}",
                    lock_path=lock_path,
                    attempts=attempt,
                ) from exc
            await asyncio.sleep(0.1 * (2 ** (attempt - 1)))
            _try_clean_stale_git_lock(repo_root, max_age_seconds=300.0)
    raise RuntimeError("git commit failed after recovery attempts")


async def _write_text(path: Path, content: str) -> None:
    await _to_thread(path.parent.mkdir, parents=True, exist_ok=True)
    await _to_thread(path.write_text, content, encoding="utf-8")


def _json_document(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def _message_timestamp(message: dict[str, Any]) -> datetime:
    raw = message.get("created_ts")
    if isinstance(raw, datetime):
        moment = raw
    elif isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            moment = datetime.now(timezone.utc)
    else:
        moment = datetime.now(timezone.utc)
    if moment.tzinfo is None or moment.tzinfo.utcoffset(moment) is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def message_filename(message: dict[str, Any]) -> str:
    """Descriptive, ISO-prefixed filename: ``<ISO>__<subject-slug>__<id>.md``."""
    moment = _message_timestamp(message)
    created_iso = moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")
    subject_value = str(message.get("subject", "")).strip() or "message"
    subject_slug = _SUBJECT_SLUG_RE.sub("-", subject_value).strip("-_").lower()[:80] or "message"
    return f"{created_iso}__{subject_slug}__{message['id']}.md"


async def write_message_bundle(
    project_lock: ProjectLock,
    message: dict[str, Any],
    body_md: str,
    sender: str,
    recipients: Sequence[str],
    visible_recipients: Optional[Sequence[str]] = None,
) -> list[str]:
    """Write the canonical message, one inbox copy per recipient and the sender's outbox copy.

    Threaded messages also get an entry appended to ``messages/threads/<thread>.md``, listing
    ``visible_recipients`` (all recipients when omitted) so blind copies stay out of the digest.
    """
    moment = _message_timestamp(message)
    y_dir = moment.strftime("%Y")
    m_dir = moment.strftime("%m")
    filename = message_filename(message)

    frontmatter = json.dumps(message, indent=2, sort_keys=True, default=str)
    content = f"---json\n{frontmatter}\n---\n\n{body_md.strip()}\n"

    canonical_rel = f"messages/{y_dir}/{m_dir}/{filename}"
    written = [await write_document(project_lock, canonical_rel, content)]
    written.append(await write_document(project_lock, f"agents/{sender}/outbox/{y_dir}/{m_dir}/{filename}", content))
    for name in dict.fromkeys(recipients):
        written.append(await write_document(project_lock, f"agents/{name}/inbox/{y_dir}/{m_dir}/{filename}", content))

    thread_id = message.get("thread_id")
    if isinstance(thread_id, str) and thread_id.strip():
        written.append(
            await _append_thread_digest(
                project_lock,
                thread_id.strip(),
                message,
                body_md,
                sender,
                recipients if visible_recipients is None else visible_recipients,
                canonical_rel,
            )
        )
    return written


async def _append_thread_digest(
    project_lock: ProjectLock,
    thread_id: str,
    message: dict[str, Any],
    body_md: str,
    sender: str,
    recipients: Sequence[str],
    canonical_rel: str,
) -> str:
    """Append a compact entry to the thread digest; re-appending the same message is a no-op."""
    if not validate_thread_id_format(thread_id):
        raise ValueError(f"Invalid thread_id for archive digest: {thread_id!r}")
    rel_path = f"messages/threads/{thread_id}.md"
    existing = await read_document(project_lock, rel_path) or f"# Thread {thread_id}\n\n"
    marker = f"<!-- message:{message['id']} -->"
    if marker in existing:
        return await write_document(project_lock, rel_path, existing)
    preview = body_md.strip()
    if len(preview) > 1200:
        preview = preview[:1200].rstrip() + "\n..."
    subject = str(message.get("subject", "")).strip()
    entry = (
        f"{marker}\n"
        + (f"### {subject}\n\n" if subject else "")
        + f"## {message.get('created_ts', '')}  {sender}  {', '.join(recipients)}\n\n"
        + f"[View canonical](../{canonical_rel.split('/', 1)[1]})\n\n"
        + preview
        + "\n\n---\n\n"
    )
    return await write_document(project_lock, rel_path, existing + entry)


async def write_reservation_records(project_lock: ProjectLock, records: Sequence[dict[str, Any]]) -> list[str]:
    """Write one ``file_reservations/id-<id>.json`` document per reservation."""
    written: list[str] = []
    for record in records:
        reservation_id = record.get("id")
        if reservation_id is None:
            raise ValueError("File reservation record must include 'id'.")
        written.append(await write_document(project_lock, f"file_reservations/id-{reservation_id}.json", _json_document(record)))
    return written


async def write_agent_profile(project_lock: ProjectLock, agent: dict[str, Any]) -> str:
    return await write_document(project_lock, f"agents/{agent['name']}/profile.json", _json_document(agent))


async def write_receipt(project_lock: ProjectLock, agent_name: str, message_id: int, receipt: dict[str, Any]) -> str:
    return await write_document(project_lock, f"agents/{agent_name}/receipts/{message_id}.json", _json_document(receipt))
