"""Archive store locking: scoped handles, stale reclamation, timeouts and cross-project commits."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time

import pytest

from agent_mail_core.config import get_settings
from agent_mail_core.errors import LockTimeout
from agent_mail_core.storage import (
    AsyncFileLock,
    acquire_commit_lock,
    acquire_project_lock,
    commit,
    ensure_archive,
    write_document,
)


def _owner_path(lock_path):
    return lock_path.parent / f"{lock_path.name}.owner.json"


async def _write_and_commit(slug: str, idx: int) -> str | None:
    archive = await ensure_archive(get_settings(), slug)
    async with acquire_project_lock(archive) as project_lock:
        await write_document(project_lock, f"notes/{idx}.md", f"note {idx}\n")
        async with acquire_commit_lock(project_lock) as commit_lock:
            return await commit(project_lock, commit_lock, f"note {idx}")


@pytest.mark.asyncio
async def test_commit_returns_sha_then_none_when_unchanged(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    async with acquire_project_lock(archive) as project_lock:
        rel = await write_document(project_lock, "docs/a.md", "hello\n")
        assert rel == "projects/proj/docs/a.md"
        async with acquire_commit_lock(project_lock) as commit_lock:
            sha = await commit(project_lock, commit_lock, "add a")
            assert sha is not None
            assert project_lock.pending == []
            assert await commit(project_lock, commit_lock, "nothing pending") is None
            await write_document(project_lock, "docs/a.md", "hello\n")
            assert await commit(project_lock, commit_lock, "same content") is None
    assert archive.repo.head.commit.hexsha == sha
    assert archive.repo.head.commit.message.startswith("add a")


@pytest.mark.asyncio
async def test_initial_commit_carries_gitattributes(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    tree = archive.repo.head.commit.tree
    assert ".gitattributes" in [item.path for item in tree.blobs]
    assert (archive.repo_root / ".gitattributes").read_text(encoding="utf-8") == "*.json text\n*.md text\n"


@pytest.mark.asyncio
async def test_write_document_rejects_escape(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    async with acquire_project_lock(archive) as project_lock:
        with pytest.raises(ValueError):
            await write_document(project_lock, "../other/evil.md", "x")


@pytest.mark.asyncio
async def test_released_handle_cannot_write_or_take_commit_lock(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    async with acquire_project_lock(archive) as project_lock:
        pass
    assert project_lock.held is False
    with pytest.raises(RuntimeError):
        await write_document(project_lock, "a.md", "x")
    with pytest.raises(RuntimeError):
        async with acquire_commit_lock(project_lock):
            pass


@pytest.mark.asyncio
async def test_stale_lock_by_age_is_reclaimed(isolated_env, caplog):
    caplog.set_level(logging.WARNING, logger="agent_mail_core.storage")
    archive = await ensure_archive(get_settings(), "proj")
    archive.lock_path.write_text("", encoding="utf-8")
    _owner_path(archive.lock_path).write_text(
        json.dumps({"pid": os.getpid(), "created_ts": time.time() - 3600}), encoding="utf-8"
    )
    start = time.monotonic()
    async with acquire_project_lock(archive, timeout_seconds=5) as project_lock:
        assert project_lock.held
    assert time.monotonic() - start < 5
    assert not archive.lock_path.exists()
    assert any(record.getMessage() == "archive.lock.stale_reclaimed" for record in caplog.records)


@pytest.mark.asyncio
async def test_lock_of_dead_owner_is_reclaimed(isolated_env, monkeypatch):
    archive = await ensure_archive(get_settings(), "proj")
    archive.lock_path.write_text("", encoding="utf-8")
    _owner_path(archive.lock_path).write_text(json.dumps({"pid": 999_999, "created_ts": time.time()}), encoding="utf-8")
    monkeypatch.setattr(AsyncFileLock, "_pid_alive", staticmethod(lambda pid: False))
    async with acquire_project_lock(archive, timeout_seconds=5) as project_lock:
        assert project_lock.held


@pytest.mark.asyncio
async def test_live_foreign_lock_times_out(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    archive.lock_path.write_text("", encoding="utf-8")
    _owner_path(archive.lock_path).write_text(json.dumps({"pid": os.getpid(), "created_ts": time.time()}), encoding="utf-8")
    with pytest.raises(LockTimeout) as excinfo:
        async with acquire_project_lock(archive, timeout_seconds=0.5):
            pass
    assert excinfo.value.error_type == "ARCHIVE_LOCK_TIMEOUT"
    assert excinfo.value.data["lock_path"] == str(archive.lock_path)
    # The foreign lock is not ours to remove.
    assert archive.lock_path.exists()


@pytest.mark.asyncio
async def test_in_process_holder_blocks_then_times_out(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    held = asyncio.Event()
    release = asyncio.Event()

    async def holder() -> None:
        async with acquire_project_lock(archive):
            held.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await held.wait()
    with pytest.raises(LockTimeout):
        async with acquire_project_lock(archive, timeout_seconds=0.2):
            pass
    release.set()
    await task
    async with acquire_project_lock(archive, timeout_seconds=1) as project_lock:
        assert project_lock.held


@pytest.mark.asyncio
async def test_reentrant_acquire_is_rejected(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    async with acquire_project_lock(archive):
        with pytest.raises(RuntimeError):
            async with acquire_project_lock(archive, timeout_seconds=0.2):
                pass


@pytest.mark.asyncio
async def test_cancelled_holder_releases_lock(isolated_env):
    archive = await ensure_archive(get_settings(), "proj")
    held = asyncio.Event()

    async def holder() -> None:
        async with acquire_project_lock(archive):
            held.set()
            await asyncio.sleep(60)

    task = asyncio.create_task(holder())
    await held.wait()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    assert not archive.lock_path.exists()
    async with acquire_project_lock(archive, timeout_seconds=1) as project_lock:
        assert project_lock.held


@pytest.mark.asyncio
async def test_concurrent_commits_on_two_projects_do_not_deadlock(isolated_env):
    jobs = [_write_and_commit("alpha" if i % 2 else "beta", i) for i in range(8)]
    shas = await asyncio.wait_for(asyncio.gather(*jobs), timeout=60)
    assert all(isinstance(sha, str) for sha in shas)
    archive = await ensure_archive(get_settings(), "alpha")
    # One initial commit plus one per write.
    assert len(list(archive.repo.iter_commits())) == 9
    for i in range(8):
        slug = "alpha" if i % 2 else "beta"
        assert (archive.repo_root / "projects" / slug / "notes" / f"{i}.md").read_text(encoding="utf-8") == f"note {i}\n"
