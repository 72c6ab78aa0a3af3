"""File reservation lifecycle: conflicts, shared leases, renew, release and expiry sweeps."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from agent_mail_core import reservations
from agent_mail_core.config import clear_settings_cache, get_settings
from agent_mail_core.errors import NotFound, NotOwner, ReservationConflict, ValidationError
from agent_mail_core.identity import ensure_project, register_agent
from agent_mail_core.reservations import (
    list_reservations,
    normalize_paths,
    release,
    release_all,
    renew,
    reserve,
    sweep_expired,
)
from agent_mail_core.tasks import reservation_sweep_loop
from agent_mail_core.utils import parse_iso

PROJECT = "/work/backend"


async def _setup(*names: str) -> None:
    await ensure_project(PROJECT)
    for name in names:
        await register_agent(PROJECT, name, program="codex", model="gpt-5")


def _archive_record(slug: str, reservation_id: int) -> dict:
    root = Path(get_settings().storage.root).expanduser().resolve()
    path = root / "projects" / slug / "file_reservations" / f"id-{reservation_id}.json"
    return json.loads(path.read_text(encoding="utf-8"))


def test_normalize_paths_collapses_variants():
    assert normalize_paths(["./src//app.py", "/src/app.py", "src\\app.py", "src/", "  ", "."]) == ["src/app.py", "src"]


@pytest.mark.asyncio
async def test_exclusive_conflict_names_holder_and_creates_nothing(isolated_env):
    await _setup("GreenLake", "BlueLake")
    held = await reserve(PROJECT, "GreenLake", ["src/app.py"], ttl_seconds=600, reason="refactor")
    assert held.conflicts == []
    assert held.reservation.paths == ["src/app.py"]

    with pytest.raises(ReservationConflict) as excinfo:
        await reserve(PROJECT, "BlueLake", ["docs/readme.md", "src"], ttl_seconds=600)
    err = excinfo.value
    assert err.holders == ["GreenLake"]
    assert err.conflicts[0]["reservation_id"] == held.reservation.id
    assert err.conflicts[0]["paths"] == ["src"]
    assert err.error_type == "FILE_RESERVATION_CONFLICT"

    # All-or-nothing: the non-conflicting docs path was not reserved either.
    active = await list_reservations(PROJECT)
    assert [r["agent"] for r in active] == ["GreenLake"]


@pytest.mark.asyncio
async def test_shared_request_is_granted_with_advisory_conflicts(isolated_env):
    await _setup("GreenLake", "BlueLake")
    await reserve(PROJECT, "GreenLake", ["src/*.py"], ttl_seconds=600)
    shared = await reserve(PROJECT, "BlueLake", ["src/app.py"], exclusive=False, ttl_seconds=600)
    assert shared.reservation.exclusive is False
    assert [c["agent"] for c in shared.conflicts] == ["GreenLake"]
    assert shared.to_payload()["durability"] == "durable"
    assert len(await list_reservations(PROJECT)) == 2


@pytest.mark.asyncio
async def test_own_reservations_never_conflict(isolated_env):
    await _setup("GreenLake")
    await reserve(PROJECT, "GreenLake", ["src"], ttl_seconds=600)
    again = await reserve(PROJECT, "GreenLake", ["src/app.py"], ttl_seconds=600)
    assert again.conflicts == []


@pytest.mark.asyncio
async def test_non_overlapping_sibling_is_not_a_conflict(isolated_env):
    await _setup("GreenLake", "BlueLake")
    await reserve(PROJECT, "GreenLake", ["x/y"], ttl_seconds=600)
    granted = await reserve(PROJECT, "BlueLake", ["x/yz"], ttl_seconds=600)
    assert granted.conflicts == []
    with pytest.raises(ReservationConflict):
        await reserve(PROJECT, "BlueLake", ["x/y/z"], ttl_seconds=600)


@pytest.mark.asyncio
async def test_intersecting_globs_conflict(isolated_env):
    await _setup("GreenLake", "BlueLake")
    await reserve(PROJECT, "GreenLake", ["src/*.py"], ttl_seconds=600)
    with pytest.raises(ReservationConflict) as excinfo:
        await reserve(PROJECT, "BlueLake", ["src/test_*"], ttl_seconds=600)
    assert excinfo.value.holders == ["GreenLake"]
    granted = await reserve(PROJECT, "BlueLake", ["src/*.md"], ttl_seconds=600)
    assert granted.conflicts == []


@pytest.mark.asyncio
async def test_release_is_idempotent(isolated_env):
    await _setup("GreenLake", "BlueLake")
    held = await reserve(PROJECT, "GreenLake", ["src/app.py"], ttl_seconds=600)
    rid = held.reservation.id

    first = await release(PROJECT, "GreenLake", rid)
    assert first.changed is True
    assert first.reservation.status == "released"
    released_ts = first.reservation.released_ts

    second = await release(PROJECT, "GreenLake", rid)
    assert second.changed is False
    assert second.reservation.status == "released"
    assert second.reservation.released_ts == released_ts

    # The path is free again.
    await reserve(PROJECT, "BlueLake", ["src/app.py"], ttl_seconds=600)


@pytest.mark.asyncio
async def test_lapsed_reservation_is_ignored_before_any_sweep(isolated_env, monkeypatch):
    await _setup("GreenLake", "BlueLake")

    async def _no_sweep(project_key=None):
        return 0

    monkeypatch.setattr(reservations, "sweep_expired", _no_sweep)
    lapsed = await reserve(PROJECT, "GreenLake", ["src/app.py"], ttl_seconds=0)
    granted = await reserve(PROJECT, "BlueLake", ["src/app.py"], ttl_seconds=600)
    assert granted.conflicts == []
    rows = await list_reservations(PROJECT, active_only=False)
    by_id = {r["id"]: r for r in rows}
    # Never swept, so the row is still marked active.
    assert by_id[lapsed.reservation.id]["status"] == "active"
    assert [r["agent"] for r in await list_reservations(PROJECT)] == ["BlueLake"]


@pytest.mark.asyncio
async def test_sweep_marks_lapsed_reservations_expired(isolated_env):
    await _setup("GreenLake")
    live = await reserve(PROJECT, "GreenLake", ["b.py"], ttl_seconds=600)
    # reserve() sweeps before inserting, so the lapsed lease must come last.
    lapsed = await reserve(PROJECT, "GreenLake", ["a.py"], ttl_seconds=0)

    assert await sweep_expired() == 1
    assert await sweep_expired() == 0

    rows = {r["id"]: r for r in await list_reservations(PROJECT, active_only=False)}
    assert rows[lapsed.reservation.id]["status"] == "expired"
    assert rows[lapsed.reservation.id]["released_ts"] is not None
    assert rows[live.reservation.id]["status"] == "active"
    record = _archive_record(lapsed.project.slug, lapsed.reservation.id)
    assert record["status"] == "expired"


@pytest.mark.asyncio
async def test_renew_extends_from_current_expiry(isolated_env):
    await _setup("GreenLake", "BlueLake")
    held = await reserve(PROJECT, "GreenLake", ["src/app.py"], ttl_seconds=600)
    before = held.reservation.expires_ts
    renewed = await renew(PROJECT, "GreenLake", held.reservation.id, ttl_seconds=300)
    assert (renewed.reservation.expires_ts - before).total_seconds() >= 300

    with pytest.raises(NotOwner):
        await renew(PROJECT, "BlueLake", held.reservation.id, ttl_seconds=300)
    with pytest.raises(NotFound):
        await renew(PROJECT, "GreenLake", 9999, ttl_seconds=300)

    await release(PROJECT, "GreenLake", held.reservation.id)
    with pytest.raises(ValidationError):
        await renew(PROJECT, "GreenLake", held.reservation.id, ttl_seconds=300)


@pytest.mark.asyncio
async def test_release_by_non_owner_is_rejected(isolated_env):
    await _setup("GreenLake", "BlueLake")
    held = await reserve(PROJECT, "GreenLake", ["src/app.py"], ttl_seconds=600)
    with pytest.raises(NotOwner):
        await release(PROJECT, "BlueLake", held.reservation.id)


@pytest.mark.asyncio
async def test_release_all_filters_by_paths(isolated_env):
    await _setup("GreenLake")
    await reserve(PROJECT, "GreenLake", ["src/app.py"], ttl_seconds=600)
    await reserve(PROJECT, "GreenLake", ["docs"], ttl_seconds=600)

    released = await release_all(PROJECT, "GreenLake", paths=["docs/guide.md"])
    assert [r.reservation.paths for r in released] == [["docs"]]
    remaining = await list_reservations(PROJECT, agent_name="GreenLake")
    assert [r["paths"] for r in remaining] == [["src/app.py"]]

    assert len(await release_all(PROJECT, "GreenLake")) == 1
    assert await release_all(PROJECT, "GreenLake") == []


@pytest.mark.asyncio
async def test_reserve_validates_input(isolated_env):
    await _setup("GreenLake")
    with pytest.raises(ValidationError):
        await reserve(PROJECT, "GreenLake", ["  ", "./"], ttl_seconds=60)
    with pytest.raises(ValidationError):
        await reserve(PROJECT, "GreenLake", ["src"], ttl_seconds=-1)
    with pytest.raises(NotFound):
        await reserve(PROJECT, "RedStone", ["src"], ttl_seconds=60)


@pytest.mark.asyncio
async def test_default_ttl_and_archive_record(isolated_env):
    await _setup("GreenLake")
    held = await reserve(PROJECT, "GreenLake", ["src/app.py"])
    ttl = (held.reservation.expires_ts - held.reservation.created_ts).total_seconds()
    assert ttl == get_settings().file_reservation_default_ttl_seconds
    record = _archive_record(held.project.slug, held.reservation.id)
    assert record["agent"] == "GreenLake"
    assert record["paths"] == ["src/app.py"]
    assert parse_iso(record["expires_ts"]) is not None


@pytest.mark.asyncio
async def test_concurrent_exclusive_requests_grant_one(isolated_env):
    await _setup("GreenLake", "BlueLake", "RedStone")
    outcomes = await asyncio.gather(
        *(reserve(PROJECT, name, ["src/app.py"], ttl_seconds=600) for name in ("GreenLake", "BlueLake", "RedStone")),
        return_exceptions=True,
    )
    granted = [o for o in outcomes if not isinstance(o, BaseException)]
    rejected = [o for o in outcomes if isinstance(o, ReservationConflict)]
    assert len(granted) == 1
    assert len(rejected) == 2


@pytest.mark.asyncio
async def test_sweep_loop_expires_and_stops(isolated_env):
    await _setup("GreenLake")
    await reserve(PROJECT, "GreenLake", ["a.py"], ttl_seconds=0)
    stop = asyncio.Event()
    task = asyncio.create_task(reservation_sweep_loop(interval_seconds=0.05, stop_event=stop))
    await asyncio.sleep(0.3)
    stop.set()
    total = await asyncio.wait_for(task, timeout=5)
    assert total == 1
    assert await list_reservations(PROJECT) == []


@pytest.mark.asyncio
async def test_sweep_loop_returns_at_once_when_cleanup_disabled(isolated_env, monkeypatch):
    monkeypatch.setenv("FILE_RESERVATIONS_CLEANUP_ENABLED", "false")
    clear_settings_cache()
    await _setup("GreenLake")
    lapsed = await reserve(PROJECT, "GreenLake", ["a.py"], ttl_seconds=0)
    stop = asyncio.Event()
    total = await asyncio.wait_for(reservation_sweep_loop(interval_seconds=0.05, stop_event=stop), timeout=5)
    assert total == 0
    rows = await list_reservations(PROJECT, active_only=False)
    assert [(r["id"], r["status"]) for r in rows] == [(lapsed.reservation.id, "active")]


@pytest.mark.asyncio
async def test_renew_of_lapsed_reservation_is_rejected(isolated_env):
    await _setup("GreenLake")
    lapsed = await reserve(PROJECT, "GreenLake", ["a.py"], ttl_seconds=0)
    with pytest.raises(ValidationError):
        await renew(PROJECT, "GreenLake", lapsed.reservation.id, ttl_seconds=60)
    released = await release(PROJECT, "GreenLake", lapsed.reservation.id)
    assert released.changed is False
