"""Advisory file reservations (leases) over path patterns.

A reservation holds an ordered set of normalized patterns for a TTL. Exclusive
requests that overlap another agent's live exclusive reservation are rejected
as a whole; shared requests are always granted and only report the overlap.
Expiry is evaluated lazily by timestamp, so a lapsed lease stops conflicting
before any sweep has run.
"""

from __future__ import annotations

import asyncio
import fnmatch
import functools
import logging
import re
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence

from pathspec import GitIgnoreSpec
from sqlmodel import select

from .config import get_settings
from .db import ensure_schema, get_session, retry_on_db_lock
from .errors import NotFound, NotOwner, ReservationConflict, ValidationError
from .identity import get_agent, get_project
from .mirror import Durability, MirrorResult, mirror_to_archive
from .models import Agent, FileReservation, Project
from .storage import ProjectLock, write_reservation_records
from .utils import iso, naive_utc

_logger = logging.getLogger(__name__)

_GLOB_MARKERS = ("*", "?", "[")
_MULTI_SLASH_RE = re.compile(r"/{2,}")

# Serializes the check-then-insert of reserve() per project within one process.
_RESERVE_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[int, asyncio.Lock]]" = weakref.WeakKeyDictionary()


def _reserve_lock(project_id: int) -> asyncio.Lock:
    per_loop = _RESERVE_LOCKS.setdefault(asyncio.get_running_loop(), {})
    lock = per_loop.get(project_id)
    if lock is None:
        lock = asyncio.Lock()
        per_loop[project_id] = lock
    return lock


def normalize_path(pattern: str) -> str:
    value = pattern.strip().replace("\\", "/")
    value = _MULTI_SLASH_RE.sub("/", value)
    while True:
        if value.startswith("./"):
            value = value[2:]
        elif value.startswith("/"):
            value = value[1:]
        else:
            break
    value = value.rstrip("/")
    return "" if value == "." else value


def normalize_paths(paths: Iterable[str]) -> list[str]:
    """Normalize patterns, dropping empties and duplicates while keeping order."""
    normalized: list[str] = []
    for raw in paths:
        value = normalize_path(str(raw))
        if value and value not in normalized:
            normalized.append(value)
    return normalized


def _contains_glob(pattern: str) -> bool:
    return any(marker in pattern for marker in _GLOB_MARKERS)


@functools.lru_cache(maxsize=1024)
def _compile_pathspec(pattern: str) -> GitIgnoreSpec:
    return GitIgnoreSpec.from_lines([pattern])


def _literal_ends(component: str) -> tuple[str, str]:
    first = min(component.index(m) for m in _GLOB_MARKERS if m in component)
    last = max((component.rindex(m) for m in ("*", "?", "]") if m in component), default=first)
    return component[:first], component[last + 1 :]


def _globs_compatible(a: str, b: str) -> bool:
    """Two glob components may share a match unless their literal prefixes or suffixes disagree."""
    prefix_a, suffix_a = _literal_ends(a)
    prefix_b, suffix_b = _literal_ends(b)
    prefixes_agree = prefix_a.startswith(prefix_b) or prefix_b.startswith(prefix_a)
    suffixes_agree = suffix_a.endswith(suffix_b) or suffix_b.endswith(suffix_a)
    return prefixes_agree and suffixes_agree


def _components_overlap(a: Sequence[str], b: Sequence[str]) -> bool:
    if not a or not b:
        # One side is a directory prefix of the other.
        return True
    head_a, head_b = a[0], b[0]
    if head_a == "**" or head_b == "**":
        return True
    if (
        head_a == head_b
        or fnmatch.fnmatchcase(head_a, head_b)
        or fnmatch.fnmatchcase(head_b, head_a)
        or (_contains_glob(head_a) and _contains_glob(head_b) and _globs_compatible(head_a, head_b))
    ):
        return _components_overlap(a[1:], b[1:])
    return False


def paths_overlap(a: str, b: str) -> bool:
    """Return True when some file could fall under both patterns.

    Literal paths overlap when one is a component-wise prefix of the other
    (``x/y`` covers ``x/y/z`` but not ``x/yz``). Glob components match with
    fnmatch in either direction. Two glob components overlap unless their
    literal prefixes or suffixes rule out a common name (``*.py`` and
    ``test_*`` both cover ``test_a.py``). Globs are also cross-matched with
    gitignore semantics.
    """
    a_norm = normalize_path(a)
    b_norm = normalize_path(b)
    if not a_norm or not b_norm:
        return False
    if _components_overlap(a_norm.split("/"), b_norm.split("/")):
        return True
    if _contains_glob(a_norm) or _contains_glob(b_norm):
        return _compile_pathspec(a_norm).match_file(b_norm) or _compile_pathspec(b_norm).match_file(a_norm)
    return False


def _overlapping(candidate: Sequence[str], held: Sequence[str]) -> list[str]:
    return [path for path in candidate if any(paths_overlap(path, other) for other in held)]


def _is_live(reservation: FileReservation, now: datetime) -> bool:
    return reservation.status == "active" and reservation.expires_ts > now


def reservation_to_dict(project: Project, reservation: FileReservation, agent_name: str) -> dict[str, Any]:
    return {
        "id": reservation.id,
        "project": project.human_key,
        "agent": agent_name,
        "paths": list(reservation.paths),
        "exclusive": reservation.exclusive,
        "reason": reservation.reason,
        "status": reservation.status,
        "created_ts": iso(reservation.created_ts),
        "expires_ts": iso(reservation.expires_ts),
        "released_ts": iso(reservation.released_ts),
    }


@dataclass(slots=True)
class ReservationResult:
    project: Project
    reservation: FileReservation
    agent_name: str
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    changed: bool = True
    mirror: Optional[MirrorResult] = None

    @property
    def durability(self) -> Durability:
        return self.mirror.durability if self.mirror is not None else Durability.DURABLE

    @property
    def degraded(self) -> bool:
        return self.durability is Durability.DEGRADED

    def to_payload(self) -> dict[str, Any]:
        return {
            "reservation": reservation_to_dict(self.project, self.reservation, self.agent_name),
            "conflicts": self.conflicts,
            "changed": self.changed,
            "durability": self.durability.value,
        }


async def _mirror_records(project: Project, records: Sequence[dict[str, Any]], commit_message: str) -> MirrorResult:
    async def _writer(project_lock: ProjectLock) -> None:
        await write_reservation_records(project_lock, records)

    return await mirror_to_archive(
        get_settings(),
        project.slug,
        _writer,
        commit_message,
        label="file_reservation",
    )


def _resolve_ttl(ttl_seconds: Optional[int]) -> int:
    ttl = get_settings().file_reservation_default_ttl_seconds if ttl_seconds is None else ttl_seconds
    if ttl < 0:
        raise ValidationError(f"ttl_seconds must be >= 0 (got {ttl}).", data={"parameter": "ttl_seconds", "provided": ttl})
    return int(ttl)


@retry_on_db_lock()
async def _insert_reservation(
    project: Project,
    agent: Agent,
    paths: list[str],
    *,
    exclusive: bool,
    ttl: int,
    reason: str,
) -> tuple[FileReservation, list[dict[str, Any]]]:
    now = naive_utc()
    async with get_session() as session:
        rows = await session.execute(
            select(FileReservation, Agent.name)
            .join(Agent, FileReservation.agent_id == Agent.id)
            .where(
                FileReservation.project_id == project.id,
                FileReservation.status == "active",
                FileReservation.exclusive.is_(True),
                FileReservation.expires_ts > now,
                FileReservation.agent_id != agent.id,
            )
            .order_by(FileReservation.id)
        )
        conflicts: list[dict[str, Any]] = []
        for held, holder_name in rows.all():
            overlap = _overlapping(paths, held.paths)
            if overlap:
                conflicts.append(
                    {
                        "agent": holder_name,
                        "reservation_id": held.id,
                        "paths": overlap,
                        "holder_paths": list(held.paths),
                        "expires_ts": iso(held.expires_ts),
                    }
                )
        if exclusive and conflicts:
            holders = ", ".join(sorted({c["agent"] for c in conflicts}))
            raise ReservationConflict(
                f"Exclusive reservation of {paths} conflicts with live reservations held by {holders}.",
                conflicts=conflicts,
            )
        reservation = FileReservation(
            project_id=project.id,
            agent_id=agent.id,
            paths=paths,
            exclusive=exclusive,
            reason=reason,
            created_ts=now,
            expires_ts=now + timedelta(seconds=ttl),
        )
        session.add(reservation)
        await session.commit()
        await session.refresh(reservation)
        return reservation, conflicts


async def reserve(
    project_key: str,
    agent_name: str,
    paths: Sequence[str],
    *,
    exclusive: bool = True,
    ttl_seconds: Optional[int] = None,
    reason: str = "",
) -> ReservationResult:
    """Reserve ``paths`` for ``agent_name``; all-or-nothing for exclusive requests."""
    ttl = _resolve_ttl(ttl_seconds)
    normalized = normalize_paths(paths)
    if not normalized:
        raise ValidationError("At least one non-empty path is required.", data={"parameter": "paths", "provided": list(paths)})
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name)
    await sweep_expired(project.slug)
    assert project.id is not None
    async with _reserve_lock(project.id):
        reservation, conflicts = await _insert_reservation(
            project, agent, normalized, exclusive=exclusive, ttl=ttl, reason=reason
        )
    if conflicts:
        _logger.info(
            "reservations.shared_with_conflicts",
            extra={"project": project.slug, "agent": agent.name, "holders": sorted({c["agent"] for c in conflicts})},
        )
    mirror = await _mirror_records(
        project,
        [reservation_to_dict(project, reservation, agent.name)],
        f"file_reservation: {agent.name} {', '.join(normalized)}",
    )
    return ReservationResult(project=project, reservation=reservation, agent_name=agent.name, conflicts=conflicts, mirror=mirror)


async def _load_owned(project: Project, agent: Agent, reservation_id: int) -> FileReservation:
    async with get_session() as session:
        reservation = await session.get(FileReservation, reservation_id)
    if reservation is None or reservation.project_id != project.id:
        raise NotFound(
            f"File reservation {reservation_id} not found in project '{project.human_key}'.",
            data={"reservation_id": reservation_id, "project": project.slug},
        )
    if reservation.agent_id != agent.id:
        raise NotOwner(
            f"File reservation {reservation_id} is not held by '{agent.name}'.",
            data={"reservation_id": reservation_id, "agent": agent.name},
        )
    return reservation


@retry_on_db_lock()
async def _apply_changes(reservation_id: int, **values: Any) -> FileReservation:
    async with get_session() as session:
        reservation = await session.get(FileReservation, reservation_id)
        assert reservation is not None
        for key, value in values.items():
            setattr(reservation, key, value)
        session.add(reservation)
        await session.commit()
        await session.refresh(reservation)
        return reservation


async def renew(project_key: str, agent_name: str, reservation_id: int, *, ttl_seconds: int) -> ReservationResult:
    """Extend a live reservation to ``max(now, expires_ts) + ttl_seconds``."""
    ttl = _resolve_ttl(ttl_seconds)
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name)
    reservation = await _load_owned(project, agent, reservation_id)
    now = naive_utc()
    if not _is_live(reservation, now):
        raise ValidationError(
            f"File reservation {reservation_id} is no longer live (status {reservation.status}).",
            data={"reservation_id": reservation_id, "status": reservation.status, "expires_ts": iso(reservation.expires_ts)},
        )
    new_expiry = max(now, reservation.expires_ts) + timedelta(seconds=ttl)
    reservation = await _apply_changes(reservation_id, expires_ts=new_expiry)
    mirror = await _mirror_records(
        project,
        [reservation_to_dict(project, reservation, agent.name)],
        f"file_reservation: renew {agent.name} #{reservation_id}",
    )
    return ReservationResult(project=project, reservation=reservation, agent_name=agent.name, mirror=mirror)


async def release(project_key: str, agent_name: str, reservation_id: int) -> ReservationResult:
    """Release a reservation; already released or expired reservations are left as they are."""
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name)
    reservation = await _load_owned(project, agent, reservation_id)
    if not _is_live(reservation, naive_utc()):
        return ReservationResult(project=project, reservation=reservation, agent_name=agent.name, changed=False)
    reservation = await _apply_changes(reservation_id, status="released", released_ts=naive_utc())
    mirror = await _mirror_records(
        project,
        [reservation_to_dict(project, reservation, agent.name)],
        f"file_reservation: release {agent.name} #{reservation_id}",
    )
    return ReservationResult(project=project, reservation=reservation, agent_name=agent.name, mirror=mirror)


@retry_on_db_lock()
async def _release_matching(project: Project, agent: Agent, patterns: Optional[list[str]]) -> list[FileReservation]:
    now = naive_utc()
    async with get_session() as session:
        result = await session.execute(
            select(FileReservation)
            .where(
                FileReservation.project_id == project.id,
                FileReservation.agent_id == agent.id,
                FileReservation.status == "active",
                FileReservation.expires_ts > now,
            )
            .order_by(FileReservation.id)
        )
        released: list[FileReservation] = []
        for reservation in result.scalars().all():
            if patterns is not None and not _overlapping(patterns, reservation.paths):
                continue
            reservation.status = "released"
            reservation.released_ts = now
            session.add(reservation)
            released.append(reservation)
        if released:
            await session.commit()
            for reservation in released:
                await session.refresh(reservation)
        return released


async def release_all(project_key: str, agent_name: str, *, paths: Optional[Sequence[str]] = None) -> list[ReservationResult]:
    """Release every live reservation of the agent, optionally only those overlapping ``paths``."""
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name)
    patterns = normalize_paths(paths) if paths is not None else None
    released = await _release_matching(project, agent, patterns)
    if not released:
        return []
    mirror = await _mirror_records(
        project,
        [reservation_to_dict(project, r, agent.name) for r in released],
        f"file_reservation: release {agent.name} ({len(released)})",
    )
    return [ReservationResult(project=project, reservation=r, agent_name=agent.name, mirror=mirror) for r in released]


@retry_on_db_lock()
async def _expire_lapsed(project_id: Optional[int]) -> list[tuple[FileReservation, str, Project]]:
    now = naive_utc()
    async with get_session() as session:
        stmt = (
            select(FileReservation, Agent.name, Project)
            .join(Agent, FileReservation.agent_id == Agent.id)
            .join(Project, FileReservation.project_id == Project.id)
            .where(FileReservation.status == "active", FileReservation.expires_ts <= now)
        )
        if project_id is not None:
            stmt = stmt.where(FileReservation.project_id == project_id)
        rows = (await session.execute(stmt.order_by(FileReservation.id))).all()
        for reservation, _name, _project in rows:
            reservation.status = "expired"
            reservation.released_ts = now
            session.add(reservation)
        if rows:
            await session.commit()
        return [(reservation, name, project) for reservation, name, project in rows]


async def sweep_expired(project_key: Optional[str] = None) -> int:
    """Move lapsed active reservations to ``expired``; returns how many changed."""
    await ensure_schema()
    project_id: Optional[int] = None
    if project_key is not None:
        project_id = (await get_project(project_key)).id
    expired = await _expire_lapsed(project_id)
    if not expired:
        return 0
    by_project: dict[int, tuple[Project, list[dict[str, Any]]]] = {}
    for reservation, agent_name, project in expired:
        assert project.id is not None
        _, records = by_project.setdefault(project.id, (project, []))
        records.append(reservation_to_dict(project, reservation, agent_name))
    for project, records in by_project.values():
        await _mirror_records(project, records, f"file_reservation: expire {len(records)}")
    _logger.info("reservations.swept", extra={"expired": len(expired), "projects": len(by_project)})
    return len(expired)


async def list_reservations(
    project_key: str,
    *,
    agent_name: Optional[str] = None,
    active_only: bool = True,
) -> list[dict[str, Any]]:
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name, include_inactive=True) if agent_name is not None else None
    now = naive_utc()
    async with get_session() as session:
        stmt = (
            select(FileReservation, Agent.name)
            .join(Agent, FileReservation.agent_id == Agent.id)
            .where(FileReservation.project_id == project.id)
        )
        if agent is not None:
            stmt = stmt.where(FileReservation.agent_id == agent.id)
        if active_only:
            stmt = stmt.where(FileReservation.status == "active", FileReservation.expires_ts > now)
        rows = (await session.execute(stmt.order_by(FileReservation.id))).all()
    return [reservation_to_dict(project, reservation, name) for reservation, name in rows]
