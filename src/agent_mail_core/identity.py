"""Identity registry: projects and the agents registered inside them."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .config import get_settings
from .db import ensure_schema, get_session, retry_on_db_lock
from .errors import NotFound, ValidationError
from .mirror import mirror_to_archive
from .models import Agent, Project
from .storage import ProjectLock, write_agent_profile
from .utils import generate_agent_name, iso, naive_utc, project_slug, sanitize_agent_name

_logger = logging.getLogger(__name__)

_MAX_NAME_GENERATION_ATTEMPTS = 256


def project_to_dict(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "slug": project.slug,
        "human_key": project.human_key,
        "created_at": iso(project.created_at),
    }


def agent_to_dict(agent: Agent) -> dict[str, Any]:
    return {
        "id": agent.id,
        "name": agent.name,
        "program": agent.program,
        "model": agent.model,
        "task_description": agent.task_description,
        "inception_ts": iso(agent.inception_ts),
        "last_active_ts": iso(agent.last_active_ts),
        "project_id": agent.project_id,
        "contact_policy": agent.contact_policy,
        "is_active": agent.is_active,
        "deactivated_ts": iso(agent.deactivated_ts),
    }


@retry_on_db_lock()
async def ensure_project(human_key: str) -> Project:
    """Return the project for ``human_key``, creating it on first use.

    Concurrent callers racing on the unique constraint all get the same row.
    """
    key = (human_key or "").strip()
    if not key:
        raise ValidationError("Project key cannot be empty.", data={"parameter": "human_key"})
    await ensure_schema()
    slug = project_slug(key)
    async with get_session() as session:
        result = await session.execute(select(Project).where(Project.slug == slug))
        project = result.scalars().first()
        if project:
            return project
        project = Project(slug=slug, human_key=key)
        session.add(project)
        try:
            await session.commit()
        except IntegrityError:
            # Another caller created the row first.
            await session.rollback()
            result = await session.execute(select(Project).where(Project.slug == slug))
            existing = result.scalars().first()
            if existing:
                return existing
            raise
        await session.refresh(project)
        _logger.info("identity.project_created", extra={"project": slug, "human_key": key})
        return project


async def get_project(key: str) -> Project:
    """Resolve a project by human key or slug."""
    candidate = (key or "").strip()
    if not candidate:
        raise ValidationError("Project key cannot be empty.", data={"parameter": "project_key"})
    await ensure_schema()
    async with get_session() as session:
        result = await session.execute(
            select(Project).where(or_(Project.human_key == candidate, Project.slug == candidate))
        )
        project = result.scalars().first()
    if project is None:
        raise NotFound(
            f"Project '{candidate}' not found. Call ensure_project first.",
            data={"project": candidate},
        )
    return project


async def _known_agent_names(project: Project, *, include_inactive: bool = True) -> list[str]:
    async with get_session() as session:
        stmt = select(Agent.name).where(Agent.project_id == project.id)
        if not include_inactive:
            stmt = stmt.where(Agent.is_active.is_(True))
        result = await session.execute(stmt.order_by(Agent.name))
        return [row[0] for row in result.all()]


async def get_agent(project: Project, name: str, *, include_inactive: bool = False) -> Agent:
    """Case-insensitive lookup; ``NotFound`` lists the project's agents as suggestions."""
    if not name or not name.strip():
        raise ValidationError(
            f"Agent name cannot be empty in project '{project.human_key}'.",
            data={"parameter": "agent_name", "project": project.slug},
        )
    await ensure_schema()
    async with get_session() as session:
        result = await session.execute(
            select(Agent).where(Agent.project_id == project.id, func.lower(Agent.name) == name.strip().lower())
        )
        agent = result.scalars().first()
    if agent is not None and (agent.is_active or include_inactive):
        return agent
    available = await _known_agent_names(project, include_inactive=False)
    if agent is not None:
        message = f"Agent '{agent.name}' in project '{project.human_key}' is inactive."
    elif available:
        listed = ", ".join(f"'{a}'" for a in available[:5])
        more = f" and {len(available) - 5} more" if len(available) > 5 else ""
        message = f"Agent '{name}' not found in project '{project.human_key}'. Available agents: {listed}{more}."
    else:
        message = f"Agent '{name}' not found. Project '{project.human_key}' has no registered agents yet."
    raise NotFound(
        message,
        data={"agent_name": name, "project": project.slug, "available_agents": available},
    )


async def _generate_unique_name(project: Project) -> str:
    taken = {n.lower() for n in await _known_agent_names(project)}
    for _ in range(_MAX_NAME_GENERATION_ATTEMPTS):
        candidate = generate_agent_name()
        if candidate.lower() not in taken:
            return candidate
    base = generate_agent_name()
    suffix = 2
    while f"{base}{suffix}".lower() in taken:
        suffix += 1
    return f"{base}{suffix}"


async def _mirror_profile(project: Project, agent: Agent) -> None:
    payload = agent_to_dict(agent)

    async def _writer(project_lock: ProjectLock) -> None:
        await write_agent_profile(project_lock, payload)

    result = await mirror_to_archive(
        get_settings(),
        project.slug,
        _writer,
        f"agent: profile {agent.name}",
        label="agent_profile",
    )
    if result.degraded:
        _logger.warning("identity.profile_mirror_degraded", extra={"project": project.slug, "agent": agent.name})


@retry_on_db_lock()
async def _upsert_agent(
    project: Project,
    name: str,
    program: str,
    model: str,
    task_description: str,
    contact_policy: Optional[str],
) -> Agent:
    now = naive_utc()
    async with get_session() as session:
        result = await session.execute(
            select(Agent).where(Agent.project_id == project.id, func.lower(Agent.name) == name.lower())
        )
        agent = result.scalars().first()
        if agent is None:
            agent = Agent(
                project_id=project.id,
                name=name,
                program=program,
                model=model,
                task_description=task_description,
                contact_policy=contact_policy or "auto",
            )
            session.add(agent)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                result = await session.execute(
                    select(Agent).where(Agent.project_id == project.id, func.lower(Agent.name) == name.lower())
                )
                agent = result.scalars().first()
                if agent is None:
                    raise
            else:
                await session.refresh(agent)
                return agent
        agent.program = program
        agent.model = model
        agent.task_description = task_description
        agent.last_active_ts = now
        if contact_policy is not None:
            agent.contact_policy = contact_policy
        if not agent.is_active:
            agent.is_active = True
            agent.deactivated_ts = None
        session.add(agent)
        await session.commit()
        await session.refresh(agent)
        return agent


async def register_agent(
    project_key: str,
    name: Optional[str] = None,
    *,
    program: str,
    model: str,
    task_description: str = "",
    contact_policy: Optional[str] = None,
) -> Agent:
    """Create or refresh an agent identity; an inactive agent is reactivated.

    With no ``name`` a unique adjective+noun name is generated.
    """
    from .contacts import ContactPolicy

    project = await get_project(project_key)
    if contact_policy is not None:
        contact_policy = ContactPolicy.parse(contact_policy).value
    if name is None:
        resolved = await _generate_unique_name(project)
    else:
        sanitized = sanitize_agent_name(name)
        if sanitized is None:
            raise ValidationError(
                f"Agent name '{name}' has no alphanumeric characters.",
                data={"parameter": "name", "provided": name},
            )
        resolved = sanitized
    agent = await _upsert_agent(project, resolved, program, model, task_description, contact_policy)
    _logger.info("identity.agent_registered", extra={"project": project.slug, "agent": agent.name})
    await _mirror_profile(project, agent)
    return agent


@retry_on_db_lock()
async def deactivate_agent(project_key: str, name: str) -> Agent:
    project = await get_project(project_key)
    agent = await get_agent(project, name, include_inactive=True)
    if not agent.is_active:
        return agent
    async with get_session() as session:
        db_agent = await session.get(Agent, agent.id)
        assert db_agent is not None
        db_agent.is_active = False
        db_agent.deactivated_ts = naive_utc()
        session.add(db_agent)
        await session.commit()
        await session.refresh(db_agent)
    _logger.info("identity.agent_deactivated", extra={"project": project.slug, "agent": db_agent.name})
    return db_agent


async def list_agents(project_key: str, *, include_inactive: bool = False) -> list[Agent]:
    project = await get_project(project_key)
    async with get_session() as session:
        stmt = select(Agent).where(Agent.project_id == project.id)
        if not include_inactive:
            stmt = stmt.where(Agent.is_active.is_(True))
        result = await session.execute(stmt.order_by(Agent.name))
        return list(result.scalars().all())
