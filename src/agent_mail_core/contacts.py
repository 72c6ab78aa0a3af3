"""Contact policy engine: who may message whom, and the request/respond handshake.

Each recipient publishes a policy. The decision for a (sender, recipient) pair
is a pure function of that policy and a ``ContactEvidence`` record read from
the index, so admission has no side effects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import DateTime, bindparam, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from .config import Settings, get_settings
from .db import get_session, retry_on_db_lock
from .errors import ContactBlocked, ContactRequired, NotFound, ValidationError
from .identity import get_agent, get_project
from .models import Agent, AgentLink, FileReservation, Project
from .reservations import paths_overlap
from .utils import iso, naive_utc

_logger = logging.getLogger(__name__)


class ContactPolicy(str, Enum):
    OPEN = "open"
    AUTO = "auto"
    CONTACTS_ONLY = "contacts_only"
    BLOCK_ALL = "block_all"

    @classmethod
    def parse(cls, value: str) -> "ContactPolicy":
        normalized = (value or "").strip().lower()
        for policy in cls:
            if policy.value == normalized:
                return policy
        raise ValidationError(
            f"Unknown contact policy '{value}'. Expected one of: {', '.join(p.value for p in cls)}.",
            data={"parameter": "policy", "provided": value},
        )

    def decide(self, evidence: "ContactEvidence") -> "ContactDecision":
        return _DECISIONS[self](evidence)


@dataclass(slots=True, frozen=True)
class ContactEvidence:
    approved_link: bool = False
    shared_thread: bool = False
    overlapping_reservations: bool = False
    recent_contact: bool = False


@dataclass(slots=True, frozen=True)
class ContactDecision:
    allowed: bool
    policy: Optional[ContactPolicy]
    reason: str
    blocked: bool = False

    def raise_if_rejected(self, sender: Agent, recipient: Agent) -> None:
        if self.allowed:
            return
        data: dict[str, Any] = {
            "recipient": recipient.name,
            "sender": sender.name,
            "policy": self.policy.value if self.policy else None,
            "reason": self.reason,
        }
        if self.blocked:
            raise ContactBlocked(f"Recipient '{recipient.name}' is not accepting messages.", data=data)
        data["suggested_call"] = {
            "request_contact": {"from_agent": sender.name, "to_agent": recipient.name},
        }
        raise ContactRequired(
            f"'{sender.name}' needs an approved contact before messaging '{recipient.name}' "
            f"(policy {data['policy']}). Call request_contact and wait for approval.",
            data=data,
        )


def _decide_open(evidence: ContactEvidence) -> ContactDecision:
    return ContactDecision(True, ContactPolicy.OPEN, "open")


def _decide_auto(evidence: ContactEvidence) -> ContactDecision:
    if evidence.approved_link:
        return ContactDecision(True, ContactPolicy.AUTO, "approved_link")
    if evidence.shared_thread:
        return ContactDecision(True, ContactPolicy.AUTO, "shared_thread")
    if evidence.overlapping_reservations:
        return ContactDecision(True, ContactPolicy.AUTO, "overlapping_reservations")
    if evidence.recent_contact:
        return ContactDecision(True, ContactPolicy.AUTO, "recent_contact")
    return ContactDecision(False, ContactPolicy.AUTO, "no_prior_interaction")


def _decide_contacts_only(evidence: ContactEvidence) -> ContactDecision:
    if evidence.approved_link:
        return ContactDecision(True, ContactPolicy.CONTACTS_ONLY, "approved_link")
    return ContactDecision(False, ContactPolicy.CONTACTS_ONLY, "approved_link_required")


def _decide_block_all(evidence: ContactEvidence) -> ContactDecision:
    return ContactDecision(False, ContactPolicy.BLOCK_ALL, "block_all", blocked=True)


_DECISIONS: dict[ContactPolicy, Callable[[ContactEvidence], ContactDecision]] = {
    ContactPolicy.OPEN: _decide_open,
    ContactPolicy.AUTO: _decide_auto,
    ContactPolicy.CONTACTS_ONLY: _decide_contacts_only,
    ContactPolicy.BLOCK_ALL: _decide_block_all,
}

_SHARED_THREAD_SQL = text(
    """
    WITH participation AS (
        SELECT COALESCE(m.thread_id, CAST(m.id AS TEXT)) AS thread_key, m.sender_id AS agent_id
        FROM messages m
        WHERE m.project_id = :project_id
        UNION
        SELECT COALESCE(m.thread_id, CAST(m.id AS TEXT)) AS thread_key, r.agent_id AS agent_id
        FROM messages m
        JOIN message_recipients r ON r.message_id = m.id
        WHERE m.project_id = :project_id
    )
    SELECT 1
    FROM participation pa
    JOIN participation pb ON pa.thread_key = pb.thread_key
    WHERE pa.agent_id = :a AND pb.agent_id = :b
    LIMIT 1
    """
)

_RECENT_CONTACT_SQL = text(
    """
    SELECT 1
    FROM messages m
    JOIN message_recipients r ON r.message_id = m.id
    WHERE m.project_id = :project_id
      AND m.created_ts >= :since
      AND ((m.sender_id = :a AND r.agent_id = :b) OR (m.sender_id = :b AND r.agent_id = :a))
    LIMIT 1
    """
).bindparams(bindparam("since", type_=DateTime()))


async def _has_approved_link(session: AsyncSession, project: Project, sender: Agent, recipient: Agent) -> bool:
    now = naive_utc()
    result = await session.execute(
        select(AgentLink.id).where(
            AgentLink.project_id == project.id,
            AgentLink.a_agent_id == sender.id,
            AgentLink.b_agent_id == recipient.id,
            AgentLink.status == "approved",
            or_(AgentLink.expires_ts.is_(None), AgentLink.expires_ts > now),
        )
    )
    return result.first() is not None


async def _shares_thread(session: AsyncSession, project: Project, sender: Agent, recipient: Agent) -> bool:
    result = await session.execute(_SHARED_THREAD_SQL, {"project_id": project.id, "a": sender.id, "b": recipient.id})
    return result.first() is not None


async def _recent_contact(session: AsyncSession, project: Project, sender: Agent, recipient: Agent, settings: Settings) -> bool:
    since = naive_utc() - timedelta(seconds=settings.contact_auto_ttl_seconds)
    result = await session.execute(
        _RECENT_CONTACT_SQL,
        {"project_id": project.id, "since": since, "a": sender.id, "b": recipient.id},
    )
    return result.first() is not None


async def _reservations_overlap(
    session: AsyncSession, project: Project, sender: Agent, recipient: Agent, settings: Settings
) -> bool:
    window_start = naive_utc() - timedelta(seconds=settings.contact_reservation_window_seconds)
    result = await session.execute(
        select(FileReservation).where(
            FileReservation.project_id == project.id,
            FileReservation.agent_id.in_([sender.id, recipient.id]),
            FileReservation.status != "released",
            FileReservation.expires_ts >= window_start,
        )
    )
    mine: list[str] = []
    theirs: list[str] = []
    for reservation in result.scalars().all():
        (mine if reservation.agent_id == sender.id else theirs).extend(reservation.paths)
    return any(paths_overlap(a, b) for a in mine for b in theirs)


async def gather_evidence(
    session: AsyncSession,
    project: Project,
    sender: Agent,
    recipient: Agent,
    policy: ContactPolicy,
    settings: Optional[Settings] = None,
) -> ContactEvidence:
    """Read only the evidence ``policy`` can use, stopping at the first positive signal."""
    if policy in (ContactPolicy.OPEN, ContactPolicy.BLOCK_ALL):
        return ContactEvidence()
    if await _has_approved_link(session, project, sender, recipient):
        return ContactEvidence(approved_link=True)
    if policy is ContactPolicy.CONTACTS_ONLY:
        return ContactEvidence()
    resolved = settings or get_settings()
    if await _shares_thread(session, project, sender, recipient):
        return ContactEvidence(shared_thread=True)
    if await _reservations_overlap(session, project, sender, recipient, resolved):
        return ContactEvidence(overlapping_reservations=True)
    if await _recent_contact(session, project, sender, recipient, resolved):
        return ContactEvidence(recent_contact=True)
    return ContactEvidence()


async def evaluate_contact(
    session: AsyncSession,
    project: Project,
    sender: Agent,
    recipient: Agent,
    *,
    settings: Optional[Settings] = None,
) -> ContactDecision:
    """Decide whether ``sender`` may message ``recipient``; reads the index only."""
    resolved = settings or get_settings()
    if sender.id == recipient.id:
        return ContactDecision(True, None, "self")
    if not resolved.contact_enforcement_enabled:
        return ContactDecision(True, None, "enforcement_disabled")
    policy = ContactPolicy.parse(recipient.contact_policy)
    evidence = await gather_evidence(session, project, sender, recipient, policy, resolved)
    return policy.decide(evidence)


async def check_admission(
    session: AsyncSession,
    project: Project,
    sender: Agent,
    recipients: Sequence[Agent],
    *,
    settings: Optional[Settings] = None,
) -> list[ContactDecision]:
    """Evaluate recipients in order and raise for the first one that rejects."""
    decisions: list[ContactDecision] = []
    for recipient in recipients:
        decision = await evaluate_contact(session, project, sender, recipient, settings=settings)
        if not decision.allowed:
            _logger.info(
                "contacts.rejected",
                extra={"project": project.slug, "sender": sender.name, "recipient": recipient.name, "reason": decision.reason},
            )
        decision.raise_if_rejected(sender, recipient)
        decisions.append(decision)
    return decisions


def link_to_dict(link: AgentLink, *, from_name: str, to_name: str) -> dict[str, Any]:
    return {
        "id": link.id,
        "from": from_name,
        "to": to_name,
        "status": link.status,
        "reason": link.reason,
        "created_ts": iso(link.created_ts),
        "updated_ts": iso(link.updated_ts),
        "expires_ts": iso(link.expires_ts),
    }


async def _find_link(session: AsyncSession, project: Project, a: Agent, b: Agent) -> Optional[AgentLink]:
    result = await session.execute(
        select(AgentLink).where(
            AgentLink.project_id == project.id,
            AgentLink.a_agent_id == a.id,
            AgentLink.b_agent_id == b.id,
        )
    )
    return result.scalars().first()


@retry_on_db_lock()
async def _upsert_pending_link(project: Project, a: Agent, b: Agent, reason: str) -> AgentLink:
    now = naive_utc()
    async with get_session() as session:
        link = await _find_link(session, project, a, b)
        if link is None:
            link = AgentLink(project_id=project.id, a_agent_id=a.id, b_agent_id=b.id, status="pending", reason=reason)
            session.add(link)
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent request for the same pair; the other row wins.
                await session.rollback()
                link = await _find_link(session, project, a, b)
                if link is None:
                    raise
            else:
                await session.refresh(link)
            return link
        still_approved = link.status == "approved" and (link.expires_ts is None or link.expires_ts > now)
        if not still_approved:
            link.status = "pending"
            link.expires_ts = None
        link.reason = reason
        link.updated_ts = now
        session.add(link)
        await session.commit()
        await session.refresh(link)
        return link


async def request_contact(project_key: str, from_agent: str, to_agent: str, *, reason: str = "") -> dict[str, Any]:
    """Record a pending link from ``from_agent`` to ``to_agent`` and deliver an intro message.

    The intro bypasses the policy gate except for ``block_all`` recipients.
    """
    from .delivery import deliver_message

    project = await get_project(project_key)
    requester = await get_agent(project, from_agent)
    target = await get_agent(project, to_agent)
    if requester.id == target.id:
        raise ValidationError("An agent cannot request contact with itself.", data={"agent": requester.name})
    if ContactPolicy.parse(target.contact_policy) is ContactPolicy.BLOCK_ALL:
        _decide_block_all(ContactEvidence()).raise_if_rejected(requester, target)
    link = await _upsert_pending_link(project, requester, target, reason)
    delivery = await deliver_message(
        project,
        requester,
        [target.name],
        f"Contact request from {requester.name}",
        reason or f"{requester.name} requests permission to contact {target.name}.",
        ack_required=True,
        enforce_contacts=False,
    )
    _logger.info("contacts.requested", extra={"project": project.slug, "from": requester.name, "to": target.name})
    return {
        "link": link_to_dict(link, from_name=requester.name, to_name=target.name),
        "intro": delivery.to_payload(),
    }


@retry_on_db_lock()
async def _apply_response(
    project: Project, requester: Agent, responder: Agent, *, accept: bool, ttl_seconds: int
) -> AgentLink:
    now = naive_utc()
    async with get_session() as session:
        link = await _find_link(session, project, requester, responder)
        if link is None:
            if not accept:
                raise NotFound(
                    f"No contact request from '{requester.name}' to '{responder.name}'.",
                    data={"from": requester.name, "to": responder.name},
                )
            link = AgentLink(project_id=project.id, a_agent_id=requester.id, b_agent_id=responder.id)
        link.status = "approved" if accept else "rejected"
        link.expires_ts = now + timedelta(seconds=ttl_seconds) if accept else None
        link.updated_ts = now
        session.add(link)
        await session.commit()
        await session.refresh(link)
        return link


async def respond_contact(
    project_key: str,
    to_agent: str,
    from_agent: str,
    *,
    accept: bool,
    ttl_seconds: Optional[int] = None,
) -> dict[str, Any]:
    """``to_agent`` approves or rejects the link requested by ``from_agent``."""
    ttl = get_settings().contact_link_ttl_seconds if ttl_seconds is None else ttl_seconds
    if ttl < 0:
        raise ValidationError(f"ttl_seconds must be >= 0 (got {ttl}).", data={"parameter": "ttl_seconds", "provided": ttl})
    project = await get_project(project_key)
    responder = await get_agent(project, to_agent)
    requester = await get_agent(project, from_agent)
    link = await _apply_response(project, requester, responder, accept=accept, ttl_seconds=ttl)
    _logger.info(
        "contacts.responded",
        extra={"project": project.slug, "from": requester.name, "to": responder.name, "status": link.status},
    )
    return link_to_dict(link, from_name=requester.name, to_name=responder.name)


async def list_contacts(project_key: str, agent_name: str) -> list[dict[str, Any]]:
    """Outgoing links of ``agent_name``."""
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name, include_inactive=True)
    async with get_session() as session:
        result = await session.execute(
            select(AgentLink, Agent.name)
            .join(Agent, AgentLink.b_agent_id == Agent.id)
            .where(AgentLink.project_id == project.id, AgentLink.a_agent_id == agent.id)
            .order_by(AgentLink.id)
        )
        return [link_to_dict(link, from_name=agent.name, to_name=name) for link, name in result.all()]


@retry_on_db_lock()
async def set_contact_policy(project_key: str, agent_name: str, policy: str) -> Agent:
    resolved = ContactPolicy.parse(policy)
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name)
    async with get_session() as session:
        db_agent = await session.get(Agent, agent.id)
        assert db_agent is not None
        db_agent.contact_policy = resolved.value
        session.add(db_agent)
        await session.commit()
        await session.refresh(db_agent)
    _logger.info("contacts.policy_set", extra={"project": project.slug, "agent": db_agent.name, "policy": resolved.value})
    return db_agent
