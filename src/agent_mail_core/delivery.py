"""Message delivery pipeline and mailbox reads.

A send is validated, admitted by the contact policy engine, committed to the
index in a single transaction (the message row plus one recipient row per
recipient), then mirrored into the archive. The index commit is the durability
boundary: an archive failure afterwards only marks the result as degraded.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence, Union

from sqlalchemy import or_, update
from sqlmodel import select

from .config import get_settings
from .contacts import check_admission
from .db import ensure_schema, get_session, retry_on_db_lock
from .errors import NotFound, ValidationError
from .identity import get_agent, get_project
from .mirror import Durability, MirrorResult, mirror_to_archive
from .models import Agent, Message, MessageRecipient, Project
from .search import search_messages
from .storage import ProjectLock, write_message_bundle, write_receipt
from .utils import iso, naive_utc, parse_iso, validate_thread_id_format

__all__ = [
    "DeliveryResult",
    "ReceiptResult",
    "acknowledge",
    "deliver_message",
    "fetch_inbox",
    "fetch_outbox",
    "get_message",
    "get_thread",
    "mark_read",
    "reply_message",
    "search_messages",
    "send_message",
]

_logger = logging.getLogger(__name__)

IMPORTANCE_LEVELS = ("low", "normal", "high", "urgent")
_URGENT_LEVELS = ("high", "urgent")
RECIPIENT_KINDS = ("to", "cc", "bcc")

Recipients = Union[str, Sequence[str]]


@dataclass(slots=True)
class DeliveryResult:
    message: dict[str, Any]
    recipients: list[dict[str, str]]
    deduplicated: bool
    mirror: MirrorResult

    @property
    def message_id(self) -> int:
        return int(self.message["id"])

    @property
    def durability(self) -> Durability:
        return self.mirror.durability

    @property
    def degraded(self) -> bool:
        return self.mirror.degraded

    def to_payload(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "recipients": self.recipients,
            "deduplicated": self.deduplicated,
            "durability": self.durability.value,
            "degraded": self.degraded,
        }


@dataclass(slots=True)
class ReceiptResult:
    message_id: int
    agent: str
    read_ts: Optional[str]
    ack_ts: Optional[str]
    changed: bool
    mirror: Optional[MirrorResult] = field(default=None)

    @property
    def durability(self) -> Durability:
        return self.mirror.durability if self.mirror is not None else Durability.DURABLE

    @property
    def degraded(self) -> bool:
        return self.durability is Durability.DEGRADED

    def to_payload(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "agent": self.agent,
            "read_ts": self.read_ts,
            "ack_ts": self.ack_ts,
            "changed": self.changed,
            "durability": self.durability.value,
        }


def _as_names(value: Optional[Recipients]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _collapse_recipients(to: Recipients, cc: Recipients, bcc: Recipients) -> list[tuple[str, str]]:
    """Ordered (name, kind) pairs; a name listed twice keeps its first kind."""
    seen: set[str] = set()
    ordered: list[tuple[str, str]] = []
    for kind, names in (("to", _as_names(to)), ("cc", _as_names(cc)), ("bcc", _as_names(bcc))):
        for name in names:
            cleaned = name.strip()
            if not cleaned or cleaned.lower() in seen:
                continue
            seen.add(cleaned.lower())
            ordered.append((cleaned, kind))
    return ordered


def _content_digest(
    sender: Agent,
    subject: str,
    body_md: str,
    thread_id: Optional[str],
    importance: str,
    ack_required: bool,
    recipients: Sequence[tuple[Agent, str]],
) -> str:
    payload = json.dumps(
        [
            sender.id,
            subject,
            body_md,
            thread_id or "",
            importance,
            bool(ack_required),
            sorted([kind, agent.id] for agent, kind in recipients),
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _message_to_dict(message: Message, *, include_body: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": message.id,
        "project_id": message.project_id,
        "thread_id": message.thread_id,
        "subject": message.subject,
        "importance": message.importance,
        "ack_required": message.ack_required,
        "created_ts": iso(message.created_ts),
    }
    if include_body:
        data["body_md"] = message.body_md
    return data


def _frontmatter(project: Project, message: Message, sender: Agent, recipients: Sequence[tuple[Agent, str]]) -> dict[str, Any]:
    return {
        "id": message.id,
        "project": project.human_key,
        "thread_id": message.thread_id,
        "subject": message.subject,
        "from": sender.name,
        "to": [agent.name for agent, kind in recipients if kind == "to"],
        "cc": [agent.name for agent, kind in recipients if kind == "cc"],
        "importance": message.importance,
        "ack_required": message.ack_required,
        "created_ts": iso(message.created_ts),
    }


@retry_on_db_lock()
async def _insert_message(
    project: Project,
    sender: Agent,
    subject: str,
    body_md: str,
    recipients: Sequence[tuple[Agent, str]],
    *,
    thread_id: Optional[str],
    importance: str,
    ack_required: bool,
    dedupe_window_seconds: int,
) -> tuple[Message, bool]:
    digest = _content_digest(sender, subject, body_md, thread_id, importance, ack_required, recipients)
    now = naive_utc()
    async with get_session() as session:
        if dedupe_window_seconds > 0:
            result = await session.execute(
                select(Message)
                .where(
                    Message.project_id == project.id,
                    Message.sender_id == sender.id,
                    Message.content_digest == digest,
                    Message.created_ts >= now - timedelta(seconds=dedupe_window_seconds),
                )
                .order_by(Message.id.desc())
                .limit(1)
            )
            existing = result.scalars().first()
            if existing is not None:
                return existing, True
        message = Message(
            project_id=project.id,
            sender_id=sender.id,
            thread_id=thread_id,
            subject=subject,
            body_md=body_md,
            importance=importance,
            ack_required=ack_required,
            created_ts=now,
            content_digest=digest,
        )
        session.add(message)
        await session.flush()
        for agent, kind in recipients:
            session.add(MessageRecipient(message_id=message.id, agent_id=agent.id, kind=kind))
        db_sender = await session.get(Agent, sender.id)
        if db_sender is not None:
            db_sender.last_active_ts = now
            session.add(db_sender)
        await session.commit()
        await session.refresh(message)
        return message, False


async def _mirror_message(
    project: Project, message: Message, sender: Agent, recipients: Sequence[tuple[Agent, str]]
) -> MirrorResult:
    frontmatter = _frontmatter(project, message, sender, recipients)
    body_md = message.body_md
    all_names = [agent.name for agent, _kind in recipients]
    visible = [agent.name for agent, kind in recipients if kind != "bcc"]

    async def _writer(project_lock: ProjectLock) -> None:
        await write_message_bundle(project_lock, frontmatter, body_md, sender.name, all_names, visible)

    return await mirror_to_archive(
        get_settings(),
        project.slug,
        _writer,
        f"mail: {sender.name} -> {', '.join(visible) or '(bcc)'} | {message.subject}",
        label="message",
    )


async def deliver_message(
    project: Project,
    sender: Agent,
    to: Recipients,
    subject: str,
    body_md: str,
    *,
    cc: Recipients = (),
    bcc: Recipients = (),
    thread_id: Optional[str] = None,
    importance: str = "normal",
    ack_required: bool = False,
    enforce_contacts: bool = True,
) -> DeliveryResult:
    """Run the pipeline for an already resolved project and sender."""
    names = _collapse_recipients(to, cc, bcc)
    if not names:
        raise ValidationError("At least one recipient is required (to, cc or bcc).", data={"parameter": "to"})
    if thread_id is not None:
        thread_id = thread_id.strip()
        if not validate_thread_id_format(thread_id):
            raise ValidationError(
                f"Invalid thread_id '{thread_id}': use letters, digits, '.', '_' or '-' (max 128, alphanumeric first).",
                data={"parameter": "thread_id", "provided": thread_id},
            )
    if importance not in IMPORTANCE_LEVELS:
        raise ValidationError(
            f"Unknown importance '{importance}'. Expected one of: {', '.join(IMPORTANCE_LEVELS)}.",
            data={"parameter": "importance", "provided": importance},
        )
    recipients: list[tuple[Agent, str]] = []
    for name, kind in names:
        agent = await get_agent(project, name)
        recipients.append((agent, kind))

    if enforce_contacts:
        async with get_session() as session:
            await check_admission(session, project, sender, [agent for agent, _kind in recipients])

    settings = get_settings()
    message, deduplicated = await _insert_message(
        project,
        sender,
        subject,
        body_md,
        recipients,
        thread_id=thread_id,
        importance=importance,
        ack_required=ack_required,
        dedupe_window_seconds=settings.message_dedupe_window_seconds,
    )
    if deduplicated:
        _logger.info("delivery.deduplicated", extra={"project": project.slug, "message_id": message.id, "sender": sender.name})

    mirror = await _mirror_message(project, message, sender, recipients)
    if mirror.degraded:
        _logger.warning(
            "delivery.archive_degraded",
            extra={"project": project.slug, "message_id": message.id, "error": mirror.error},
        )
    payload = _message_to_dict(message)
    payload["from"] = sender.name
    return DeliveryResult(
        message=payload,
        recipients=[{"name": agent.name, "kind": kind} for agent, kind in recipients],
        deduplicated=deduplicated,
        mirror=mirror,
    )


async def send_message(
    project_key: str,
    sender_name: str,
    to: Recipients,
    subject: str,
    body_md: str,
    *,
    cc: Recipients = (),
    bcc: Recipients = (),
    thread_id: Optional[str] = None,
    importance: str = "normal",
    ack_required: bool = False,
) -> DeliveryResult:
    project = await get_project(project_key)
    sender = await get_agent(project, sender_name)
    return await deliver_message(
        project,
        sender,
        to,
        subject,
        body_md,
        cc=cc,
        bcc=bcc,
        thread_id=thread_id,
        importance=importance,
        ack_required=ack_required,
    )


async def _load_message(project: Project, message_id: int) -> Message:
    await ensure_schema()
    async with get_session() as session:
        message = await session.get(Message, message_id)
    if message is None or message.project_id != project.id:
        raise NotFound(
            f"Message {message_id} not found in project '{project.human_key}'.",
            data={"message_id": message_id, "project": project.slug},
        )
    return message


async def reply_message(
    project_key: str,
    message_id: int,
    sender_name: str,
    body_md: str,
    *,
    to: Optional[Recipients] = None,
    cc: Recipients = (),
    bcc: Recipients = (),
    subject_prefix: str = "Re:",
) -> DeliveryResult:
    """Reply within the original's thread; ``to`` defaults to the original sender."""
    project = await get_project(project_key)
    original = await _load_message(project, message_id)
    sender = await get_agent(project, sender_name)
    subject = original.subject
    prefix = subject_prefix.strip()
    if prefix and not subject.lower().startswith(prefix.lower()):
        subject = f"{prefix} {subject}"
    if to is None:
        async with get_session() as session:
            original_sender = await session.get(Agent, original.sender_id)
        assert original_sender is not None
        to = [original_sender.name]
    return await deliver_message(
        project,
        sender,
        to,
        subject,
        body_md,
        cc=cc,
        bcc=bcc,
        thread_id=original.thread_key,
        importance=original.importance,
        ack_required=original.ack_required,
    )


def _coerce_since(since_ts: Union[str, datetime, None]) -> Optional[datetime]:
    if since_ts is None:
        return None
    if isinstance(since_ts, datetime):
        return naive_utc(since_ts)
    parsed = parse_iso(since_ts)
    if parsed is None:
        raise ValidationError(f"Invalid since_ts '{since_ts}': expected ISO-8601.", data={"parameter": "since_ts"})
    return naive_utc(parsed)


async def fetch_inbox(
    project_key: str,
    agent_name: str,
    *,
    limit: int = 20,
    urgent_only: bool = False,
    unread_only: bool = False,
    since_ts: Union[str, datetime, None] = None,
    include_bodies: bool = False,
) -> list[dict[str, Any]]:
    """Messages delivered to ``agent_name``, newest first."""
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name, include_inactive=True)
    since = _coerce_since(since_ts)
    async with get_session() as session:
        stmt = (
            select(Message, MessageRecipient, Agent.name)
            .join(MessageRecipient, MessageRecipient.message_id == Message.id)
            .join(Agent, Message.sender_id == Agent.id)
            .where(Message.project_id == project.id, MessageRecipient.agent_id == agent.id)
        )
        if urgent_only:
            stmt = stmt.where(Message.importance.in_(_URGENT_LEVELS))
        if unread_only:
            stmt = stmt.where(MessageRecipient.read_ts.is_(None))
        if since is not None:
            stmt = stmt.where(Message.created_ts > since)
        result = await session.execute(stmt.order_by(Message.id.desc()).limit(limit))
        rows = result.all()
    items: list[dict[str, Any]] = []
    for message, recipient, sender_name in rows:
        item = _message_to_dict(message, include_body=include_bodies)
        item["from"] = sender_name
        item["kind"] = recipient.kind
        item["state"] = recipient.state
        item["read_ts"] = iso(recipient.read_ts)
        item["ack_ts"] = iso(recipient.ack_ts)
        items.append(item)
    return items


async def _recipient_names(message_ids: Sequence[int], *, include_bcc: bool) -> dict[int, dict[str, list[str]]]:
    grouped: dict[int, dict[str, list[str]]] = {
        mid: {kind: [] for kind in RECIPIENT_KINDS if include_bcc or kind != "bcc"} for mid in message_ids
    }
    if not message_ids:
        return grouped
    async with get_session() as session:
        result = await session.execute(
            select(MessageRecipient.message_id, MessageRecipient.kind, Agent.name)
            .join(Agent, MessageRecipient.agent_id == Agent.id)
            .where(MessageRecipient.message_id.in_(list(message_ids)))
            .order_by(MessageRecipient.message_id, Agent.name)
        )
        for message_id, kind, name in result.all():
            bucket = grouped[message_id].get(kind)
            if bucket is not None:
                bucket.append(name)
    return grouped


async def fetch_outbox(
    project_key: str,
    agent_name: str,
    *,
    limit: int = 20,
    include_bodies: bool = False,
) -> list[dict[str, Any]]:
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name, include_inactive=True)
    async with get_session() as session:
        result = await session.execute(
            select(Message)
            .where(Message.project_id == project.id, Message.sender_id == agent.id)
            .order_by(Message.id.desc())
            .limit(limit)
        )
        messages = list(result.scalars().all())
    recipients = await _recipient_names([m.id for m in messages if m.id is not None], include_bcc=True)
    items: list[dict[str, Any]] = []
    for message in messages:
        item = _message_to_dict(message, include_body=include_bodies)
        item["from"] = agent.name
        item.update(recipients.get(message.id or 0, {}))
        items.append(item)
    return items


async def get_message(project_key: str, message_id: int) -> dict[str, Any]:
    project = await get_project(project_key)
    message = await _load_message(project, message_id)
    async with get_session() as session:
        sender = await session.get(Agent, message.sender_id)
    item = _message_to_dict(message)
    item["from"] = sender.name if sender else None
    item.update((await _recipient_names([message_id], include_bcc=False))[message_id])
    return item


async def get_thread(project_key: str, thread_id: str, *, include_bodies: bool = True) -> list[dict[str, Any]]:
    """All messages of a thread in id order, including the root whose id is the thread key."""
    key = (thread_id or "").strip()
    if not validate_thread_id_format(key):
        raise ValidationError(f"Invalid thread_id '{thread_id}'.", data={"parameter": "thread_id", "provided": thread_id})
    project = await get_project(project_key)
    conditions = [Message.thread_id == key]
    if key.isdigit():
        conditions.append(Message.id == int(key))
    async with get_session() as session:
        result = await session.execute(
            select(Message, Agent.name)
            .join(Agent, Message.sender_id == Agent.id)
            .where(Message.project_id == project.id, or_(*conditions))
            .order_by(Message.id)
        )
        rows = result.all()
    recipients = await _recipient_names([m.id for m, _ in rows if m.id is not None], include_bcc=False)
    items: list[dict[str, Any]] = []
    for message, sender_name in rows:
        item = _message_to_dict(message, include_body=include_bodies)
        item["from"] = sender_name
        item.update(recipients.get(message.id or 0, {}))
        items.append(item)
    return items


@retry_on_db_lock()
async def _stamp_receipt(message_id: int, agent: Agent, *, acknowledge: bool) -> tuple[Optional[MessageRecipient], bool]:
    """Set read_ts (and ack_ts) only where still null; returns the row and whether anything changed."""
    now = naive_utc()
    changed = False
    async with get_session() as session:
        exists = await session.get(MessageRecipient, (message_id, agent.id))
        if exists is None:
            return None, False
        read_update = await session.execute(
            update(MessageRecipient)
            .where(
                MessageRecipient.message_id == message_id,
                MessageRecipient.agent_id == agent.id,
                MessageRecipient.read_ts.is_(None),
            )
            .values(read_ts=now)
        )
        changed = read_update.rowcount > 0
        if acknowledge:
            ack_update = await session.execute(
                update(MessageRecipient)
                .where(
                    MessageRecipient.message_id == message_id,
                    MessageRecipient.agent_id == agent.id,
                    MessageRecipient.ack_ts.is_(None),
                )
                .values(ack_ts=now)
            )
            changed = changed or ack_update.rowcount > 0
        await session.commit()
    async with get_session() as session:
        recipient = await session.get(MessageRecipient, (message_id, agent.id))
    return recipient, changed


async def _record_receipt(project_key: str, agent_name: str, message_id: int, *, acknowledge: bool) -> ReceiptResult:
    project = await get_project(project_key)
    agent = await get_agent(project, agent_name, include_inactive=True)
    await _load_message(project, message_id)
    recipient, changed = await _stamp_receipt(message_id, agent, acknowledge=acknowledge)
    if recipient is None:
        raise NotFound(
            f"Agent '{agent.name}' is not a recipient of message {message_id}.",
            data={"message_id": message_id, "agent": agent.name},
        )
    result = ReceiptResult(
        message_id=message_id,
        agent=agent.name,
        read_ts=iso(recipient.read_ts),
        ack_ts=iso(recipient.ack_ts),
        changed=changed,
    )
    if not changed:
        return result
    receipt = {"message_id": message_id, "agent": agent.name, "read_ts": result.read_ts, "ack_ts": result.ack_ts}

    async def _writer(project_lock: ProjectLock) -> None:
        await write_receipt(project_lock, agent.name, message_id, receipt)

    action = "ack" if acknowledge else "read"
    result.mirror = await mirror_to_archive(
        get_settings(),
        project.slug,
        _writer,
        f"receipt: {agent.name} {action} #{message_id}",
        attempts=1,
        label="receipt",
    )
    return result


async def mark_read(project_key: str, agent_name: str, message_id: int) -> ReceiptResult:
    """Stamp read_ts once; repeated calls keep the first timestamp."""
    return await _record_receipt(project_key, agent_name, message_id, acknowledge=False)


async def acknowledge(project_key: str, agent_name: str, message_id: int) -> ReceiptResult:
    """Stamp ack_ts (and read_ts if unset) once."""
    return await _record_receipt(project_key, agent_name, message_id, acknowledge=True)
