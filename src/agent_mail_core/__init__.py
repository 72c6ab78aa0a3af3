"""Coordination core for cooperating coding agents: identities, mail, file reservations and contacts."""

from __future__ import annotations

from .contacts import ContactPolicy, list_contacts, request_contact, respond_contact, set_contact_policy
from .delivery import (
    acknowledge,
    fetch_inbox,
    fetch_outbox,
    get_message,
    get_thread,
    mark_read,
    reply_message,
    search_messages,
    send_message,
)
from .errors import CoordinationError
from .identity import deactivate_agent, ensure_project, get_agent, get_project, list_agents, register_agent
from .mirror import Durability
from .reservations import list_reservations, release, release_all, renew, reserve, sweep_expired

__all__ = [
    "ContactPolicy",
    "CoordinationError",
    "Durability",
    "acknowledge",
    "deactivate_agent",
    "ensure_project",
    "fetch_inbox",
    "fetch_outbox",
    "get_agent",
    "get_message",
    "get_project",
    "get_thread",
    "list_agents",
    "list_contacts",
    "list_reservations",
    "mark_read",
    "register_agent",
    "release",
    "release_all",
    "renew",
    "reply_message",
    "request_contact",
    "reserve",
    "respond_contact",
    "search_messages",
    "send_message",
    "set_contact_policy",
    "sweep_expired",
]
