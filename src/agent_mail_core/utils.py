"""Utility helpers shared by the coordination modules."""

from __future__ import annotations

import hashlib
import random
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

# Generated agent names are adjective+noun pairs such as "GreenLake".
ADJECTIVES: Iterable[str] = (
    "Red",
    "Orange",
    "Pink",
    "Black",
    "Purple",
    "Blue",
    "Brown",
    "White",
    "Green",
    "Amber",
    "Coral",
    "Crimson",
    "Cyan",
    "Gold",
    "Indigo",
    "Jade",
    "Silver",
    "Teal",
    "Violet",
    "Cobalt",
    "Copper",
    "Misty",
    "Frosty",
    "Sunny",
    "Swift",
    "Quiet",
    "Bold",
    "Calm",
    "Bright",
    "Wild",
)

NOUNS: Iterable[str] = (
    "Stone",
    "Lake",
    "Creek",
    "Pond",
    "Mountain",
    "Hill",
    "Castle",
    "River",
    "Forest",
    "Valley",
    "Canyon",
    "Meadow",
    "Island",
    "Glacier",
    "Ridge",
    "Harbor",
    "Fox",
    "Wolf",
    "Hawk",
    "Owl",
    "Otter",
    "Heron",
    "Lynx",
    "Tower",
    "Bridge",
    "Forge",
    "Mill",
    "Lantern",
    "Beacon",
    "Compass",
)

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_AGENT_NAME_RE = re.compile(r"[^A-Za-z0-9]+")
_THREAD_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def slugify(value: str) -> str:
    """Normalize a human-readable value into a slug."""
    normalized = value.strip().lower()
    slug = _SLUG_RE.sub("-", normalized).strip("-")
    return slug or "project"


def project_slug(human_key: str) -> str:
    """Stable storage slug for a project key: readable prefix plus a short digest.

    The digest keeps keys that slugify identically (``/a/b`` and ``a-b``) apart.
    """
    digest = hashlib.sha1(human_key.encode("utf-8")).hexdigest()[:10]
    return f"{slugify(human_key)[:80].strip('-') or 'project'}-{digest}"


def generate_agent_name() -> str:
    """Return a random adjective+noun combination."""
    adjective = random.choice(tuple(ADJECTIVES))
    noun = random.choice(tuple(NOUNS))
    return f"{adjective}{noun}"


def sanitize_agent_name(value: str) -> Optional[str]:
    """Normalize user-provided agent name; return None if nothing remains."""
    cleaned = _AGENT_NAME_RE.sub("", value.strip())
    if not cleaned:
        return None
    return cleaned[:128]


def validate_thread_id_format(thread_id: str) -> bool:
    """Validate that a thread_id is safe for filenames and indexing.

    Thread IDs double as file names for thread digests, so they are limited to
    ASCII alphanumerics plus '.', '_' and '-', must start with an alphanumeric
    character, and may be at most 128 characters long.
    """
    candidate = (thread_id or "").strip()
    if not candidate:
        return False
    return _THREAD_ID_RE.fullmatch(candidate) is not None


def naive_utc(dt: Optional[datetime] = None) -> datetime:
    """Return a naive UTC datetime for SQLite comparisons."""
    if dt is None:
        dt = datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return a timezone-aware UTC datetime."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Any) -> Optional[str]:
    """ISO-8601 in UTC; naive datetimes (as loaded from SQLite) are assumed to be UTC."""
    if dt is None:
        return None
    if isinstance(dt, datetime):
        aware = ensure_utc(dt)
        assert aware is not None
        return aware.isoformat()
    return str(dt)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed); None when empty or malformed."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None
