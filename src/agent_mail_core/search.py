"""Full-text search over message subjects and bodies (SQLite FTS5, bm25 ranked)."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .db import ensure_schema, get_session
from .errors import ValidationError
from .identity import get_agent, get_project
from .utils import iso, parse_iso

_logger = logging.getLogger(__name__)

# Patterns that are unsearchable in FTS5; they produce no results.
_FTS5_UNSEARCHABLE_PATTERNS = frozenset({"*", "**", "***", ".", "..", "...", "?", "??", "???", ""})
_LIKE_FALLBACK_TOKEN_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._/-]{0,63}")
_LIKE_FALLBACK_STOPWORDS = frozenset({"AND", "OR", "NOT", "NEAR"})

# Hyphenated tokens (POL-358, foo-bar-baz) not already inside quotes.
_FTS5_HYPHENATED_TOKEN_RE = re.compile(r"(?<!\")([A-Za-z0-9]+(?:-[A-Za-z0-9]+)+)(?!\")")


def quote_hyphenated_tokens(query: str) -> str:
    """Quote hyphenated tokens so FTS5 treats the hyphen literally.

    >>> quote_hyphenated_tokens("search for FEAT-123 and bd-42")
    'search for "FEAT-123" and "bd-42"'
    >>> quote_hyphenated_tokens('"already-quoted"')
    '"already-quoted"'
    """
    if not query or "-" not in query:
        return query
    if query.startswith('"') and query.endswith('"') and query.count('"') == 2:
        return query
    return _FTS5_HYPHENATED_TOKEN_RE.sub(r'"\1"', query)


def like_escape(term: str) -> str:
    """Escape LIKE wildcards for literal substring matching."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def extract_like_terms(query: str, *, max_terms: int = 5) -> list[str]:
    if not query:
        return []
    terms: list[str] = []
    for token in _LIKE_FALLBACK_TOKEN_RE.findall(query):
        if len(token) < 2:
            continue
        if token.upper() in _LIKE_FALLBACK_STOPWORDS:
            continue
        if token not in terms:
            terms.append(token)
        if len(terms) >= max_terms:
            break
    return terms


def sanitize_fts_query(query: str) -> Optional[str]:
    """Repair common FTS5 mistakes; return None when the query cannot match anything.

    - leading bare ``*`` is stripped (``term*`` prefix patterns are kept)
    - a trailing lone ``*`` is dropped
    - bare wildcards, dots and boolean operators are unsearchable
    - hyphenated tokens are quoted (``POL-358`` would otherwise parse as a column filter)
    """
    if not query:
        return None
    trimmed = query.strip()
    if not trimmed or trimmed in _FTS5_UNSEARCHABLE_PATTERNS:
        return None
    if trimmed.upper() in {"AND", "OR", "NOT"}:
        return None
    if trimmed.startswith("*"):
        if len(trimmed) == 1:
            return None
        return sanitize_fts_query(trimmed[1:].lstrip())
    if trimmed.endswith(" *"):
        trimmed = trimmed[:-2].rstrip()
        if not trimmed:
            return None
    trimmed = re.sub(r" {2,}", " ", trimmed)
    trimmed = quote_hyphenated_tokens(trimmed)
    return trimmed or None


def _row_to_dict(row: Any) -> dict[str, Any]:
    created = row["created_ts"]
    return {
        "id": row["id"],
        "project_id": row["project_id"],
        "thread_id": row["thread_id"],
        "subject": row["subject"],
        "from": row["sender_name"],
        "importance": row["importance"],
        "ack_required": bool(row["ack_required"]),
        "created_ts": iso(parse_iso(created) if isinstance(created, str) else created),
    }


async def search_messages(
    query: str,
    *,
    project_key: Optional[str] = None,
    agent_name: Optional[str] = None,
    thread_id: Optional[str] = None,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """Search messages, best match first.

    ``agent_name`` requires ``project_key`` and keeps only messages the agent
    sent or received. Falls back to LIKE term matching when FTS5 rejects the
    query syntax.
    """
    if limit < 1:
        raise ValidationError(f"limit must be >= 1 (got {limit}).", data={"parameter": "limit", "provided": limit})
    if agent_name is not None and project_key is None:
        raise ValidationError("agent_name filter requires project_key.", data={"parameter": "agent_name"})
    sanitized = sanitize_fts_query(query)
    if sanitized is None:
        return []
    await ensure_schema()

    filters: list[str] = []
    params: dict[str, Any] = {"limit": limit}
    if project_key is not None:
        project = await get_project(project_key)
        filters.append("m.project_id = :project_id")
        params["project_id"] = project.id
        if agent_name is not None:
            agent = await get_agent(project, agent_name, include_inactive=True)
            filters.append(
                "(m.sender_id = :agent_id OR EXISTS ("
                "SELECT 1 FROM message_recipients r WHERE r.message_id = m.id AND r.agent_id = :agent_id))"
            )
            params["agent_id"] = agent.id
    if thread_id is not None:
        filters.append("COALESCE(m.thread_id, CAST(m.id AS TEXT)) = :thread_id")
        params["thread_id"] = thread_id.strip()
    extra_where = "".join(f" AND {clause}" for clause in filters)

    try:
        async with get_session() as session:
            result = await session.execute(
                text(
                    f"""
                    SELECT m.id, m.project_id, m.subject, m.importance, m.ack_required, m.created_ts,
                           m.thread_id, a.name AS sender_name
                    FROM fts_messages
                    JOIN messages m ON fts_messages.rowid = m.id
                    JOIN agents a ON m.sender_id = a.id
                    WHERE fts_messages MATCH :query{extra_where}
                    ORDER BY bm25(fts_messages) ASC, m.id DESC
                    LIMIT :limit
                    """
                ),
                {**params, "query": sanitized},
            )
            return [_row_to_dict(row) for row in result.mappings().all()]
    except OperationalError as fts_err:
        _logger.warning("search.fts_fallback", extra={"query": sanitized, "error": str(fts_err)[:200]})

    terms = extract_like_terms(query)
    if not terms:
        return []
    clauses = []
    for idx, term in enumerate(terms):
        key = f"t{idx}"
        params[key] = f"%{like_escape(term)}%"
        clauses.append(f"(m.subject LIKE :{key} ESCAPE '\\' OR m.body_md LIKE :{key} ESCAPE '\\')")
    where_clause = " AND ".join(clauses)
    async with get_session() as session:
        result = await session.execute(
            text(
                f"""
                SELECT m.id, m.project_id, m.subject, m.importance, m.ack_required, m.created_ts,
                       m.thread_id, a.name AS sender_name
                FROM messages m
                JOIN agents a ON m.sender_id = a.id
                WHERE {where_clause}{extra_where}
                ORDER BY m.id DESC
                LIMIT :limit
                """
            ),
            params,
        )
        return [_row_to_dict(row) for row in result.mappings().all()]
