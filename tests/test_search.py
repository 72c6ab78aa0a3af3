"""Full-text search over messages, query repair and the LIKE fallback."""

from __future__ import annotations

import logging

import pytest

from agent_mail_core.delivery import search_messages, send_message
from agent_mail_core.errors import ValidationError
from agent_mail_core.identity import ensure_project, register_agent
from agent_mail_core.search import extract_like_terms, like_escape, quote_hyphenated_tokens, sanitize_fts_query

PROJECT = "/work/backend"


async def _seed() -> dict[str, int]:
    await ensure_project(PROJECT)
    for name in ("GreenLake", "BlueLake", "RedStone"):
        await register_agent(PROJECT, name, program="codex", model="gpt-5", contact_policy="open")
    ids = {}
    ids["deploy"] = (await send_message(PROJECT, "GreenLake", ["BlueLake"], "Deploy plan", "Rolling deploy of the API tonight.")).message_id
    ids["ticket"] = (
        await send_message(PROJECT, "BlueLake", ["RedStone"], "Ticket", "Working on POL-358 today.", thread_id="POL-358")
    ).message_id
    ids["lunch"] = (await send_message(PROJECT, "RedStone", ["GreenLake"], "Lunch", "Pizza at noon?")).message_id
    return ids


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("", None),
        ("*", None),
        ("...", None),
        ("AND", None),
        ("*deploy", "deploy"),
        ("deploy *", "deploy"),
        ("deploy*", "deploy*"),
        ("fix  POL-358", 'fix "POL-358"'),
        ('"already-quoted"', '"already-quoted"'),
    ],
)
def test_sanitize_fts_query(query, expected):
    assert sanitize_fts_query(query) == expected


def test_like_helpers():
    assert like_escape("100%_done\\") == "100\\%\\_done\\\\"
    assert extract_like_terms("deploy AND api OR x") == ["deploy", "api"]
    assert quote_hyphenated_tokens("no hyphen") == "no hyphen"


@pytest.mark.asyncio
async def test_search_finds_subject_and_body(isolated_env):
    ids = await _seed()
    hits = await search_messages("deploy", project_key=PROJECT)
    assert [h["id"] for h in hits] == [ids["deploy"]]
    assert hits[0]["from"] == "GreenLake"
    assert hits[0]["subject"] == "Deploy plan"
    assert await search_messages("pizza") != []
    assert await search_messages("kubernetes", project_key=PROJECT) == []


@pytest.mark.asyncio
async def test_search_hyphenated_ticket_id(isolated_env):
    ids = await _seed()
    hits = await search_messages("POL-358", project_key=PROJECT)
    assert [h["id"] for h in hits] == [ids["ticket"]]
    assert hits[0]["thread_id"] == "POL-358"


@pytest.mark.asyncio
async def test_unsearchable_query_returns_nothing(isolated_env):
    await _seed()
    assert await search_messages("*", project_key=PROJECT) == []
    assert await search_messages("   ") == []


@pytest.mark.asyncio
async def test_invalid_fts_syntax_falls_back_to_like(isolated_env, caplog):
    caplog.set_level(logging.WARNING, logger="agent_mail_core.search")
    ids = await _seed()
    hits = await search_messages("deploy AND", project_key=PROJECT)
    assert [h["id"] for h in hits] == [ids["deploy"]]
    assert any(record.getMessage() == "search.fts_fallback" for record in caplog.records)


@pytest.mark.asyncio
async def test_agent_and_thread_filters(isolated_env):
    ids = await _seed()
    with pytest.raises(ValidationError):
        await search_messages("deploy", agent_name="GreenLake")
    with pytest.raises(ValidationError):
        await search_messages("deploy", limit=0)

    # RedStone neither sent nor received the deploy message.
    assert await search_messages("deploy", project_key=PROJECT, agent_name="RedStone") == []
    received = await search_messages("deploy", project_key=PROJECT, agent_name="BlueLake")
    assert [h["id"] for h in received] == [ids["deploy"]]

    threaded = await search_messages("today", project_key=PROJECT, thread_id="POL-358")
    assert [h["id"] for h in threaded] == [ids["ticket"]]
    assert await search_messages("deploy", project_key=PROJECT, thread_id="POL-358") == []
    by_own_id = await search_messages("pizza", project_key=PROJECT, thread_id=str(ids["lunch"]))
    assert [h["id"] for h in by_own_id] == [ids["lunch"]]
