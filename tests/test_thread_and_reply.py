"""Replies inherit the thread; threads read back in order and are digested in the archive."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_mail_core.config import get_settings
from agent_mail_core.delivery import get_message, get_thread, reply_message, send_message
from agent_mail_core.errors import NotFound, ValidationError
from agent_mail_core.identity import ensure_project, register_agent

PROJECT = "/work/backend"


async def _setup() -> str:
    project = await ensure_project(PROJECT)
    await register_agent(PROJECT, "GreenLake", program="codex", model="gpt-5")
    await register_agent(PROJECT, "BlueLake", program="codex", model="gpt-5", contact_policy="open")
    return project.slug


@pytest.mark.asyncio
async def test_reply_to_unthreaded_message_uses_its_id(isolated_env):
    await _setup()
    root = await send_message(PROJECT, "GreenLake", ["BlueLake"], "Schema", "Adding a column.", importance="high", ack_required=True)
    # GreenLake is auto; the shared conversation admits the reply.
    reply = await reply_message(PROJECT, root.message_id, "BlueLake", "Sounds good.")

    assert reply.message["thread_id"] == str(root.message_id)
    assert reply.message["subject"] == "Re: Schema"
    assert reply.message["importance"] == "high"
    assert reply.message["ack_required"] is True
    assert reply.recipients == [{"name": "GreenLake", "kind": "to"}]

    second = await reply_message(PROJECT, reply.message_id, "GreenLake", "Merged.")
    assert second.message["subject"] == "Re: Schema"
    assert second.message["thread_id"] == str(root.message_id)

    thread = await get_thread(PROJECT, str(root.message_id))
    assert [m["id"] for m in thread] == [root.message_id, reply.message_id, second.message_id]
    assert [m["from"] for m in thread] == ["GreenLake", "BlueLake", "GreenLake"]
    assert thread[0]["body_md"] == "Adding a column."


@pytest.mark.asyncio
async def test_named_thread_is_digested_in_archive(isolated_env):
    slug = await _setup()
    first = await send_message(PROJECT, "GreenLake", ["BlueLake"], "Kickoff", "Starting FEAT-1.", thread_id="FEAT-1")
    await reply_message(PROJECT, first.message_id, "BlueLake", "On it.")

    digest = Path(get_settings().storage.root).expanduser().resolve() / "projects" / slug / "messages" / "threads" / "FEAT-1.md"
    text = digest.read_text(encoding="utf-8")
    assert text.startswith("# Thread FEAT-1")
    assert text.count("<!-- message:") == 2
    assert "### Kickoff" in text
    assert "### Re: Kickoff" in text

    thread = await get_thread(PROJECT, "FEAT-1", include_bodies=False)
    assert len(thread) == 2
    assert "body_md" not in thread[0]
    assert thread[1]["to"] == ["GreenLake"]


@pytest.mark.asyncio
async def test_reply_can_override_recipients(isolated_env):
    await _setup()
    await register_agent(PROJECT, "RedStone", program="codex", model="gpt-5", contact_policy="open")
    root = await send_message(PROJECT, "GreenLake", ["BlueLake"], "Design", "Draft attached.")
    reply = await reply_message(PROJECT, root.message_id, "GreenLake", "Looping in RedStone.", to=["RedStone"], cc=["BlueLake"])
    message = await get_message(PROJECT, reply.message_id)
    assert message["to"] == ["RedStone"]
    assert message["cc"] == ["BlueLake"]


@pytest.mark.asyncio
async def test_thread_and_reply_errors(isolated_env):
    await _setup()
    with pytest.raises(NotFound):
        await reply_message(PROJECT, 4242, "BlueLake", "hello?")
    with pytest.raises(ValidationError):
        await get_thread(PROJECT, "../escape")
    assert await get_thread(PROJECT, "NOPE-1") == []
    with pytest.raises(NotFound):
        await get_message(PROJECT, 4242)
