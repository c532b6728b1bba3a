import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.relay.chat_log import ChatEntry, ChatLog


def _client(stored=None):
    client = MagicMock()
    client.pipe = MagicMock()
    client.pipe.execute = AsyncMock(return_value=[1, True])
    client.pipeline.return_value = client.pipe
    client.lrange = AsyncMock(return_value=stored or [])
    return client


def test_push_appends_and_caps_list_in_one_transaction():
    client = _client()
    log = ChatLog(client, max_entries=100)
    asyncio.run(log.push("u1", "user", "hello"))
    client.pipeline.assert_called_once_with(transaction=True)
    client.pipe.rpush.assert_called_once_with("chat:u1", json.dumps({"role": "user", "message": "hello"}))
    client.pipe.ltrim.assert_called_once_with("chat:u1", -100, -1)
    client.pipe.execute.assert_awaited_once()


def test_push_rejects_unknown_role():
    with pytest.raises(ValueError):
        asyncio.run(ChatLog(_client()).push("u1", "system", "x"))


def test_recent_reads_newest_entries_oldest_first():
    stored = [json.dumps({"role": "user", "message": "hi"}), json.dumps({"role": "ai", "message": "hey."})]
    client = _client(stored)
    entries = asyncio.run(ChatLog(client).recent("u1", 5))
    client.lrange.assert_awaited_once_with("chat:u1", -5, -1)
    assert entries == [ChatEntry("user", "hi"), ChatEntry("ai", "hey.")]
    assert entries[1].as_context_line() == "ai: hey."


def test_recent_without_limit_reads_everything():
    client = _client()
    asyncio.run(ChatLog(client).recent("u1"))
    client.lrange.assert_awaited_once_with("chat:u1", 0, -1)


def test_recent_skips_malformed_entries():
    client = _client(["{bad json", json.dumps({"role": "user"}), json.dumps({"role": "ai", "message": "ok"})])
    assert asyncio.run(ChatLog(client).recent("u1")) == [ChatEntry("ai", "ok")]


def test_ping_reports_unreachable_server():
    client = _client()
    client.ping = AsyncMock(side_effect=ConnectionError("refused"))
    assert asyncio.run(ChatLog(client).ping()) is False
