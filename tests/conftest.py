"""Shared fixtures: a file-backed SQLite database per test and fake collaborators."""

import itertools
import os
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
import pytest_asyncio

from msgbridge.config import Config
from msgbridge.db import DatabaseAdapter, DatabaseManager
from msgbridge.reconcile import ReconciliationEngine

T0 = datetime(2026, 10, 1, 12, 0, 0)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMirror:
    """In-memory mirror system. Message ids are handed out as cw-55, cw-56, ..."""

    def __init__(self, first_id: int = 55):
        self._ids = itertools.count(first_id)
        self.created = []  # (conversation_id, content, metadata, message_id)
        self.updated = []  # (conversation_id, message_id, content)
        self.resolved = []
        self.fail_with = None

    async def resolve_conversation(self, chat) -> str:
        if self.fail_with:
            raise self.fail_with
        self.resolved.append(chat.address)
        return "conv-1"

    async def create_message(self, conversation_id, content, metadata) -> str:
        if self.fail_with:
            raise self.fail_with
        message_id = f"cw-{next(self._ids)}"
        self.created.append((conversation_id, content, dict(metadata), message_id))
        return message_id

    async def update_message(self, conversation_id, message_id, content) -> None:
        if self.fail_with:
            raise self.fail_with
        self.updated.append((conversation_id, message_id, content))

    async def close(self) -> None:
        pass


class FakeGateway:
    """Session send primitive that records sends and returns wa-out-1, wa-out-2, ..."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.sent = []
        self.fail_with = None

    async def send(self, session_id, chat_address, text, attachment_url=None) -> str:
        if self.fail_with:
            raise self.fail_with
        self.sent.append((session_id, chat_address, text))
        return f"wa-out-{next(self._ids)}"

    async def close(self) -> None:
        pass


@pytest.fixture
def config():
    with patch.dict(os.environ, {}, clear=True):
        return Config()


@pytest_asyncio.fixture
async def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'bridge.db'}")
    await manager.init()
    adapter = DatabaseAdapter(manager)
    yield adapter
    await adapter.close()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def mirror():
    return FakeMirror()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def policy(db):
    return await db.policies.upsert("S1", enabled=True)


@pytest.fixture
def engine(db, config, mirror, gateway, clock):
    tokens = (f"ek-{n}" for n in itertools.count(1))
    return ReconciliationEngine(
        db,
        gateway,
        config,
        mirror_factory=lambda policy: mirror,
        token_factory=lambda: next(tokens),
        clock=clock,
    )


def local_payload(remote_id="wa-100", chat="+551199999@remote", text="hello", **extra) -> dict:
    payload = {"id": remote_id, "chat": chat, "text": text, "timestamp": "2026-10-01T12:00:00Z"}
    payload.update(extra)
    return payload


def mirror_payload(message_id="cw-56", conversation_id="conv-1", content="agent reply", **extra) -> dict:
    payload = {"conversation_id": conversation_id, "message_id": message_id, "content": content}
    payload.update(extra)
    return payload
