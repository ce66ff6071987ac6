"""Tests for the HTTP API, driven in-process through httpx.ASGITransport."""

import httpx
import pytest
import pytest_asyncio
from conftest import local_payload

from msgbridge.bridge import Bridge
from msgbridge.errors import MirrorError
from msgbridge.notify import NullNotifier
from msgbridge.web.main import create_app

CHAT = "+551199999@remote"


@pytest_asyncio.fixture
async def bridge(config, db, engine, gateway, policy):
    bridge = Bridge(config, db, engine, gateway, NullNotifier())
    yield bridge
    # The db fixture closes the database
    await bridge.workers.stop()


@pytest_asyncio.fixture
async def client(bridge):
    app = create_app(bridge=bridge, run_scheduler=False)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://bridge") as client:
        yield client


def _webhook(**overrides):
    payload = {
        "event": "message_created",
        "message_type": "outgoing",
        "private": False,
        "id": 56,
        "content": "agent reply",
        "conversation": {"id": 42, "meta": {"sender": {"identifier": "+5511888@remote"}}},
    }
    payload.update(overrides)
    return payload


class TestEvents:
    @pytest.mark.asyncio
    async def test_session_event_is_mirrored(self, client, mirror):
        response = await client.post("/api/sessions/S1/events", json=local_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "created"
        assert body["mirror_message_id"] == "cw-55"
        assert len(mirror.created) == 1

    @pytest.mark.asyncio
    async def test_queued_event(self, client, bridge, mirror):
        response = await client.post("/api/sessions/S1/events?wait=false", json=local_payload())

        assert response.status_code == 202
        await bridge.workers.join("S1")
        assert len(mirror.created) == 1

    @pytest.mark.asyncio
    async def test_malformed_event_is_rejected_before_any_write(self, client, db):
        response = await client.post("/api/sessions/S1/events", json={"chat": CHAT, "text": "no id"})

        assert response.status_code == 422
        assert "id" in response.json()["detail"]
        assert await db.chats.get_chat("S1", CHAT) is None

    @pytest.mark.asyncio
    async def test_mirror_webhook_delivers_reply(self, client, gateway):
        response = await client.post("/api/sessions/S1/mirror/webhook", json=_webhook())

        assert response.status_code == 200
        assert response.json()["outcome"] == "created"
        assert gateway.sent == [("S1", "+5511888@remote", "agent reply")]

    @pytest.mark.asyncio
    async def test_mirror_webhook_ignores_other_events(self, client, gateway):
        response = await client.post("/api/sessions/S1/mirror/webhook", json=_webhook(message_type="incoming"))

        assert response.json() == {"outcome": "ignored"}
        assert gateway.sent == []


class TestApiKey:
    @pytest.mark.asyncio
    async def test_key_required_when_configured(self, client, config):
        config.api_key = "s3cret"

        assert (await client.get("/api/sessions/S1/chats")).status_code == 401
        assert (await client.get("/api/sessions/S1/chats", headers={"X-API-Key": "s3cret"})).status_code == 200
        assert (await client.get("/api/sessions/S1/chats?api_key=s3cret")).status_code == 200

    @pytest.mark.asyncio
    async def test_wrong_or_partial_key_rejected(self, client, config):
        config.api_key = "s3cret"

        for headers in ({"X-API-Key": "s3cre"}, {"X-API-Key": "s3cret2"}, {"X-API-Key": ""}):
            assert (await client.get("/api/sessions/S1/chats", headers=headers)).status_code == 401
        # A wrong header does not hide a correct query key
        response = await client.get("/api/sessions/S1/chats?api_key=s3cret", headers={"X-API-Key": "nope"})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_health_is_open(self, client, config):
        config.api_key = "s3cret"

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": True}


class TestChats:
    @pytest.mark.asyncio
    async def test_list_chats_and_messages(self, client):
        await client.post("/api/sessions/S1/events", json=local_payload())
        await client.post("/api/sessions/S1/events", json=local_payload(remote_id="wa-101", text="second"))

        chats = (await client.get("/api/sessions/S1/chats")).json()
        assert [c["address"] for c in chats] == [CHAT]
        assert chats[0]["unread_count"] == 2
        assert chats[0]["mirror_conversation_id"] == "conv-1"

        messages = (await client.get(f"/api/sessions/S1/chats/{CHAT}/messages")).json()
        assert {m["remote_message_id"] for m in messages} == {"wa-100", "wa-101"}

    @pytest.mark.asyncio
    async def test_unknown_chat(self, client):
        response = await client.get("/api/sessions/S1/chats/nobody@remote/messages")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_mark_read(self, client):
        await client.post("/api/sessions/S1/events", json=local_payload())

        response = await client.post(f"/api/sessions/S1/chats/{CHAT}/read")

        assert response.json() == {"marked": 1}
        chats = (await client.get("/api/sessions/S1/chats")).json()
        assert chats[0]["unread_count"] == 0

    @pytest.mark.asyncio
    async def test_delete_chat_cascades(self, client):
        await client.post("/api/sessions/S1/events", json=local_payload())

        response = await client.delete(f"/api/sessions/S1/chats/{CHAT}")

        assert response.json() == {"deleted": True}
        stats = (await client.get("/api/sessions/S1/stats")).json()
        assert stats["chats"] == 0
        assert stats["messages"] == 0
        assert stats["relations"] == 0


class TestRelations:
    @pytest.mark.asyncio
    async def test_failed_then_retried(self, client, mirror, clock):
        mirror.fail_with = MirrorError("HTTP 502")
        await client.post("/api/sessions/S1/events", json=local_payload())

        failed = (await client.get("/api/sessions/S1/relations/failed")).json()
        assert len(failed) == 1
        assert failed[0]["error_kind"] == "transient"
        assert failed[0]["retry_count"] == 1

        mirror.fail_with = None
        clock.advance(30)
        results = (await client.post("/api/sessions/S1/relations/retry")).json()

        assert [r["outcome"] for r in results] == ["created"]
        assert (await client.get("/api/sessions/S1/relations/failed")).json() == []

    @pytest.mark.asyncio
    async def test_stats_and_purge(self, client):
        await client.post("/api/sessions/S1/events", json=local_payload())

        stats = (await client.get("/api/sessions/S1/stats")).json()
        assert stats["relations_by_status"]["synced"] == 1
        assert stats["backlog"] == 0

        assert (await client.delete("/api/sessions/S1/relations")).json() == {"purged": 1}
        stats = (await client.get("/api/sessions/S1/stats")).json()
        assert stats["relations"] == 0
        assert stats["messages"] == 1


class TestPolicy:
    @pytest.mark.asyncio
    async def test_get_and_update(self, client):
        response = await client.put(
            "/api/sessions/S1/policy",
            json={"authority": "mirror", "excluded_addresses": ["@g.us"], "mirror_token": "tok"},
        )
        assert response.status_code == 200

        policy = (await client.get("/api/sessions/S1/policy")).json()
        assert policy["authority"] == "mirror"
        assert policy["excluded_addresses"] == ["@g.us"]
        assert policy["enabled"] is True
        assert "mirror_token" not in policy

    @pytest.mark.asyncio
    async def test_invalid_authority(self, client):
        response = await client.put("/api/sessions/S1/policy", json={"authority": "both"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_conversation_and_signature_settings(self, client):
        response = await client.put(
            "/api/sessions/S1/policy",
            json={"reopen_conversation": True, "conversation_pending": False, "sign_messages": True,
                  "sign_delimiter": "\n-- Support"},
        )

        policy = response.json()
        assert policy["reopen_conversation"] is True
        assert policy["conversation_pending"] is False
        assert policy["sign_messages"] is True
        assert policy["sign_delimiter"] == "\n-- Support"

    @pytest.mark.asyncio
    async def test_non_numeric_inbox_rejected(self, client):
        response = await client.put("/api/sessions/S1/policy", json={"mirror_inbox_id": "main"})
        assert response.status_code == 422
        assert (await client.get("/api/sessions/S1/policy")).json()["mirror_inbox_id"] is None

    @pytest.mark.asyncio
    async def test_missing_policy(self, client):
        assert (await client.get("/api/sessions/S9/policy")).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_policy_stops_mirroring(self, client, mirror):
        assert (await client.delete("/api/sessions/S1/policy")).json() == {"deleted": True}
        assert (await client.delete("/api/sessions/S1/policy")).status_code == 404

        response = await client.post("/api/sessions/S1/events", json=local_payload())

        assert response.json()["outcome"] == "skipped"
        assert mirror.created == []
