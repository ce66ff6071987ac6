"""
HTTP API of the bridge.

Session processes post their message events here, the mirror system posts
its webhooks here, and operators inspect chats, messages and failed
relations.
"""

import logging
import secrets
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..bridge import Bridge
from ..config import Config, setup_logging
from ..db.serializers import chat_to_dict, message_to_dict, policy_to_dict, relation_to_dict
from ..errors import ConflictError, InvalidTransitionError, ValidationError
from ..reconcile import ReconcileResult
from ..scheduler import RetryScheduler

logger = logging.getLogger(__name__)


class PolicyUpdate(BaseModel):
    enabled: bool | None = None
    excluded_addresses: list[str] | None = None
    auto_create_chat: bool | None = None
    import_history: bool | None = None
    history_window_days: int | None = None
    authority: str | None = None
    mirror_url: str | None = None
    mirror_account_id: str | None = None
    mirror_inbox_id: str | None = None
    mirror_token: str | None = None
    reopen_conversation: bool | None = None
    conversation_pending: bool | None = None
    sign_messages: bool | None = None
    sign_delimiter: str | None = None


def _result_to_dict(result: ReconcileResult | None) -> dict:
    if result is None:
        return {"outcome": "ignored"}
    return {
        "outcome": result.outcome.value,
        "message_id": result.message_id,
        "relation_id": result.relation_id,
        "mirror_message_id": result.mirror_message_id,
        "detail": result.detail,
    }


def get_bridge(request: Request) -> Bridge:
    return request.app.state.bridge


def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None),
    api_key: str | None = Query(default=None),
) -> None:
    """X-API-Key header, or ?api_key= for webhook senders that cannot set headers."""
    expected = request.app.state.config.api_key
    if not expected:
        return
    for candidate in (x_api_key, api_key):
        if candidate and secrets.compare_digest(candidate.encode(), expected.encode()):
            return
    raise HTTPException(status_code=401, detail="Invalid API key")


def create_app(bridge: Bridge | None = None, config: Config | None = None, run_scheduler: bool = True) -> FastAPI:
    """
    Build the FastAPI app.

    Without a bridge one is created from the environment on startup, along
    with the retry sweep scheduler, and both are shut down with the app.
    """
    config = config or (bridge.config if bridge else Config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.bridge is None
        if owned:
            setup_logging(config)
            app.state.bridge = await Bridge.create(config)
        scheduler = None
        if owned and run_scheduler:
            scheduler = RetryScheduler(config, app.state.bridge)
            scheduler.start()
        try:
            yield
        finally:
            if scheduler:
                scheduler.stop()
            if owned:
                await app.state.bridge.close()

    app = FastAPI(title="Message Bridge", lifespan=lifespan)
    app.state.bridge = bridge
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def transition_error(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_error(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/health")
    async def health(bridge: Bridge = Depends(get_bridge)):
        database = await bridge.db.db_manager.health_check()
        return JSONResponse(
            status_code=200 if database else 503,
            content={"status": "ok" if database else "degraded", "database": database},
        )

    api = [Depends(require_api_key)]

    @app.post("/api/sessions/{session_id}/events", dependencies=api)
    async def post_session_event(
        session_id: str, payload: dict, wait: bool = True, bridge: Bridge = Depends(get_bridge)
    ):
        """Message observed by a session (new, edited, deleted, status update)."""
        result = await bridge.submit_local(session_id, payload, wait=wait)
        if not wait:
            return JSONResponse(status_code=202, content={"queued": True})
        return _result_to_dict(result)

    @app.post("/api/sessions/{session_id}/mirror/webhook", dependencies=api)
    async def post_mirror_webhook(session_id: str, payload: dict, bridge: Bridge = Depends(get_bridge)):
        """Webhook of the mirror system's inbox for this session."""
        return _result_to_dict(await bridge.submit_mirror(session_id, payload))

    @app.get("/api/sessions/{session_id}/chats", dependencies=api)
    async def get_chats(
        session_id: str,
        include_archived: bool = False,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        bridge: Bridge = Depends(get_bridge),
    ):
        chats = await bridge.db.chats.list_chats(session_id, include_archived, limit, offset)
        return [chat_to_dict(c) for c in chats]

    async def _chat_or_404(bridge: Bridge, session_id: str, address: str):
        chat = await bridge.db.chats.get_chat(session_id, address)
        if chat is None:
            raise HTTPException(status_code=404, detail="Chat not found")
        return chat

    @app.get("/api/sessions/{session_id}/chats/{address}/messages", dependencies=api)
    async def get_messages(
        session_id: str,
        address: str,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        bridge: Bridge = Depends(get_bridge),
    ):
        """Messages of a chat, newest first."""
        chat = await _chat_or_404(bridge, session_id, address)
        messages = await bridge.db.messages.list_by_chat(chat.id, limit=limit, offset=offset)
        return [message_to_dict(m) for m in messages]

    @app.post("/api/sessions/{session_id}/chats/{address}/read", dependencies=api)
    async def mark_chat_read(session_id: str, address: str, bridge: Bridge = Depends(get_bridge)):
        chat = await _chat_or_404(bridge, session_id, address)
        return {"marked": await bridge.db.messages.mark_chat_read(chat.id)}

    @app.delete("/api/sessions/{session_id}/chats/{address}", dependencies=api)
    async def delete_chat(session_id: str, address: str, bridge: Bridge = Depends(get_bridge)):
        chat = await _chat_or_404(bridge, session_id, address)
        await bridge.db.chats.delete_chat(chat.id)
        return {"deleted": True}

    @app.get("/api/sessions/{session_id}/relations/failed", dependencies=api)
    async def get_failed_relations(
        session_id: str, limit: int = Query(100, ge=1, le=1000), bridge: Bridge = Depends(get_bridge)
    ):
        relations = await bridge.db.relations.list_failed(session_id, limit=limit)
        return [relation_to_dict(r) for r in relations]

    @app.post("/api/sessions/{session_id}/relations/retry", dependencies=api)
    async def retry_relations(
        session_id: str, batch: int | None = Query(None, ge=1, le=1000), bridge: Bridge = Depends(get_bridge)
    ):
        """Run the retry sweep for one session now."""
        results = await bridge.retry_session(session_id, batch)
        return [_result_to_dict(r) for r in results]

    @app.delete("/api/sessions/{session_id}/relations", dependencies=api)
    async def purge_relations(session_id: str, bridge: Bridge = Depends(get_bridge)):
        return {"purged": await bridge.db.relations.purge(session_id)}

    @app.get("/api/sessions/{session_id}/stats", dependencies=api)
    async def get_stats(session_id: str, bridge: Bridge = Depends(get_bridge)):
        stats = await bridge.db.get_statistics(session_id)
        stats["backlog"] = bridge.workers.backlog().get(session_id, 0)
        return stats

    @app.get("/api/sessions/{session_id}/policy", dependencies=api)
    async def get_policy(session_id: str, bridge: Bridge = Depends(get_bridge)):
        policy = await bridge.db.policies.get(session_id)
        if policy is None:
            raise HTTPException(status_code=404, detail="No policy for this session")
        return policy_to_dict(policy)

    @app.put("/api/sessions/{session_id}/policy", dependencies=api)
    async def put_policy(session_id: str, update: PolicyUpdate, bridge: Bridge = Depends(get_bridge)):
        settings = update.model_dump(exclude_none=True)
        policy = await bridge.db.policies.upsert(session_id, **settings)
        return policy_to_dict(policy)

    @app.delete("/api/sessions/{session_id}/policy", dependencies=api)
    async def delete_policy(session_id: str, bridge: Bridge = Depends(get_bridge)):
        """Stop mirroring the session. Stored chats, messages and relations stay."""
        if not await bridge.db.policies.delete(session_id):
            raise HTTPException(status_code=404, detail="No policy for this session")
        return {"deleted": True}

    return app
