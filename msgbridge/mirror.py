"""
Mirror system (helpdesk) client.

The reconciliation engine only depends on the MirrorClient protocol below.
ChatwootClient implements it against the Chatwoot application API; a new
helpdesk product only needs another implementation plus a webhook parser.
"""

import logging
import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from .db.models import BridgePolicy, Chat, ContentType, Message, MessageDirection
from .errors import MirrorAuthError, MirrorError
from .events import MirrorMessageEvent

logger = logging.getLogger(__name__)


@dataclass
class MirrorContent:
    """What gets written into the mirror conversation for one local message."""

    text: str | None
    incoming: bool
    attachment_url: str | None = None
    attachment_name: str | None = None

    @classmethod
    def from_message(cls, message: Message, chat: Chat) -> "MirrorContent":
        text = message.text
        if message.content_type is ContentType.MEDIA and not text:
            text = message.media_filename or message.media_url
        # Group messages from others carry the author, the conversation is the group
        if chat.is_group and message.direction is MessageDirection.FROM_OTHER:
            author = message.sender_name or message.sender_address
            if author:
                text = f"**{author}:**\n{text or ''}"
        return cls(
            text=text,
            incoming=message.direction is MessageDirection.FROM_OTHER,
            attachment_url=message.media_url,
            attachment_name=message.media_filename,
        )


class MirrorClient(Protocol):
    async def resolve_conversation(self, chat: Chat) -> str:
        """Find or create the mirror conversation for a chat, return its id."""
        ...

    async def create_message(self, conversation_id: str, content: MirrorContent, metadata: dict) -> str:
        """Create a message carrying ``metadata`` (echo_id, source_id), return its id."""
        ...

    async def update_message(self, conversation_id: str, message_id: str, content: MirrorContent) -> None:
        ...

    async def close(self) -> None:
        ...


def _phone_number(address: str) -> str | None:
    user = address.split("@", 1)[0]
    if address.endswith("@g.us") or not user.lstrip("+").isdigit():
        return None
    return "+" + user.lstrip("+")


# **bold** or *italic*, tried in that order so bold is not read as italic
_EMPHASIS = re.compile(r"\*\*([^*]+)\*\*|\*([^*]+)\*")
_STRIKE = re.compile(r"~~([^~]+)~~")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")


def _emphasis(match: re.Match) -> str:
    if match.group(1) is not None:
        return f"*{match.group(1)}*"
    return f"_{match.group(2)}_"


def format_reply(text: str | None, policy: BridgePolicy) -> str | None:
    """
    Agent reply text as the platform should show it.

    Helpdesk Markdown becomes platform formatting (**bold** -> *bold*,
    *italic* -> _italic_, ~~strike~~ -> ~strike~, [label](url) -> label (url)),
    then the session's signature is appended if signing is on.
    """
    if not text:
        return text
    text = _EMPHASIS.sub(_emphasis, text)
    text = _STRIKE.sub(r"~\1~", text)
    text = _LINK.sub(r"\1 (\2)", text)
    if policy.sign_messages and policy.sign_delimiter:
        text = f"{text}{policy.sign_delimiter}"
    return text


class ChatwootClient:
    """
    Chatwoot application API client for one session's inbox.

    All requests go to {mirror_url}/api/v1/accounts/{account_id} with the
    api_access_token header. 401/403 raise MirrorAuthError, anything else
    that is not a 2xx (and every transport error) raises MirrorError.
    """

    def __init__(
        self,
        base_url: str,
        account_id: str,
        inbox_id: str,
        token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        reopen_conversation: bool = False,
        conversation_pending: bool = True,
    ):
        self.account_id = str(account_id)
        self.inbox_id = str(inbox_id)
        self.reopen_conversation = reopen_conversation
        self.conversation_pending = conversation_pending
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/api/v1/accounts/{self.account_id}",
            headers={"api_access_token": token},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_policy(
        cls, policy: BridgePolicy, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None
    ) -> "ChatwootClient":
        missing = [
            name
            for name in ("mirror_url", "mirror_account_id", "mirror_inbox_id", "mirror_token")
            if not getattr(policy, name)
        ]
        if missing:
            raise MirrorAuthError(f"session {policy.session_id} has no {', '.join(missing)} configured")
        return cls(
            policy.mirror_url,
            policy.mirror_account_id,
            policy.mirror_inbox_id,
            policy.mirror_token,
            timeout=timeout,
            transport=transport,
            reopen_conversation=bool(policy.reopen_conversation),
            conversation_pending=policy.conversation_pending is not False,
        )

    async def _request(self, method: str, path: str, **kwargs):
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise MirrorError(f"{method} {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise MirrorError(f"{method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise MirrorAuthError(f"{method} {path} rejected with HTTP {response.status_code}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError:
            raise MirrorError(f"{method} {path}: HTTP {response.status_code} {response.text[:200]}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MirrorError(f"{method} {path}: response is not JSON") from e

    @staticmethod
    def _payload(body):
        if isinstance(body, dict) and "payload" in body:
            return body["payload"]
        return body

    async def _find_contact(self, chat: Chat) -> dict | None:
        body = await self._request("GET", "/contacts/search", params={"q": chat.address})
        for contact in self._payload(body) or []:
            if contact.get("identifier") == chat.address:
                return contact
        phone = _phone_number(chat.address)
        if phone:
            body = await self._request("GET", "/contacts/search", params={"q": phone.lstrip("+")})
            for contact in self._payload(body) or []:
                if contact.get("phone_number") == phone:
                    return contact
        return None

    async def _create_contact(self, chat: Chat) -> dict:
        data = {
            "inbox_id": int(self.inbox_id),
            "name": chat.name or chat.address.split("@", 1)[0],
            "identifier": chat.address,
        }
        phone = _phone_number(chat.address)
        if phone:
            data["phone_number"] = phone
        body = await self._request("POST", "/contacts", json=data)
        payload = self._payload(body) or {}
        contact = payload.get("contact", payload)
        logger.info(f"Created mirror contact {contact.get('id')} for {chat.address}")
        return contact

    async def resolve_conversation(self, chat: Chat) -> str:
        """
        Reuse the contact's conversation in our inbox, or open a new one.

        Resolved conversations are only reused with reopen_conversation; new
        ones are opened as pending when conversation_pending is set.
        """
        contact = await self._find_contact(chat) or await self._create_contact(chat)
        contact_id = contact.get("id")
        if contact_id is None:
            raise MirrorError(f"mirror returned a contact without id for {chat.address}")

        body = await self._request("GET", f"/contacts/{contact_id}/conversations")
        for conversation in self._payload(body) or []:
            if str(conversation.get("inbox_id")) != self.inbox_id:
                continue
            if conversation.get("status") != "resolved" or self.reopen_conversation:
                return str(conversation["id"])

        data = {"contact_id": contact_id, "inbox_id": int(self.inbox_id)}
        if self.conversation_pending:
            data["status"] = "pending"
        body = await self._request("POST", "/conversations", json=data)
        if not body or "id" not in body:
            raise MirrorError(f"mirror did not return a conversation id for {chat.address}")
        logger.info(f"Opened mirror conversation {body['id']} for {chat.address}")
        return str(body["id"])

    async def create_message(self, conversation_id: str, content: MirrorContent, metadata: dict) -> str:
        text = content.text or ""
        if content.attachment_url and content.attachment_url not in text:
            text = f"{text}\n{content.attachment_url}".strip()
        data = {
            "content": text,
            "message_type": "incoming" if content.incoming else "outgoing",
            "private": False,
            "content_attributes": {"echo_id": metadata.get("echo_id")},
        }
        if metadata.get("source_id"):
            data["source_id"] = metadata["source_id"]
        if metadata.get("echo_id"):
            data["echo_id"] = metadata["echo_id"]

        body = await self._request("POST", f"/conversations/{conversation_id}/messages", json=data)
        if not body or "id" not in body:
            raise MirrorError(f"mirror did not return a message id in conversation {conversation_id}")
        return str(body["id"])

    async def update_message(self, conversation_id: str, message_id: str, content: MirrorContent) -> None:
        await self._request(
            "PATCH",
            f"/conversations/{conversation_id}/messages/{message_id}",
            json={"content": content.text or ""},
        )

    async def close(self) -> None:
        await self._client.aclose()


def parse_webhook(session_id: str, payload: dict) -> MirrorMessageEvent | None:
    """
    Turn a Chatwoot webhook body into a MirrorMessageEvent.

    Only agent replies (message_created, outgoing, not private) are relayed;
    everything else returns None.

    Raises:
        DecodeError: if a relayable event is malformed
    """
    if payload.get("event") != "message_created":
        return None
    if payload.get("message_type") not in ("outgoing", 1):
        return None
    if payload.get("private"):
        return None

    conversation = payload.get("conversation") or {}
    attributes = payload.get("content_attributes") or {}
    sender = (conversation.get("meta") or {}).get("sender") or {}
    attachments = payload.get("attachments") or []
    attachment = attachments[0] if attachments else {}

    return MirrorMessageEvent.from_payload(
        session_id,
        {
            "conversation_id": conversation.get("id") or payload.get("conversation_id"),
            "message_id": payload.get("id"),
            "content": payload.get("content"),
            "metadata": {
                "echo_id": payload.get("echo_id") or attributes.get("echo_id"),
                "source_id": payload.get("source_id"),
            },
            "chat": sender.get("identifier"),
            "sender_name": (payload.get("sender") or {}).get("name"),
            "attachment_url": attachment.get("data_url"),
            "attachment_type": attachment.get("file_type"),
            "timestamp": payload.get("created_at"),
        },
    )
