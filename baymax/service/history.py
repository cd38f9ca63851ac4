from __future__ import annotations

import json
from typing import List, Optional

from baymax.config import AuthMode, Settings
from baymax.logging import get_logger
from baymax.service.auth import Identity
from baymax.service.errors import ForbiddenError
from baymax.storage.common import ChatStore, history_key, owner_key
from baymax.storage.models import ChatMessage, dump_history, system_message

logger = get_logger(__name__)


def apply_retention(history: List[ChatMessage], max_length: int) -> List[ChatMessage]:
    """Cap ``history`` at ``max_length`` entries, keeping the leading system message.

    Only the first system message survives; later system entries are dropped
    and the oldest user/assistant entries are trimmed first.
    """
    system = next((m for m in history if m.role == "system"), None)
    rest = [m for m in history if m.role != "system"]
    if system is None:
        return rest[-max_length:] if max_length > 0 else []
    keep = max_length - 1
    return [system] + (rest[-keep:] if keep > 0 else [])


class HistoryStore:
    """Per-session conversation history kept as a JSON array in the chat store.

    Writes are a plain read-modify-write; two concurrent turns on the same
    session may drop one of the turns (last writer wins).
    """

    def __init__(self, store: ChatStore, settings: Settings) -> None:
        self.store = store
        self.max_length = settings.max_history
        self.ttl_seconds = settings.history_ttl_seconds
        self.system_prompt = settings.system_prompt
        self.session_scoped = settings.auth_mode == AuthMode.TOKEN

    def subject_for(self, identity: Identity, session_id: Optional[str] = None) -> str:
        """Storage subject for a request.

        Identity-bound unless sessions are client-named (token mode), where the
        request's ``sessionId`` wins and defaults to the token's own session.
        """
        if self.session_scoped:
            return session_id or identity.subject
        return identity.user_id

    def default_history(self) -> List[ChatMessage]:
        return [system_message(self.system_prompt)]

    async def read(self, subject: str) -> List[ChatMessage]:
        raw = await self.store.get(history_key(subject))
        if raw is None:
            return self.default_history()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("history_corrupt", subject=subject, reason="invalid_json")
            return self.default_history()
        if not isinstance(data, list):
            logger.warning("history_corrupt", subject=subject, reason="not_a_list")
            return self.default_history()
        messages = [ChatMessage.from_dict(item) for item in data]
        if any(message is None for message in messages):
            logger.warning("history_corrupt", subject=subject, reason="invalid_message")
            return self.default_history()
        return messages  # type: ignore[return-value]

    async def save(self, subject: str, history: List[ChatMessage]) -> List[ChatMessage]:
        retained = apply_retention(history, self.max_length)
        await self.store.set(
            history_key(subject),
            json.dumps(dump_history(retained)),
            ttl_seconds=self.ttl_seconds,
        )
        if self.session_scoped:
            await self.store.expire(owner_key(subject), self.ttl_seconds)
        return retained

    async def append(self, subject: str, *messages: ChatMessage) -> List[ChatMessage]:
        history = await self.read(subject)
        history.extend(messages)
        return await self.save(subject, history)

    async def clear(self, subject: str) -> None:
        removed = await self.store.delete(history_key(subject))
        logger.info("history_cleared", subject=subject, existed=bool(removed))

    async def reserve(self, session_id: str, owner_id: str) -> bool:
        """Tag an unclaimed session with ``owner_id``; False if already owned."""
        return await self.store.set_if_absent(
            owner_key(session_id), owner_id, ttl_seconds=self.ttl_seconds
        )

    async def claim_owner(self, session_id: str, identity: Identity) -> None:
        """Bind a client-named session to the first identity that touches it.

        Each use by the owner pushes the tag's expiry out again, so the tag
        never lapses while the session's history is still alive.
        """
        key = owner_key(session_id)
        if await self.reserve(session_id, identity.user_id):
            return
        owner = await self.store.get(key)
        if owner is None:
            # Tag expired between the two calls
            if await self.reserve(session_id, identity.user_id):
                return
            owner = await self.store.get(key)
        if owner != identity.user_id:
            logger.warning("session_owner_mismatch", session_id=session_id)
            raise ForbiddenError("Session belongs to another client")
        await self.store.expire(key, self.ttl_seconds)
