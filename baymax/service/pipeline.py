from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from baymax.logging import get_logger
from baymax.service.auth import Identity
from baymax.service.context import AugmentedContext, ContextAugmenter
from baymax.service.errors import ServiceError
from baymax.service.history import HistoryStore, apply_retention
from baymax.service.llm import ModelClient, ModelReply
from baymax.storage.models import ChatMessage, assistant_message, user_message

logger = get_logger(__name__)


@dataclass
class TurnResult:
    original: str
    sanitized: str
    reply: ModelReply
    context: AugmentedContext
    history_length: int
    refresh_token: Optional[str] = None
    embeddings: List[Dict[str, Any]] = field(default_factory=list)


@contextmanager
def carry_refresh_token(identity: Identity) -> Iterator[None]:
    """Attach the identity's replacement token to any error raised in the block."""
    try:
        yield
    except ServiceError as exc:
        if exc.refresh_token is None:
            exc.refresh_token = identity.refresh_token
        raise


class ChatPipeline:
    """Runs one authenticated chat turn against history, search and the model."""

    def __init__(
        self,
        history: HistoryStore,
        augmenter: ContextAugmenter,
        model: ModelClient,
    ) -> None:
        self.history = history
        self.augmenter = augmenter
        self.model = model

    async def resolve_subject(self, identity: Identity, session_id: Optional[str] = None) -> str:
        """History subject for the request; claims client-named sessions on first use."""
        subject = self.history.subject_for(identity, session_id)
        if self.history.session_scoped:
            await self.history.claim_owner(subject, identity)
        return subject

    async def run_turn(
        self, identity: Identity, subject: str, original: str, sanitized: str
    ) -> TurnResult:
        history = await self.history.read(subject)
        history.append(user_message(sanitized))
        history = apply_retention(history, self.history.max_length)

        context = await self.augmenter.augment(sanitized)
        upstream: List[ChatMessage] = list(history)
        if context:
            # Search context goes to the model only, never into stored history
            upstream.insert(0, context.as_system_message())

        # Nothing is persisted if the model call raises
        reply = await self.model.complete(upstream)

        history.append(assistant_message(reply.refined))
        stored = await self.history.save(subject, history)
        logger.info(
            "chat_turn_completed",
            user_id=identity.user_id,
            history_length=len(stored),
            context_results=len(context.results),
            latency_ms=reply.latency_ms,
        )
        return TurnResult(
            original=original,
            sanitized=sanitized,
            reply=reply,
            context=context,
            history_length=len(stored),
            refresh_token=identity.refresh_token,
            embeddings=context.results,
        )
