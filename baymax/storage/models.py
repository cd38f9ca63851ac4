from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

ROLES = ("system", "user", "assistant")


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ChatMessage"]:
        """Build a message from stored JSON, or None when the entry is malformed."""
        if not isinstance(data, dict):
            return None
        role = data.get("role")
        content = data.get("content")
        if role not in ROLES or not isinstance(content, str):
            return None
        return cls(role=role, content=content)


def system_message(content: str) -> ChatMessage:
    return ChatMessage(role="system", content=content)


def user_message(content: str) -> ChatMessage:
    return ChatMessage(role="user", content=content)


def assistant_message(content: str) -> ChatMessage:
    return ChatMessage(role="assistant", content=content)


def dump_history(history: List[ChatMessage]) -> List[Dict[str, str]]:
    return [message.to_dict() for message in history]
