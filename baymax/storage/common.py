"""Storage contract shared by the Redis and in-memory backends.

Both backends expose the same async surface so the services above them
never branch on the backend in use.
"""

from __future__ import annotations

from typing import Optional, Protocol


# ============================================================================
# KEY LAYOUT
# ============================================================================

def history_key(subject: str) -> str:
    return f"chat:history:{subject}"


def owner_key(session_id: str) -> str:
    return f"chat:owner:{session_id}"


def password_key(username: str) -> str:
    return f"auth:password:{username}"


def login_attempts_key(username: str) -> str:
    return f"auth:login:attempts:{username}"


def login_lockout_key(username: str) -> str:
    return f"auth:login:lockout:{username}"


# ============================================================================
# BACKEND PROTOCOL
# ============================================================================

class ChatStore(Protocol):
    def verify_connection(self) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None: ...

    async def set_if_absent(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> bool: ...

    async def delete(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def check_login_lockout(self, username: str) -> bool: ...

    async def record_login_failure(
        self, username: str, *, max_attempts: int, window_seconds: int, lockout_seconds: int
    ) -> tuple[bool, int]: ...

    async def clear_login_failures(self, username: str) -> None: ...

    async def close(self) -> None: ...
