from __future__ import annotations

import re
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from baymax.service.errors import BadRequestError, PayloadTooLargeError

# Caps on client-recorded history so one POST cannot flood the store
MAX_RECORDED_MESSAGES = 50

_WHITESPACE_RUN = re.compile(r"\s+")
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def sanitize_message(value: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return _WHITESPACE_RUN.sub(" ", value).strip()


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{location}: {message}" if location else message


def validate_session_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not _SESSION_ID_PATTERN.match(value):
        raise BadRequestError("Invalid sessionId")
    return value


class ChatRequest(BaseModel):
    """A validated chat turn; built with :meth:`from_body` rather than by FastAPI."""

    user_message: str
    sanitized: str
    session_id: Optional[str] = None

    @classmethod
    def from_body(cls, body: dict, *, max_chars: int) -> "ChatRequest":
        raw = body.get("userMessage")
        user_message = raw.strip() if isinstance(raw, str) else ""
        if not user_message:
            raise BadRequestError("Missing userMessage")
        if len(user_message) > max_chars:
            raise PayloadTooLargeError("userMessage too long")
        return cls(
            user_message=user_message,
            sanitized=sanitize_message(user_message),
            session_id=validate_session_id(body.get("sessionId")),
        )


class CredentialsRequest(BaseModel):
    username: str = Field(..., pattern=r"^[A-Za-z0-9_-]{3,64}$")
    password: str = Field(..., min_length=8, max_length=256)

    @classmethod
    def from_body(cls, body: dict) -> "CredentialsRequest":
        try:
            return cls.model_validate(body)
        except ValidationError as exc:
            raise BadRequestError(_first_error(exc)) from exc


class RecordedMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class HistoryRecordRequest(BaseModel):
    messages: List[RecordedMessage] = Field(..., min_length=1, max_length=MAX_RECORDED_MESSAGES)
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("session_id")
    @classmethod
    def _check_session_id(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _SESSION_ID_PATTERN.match(value):
            raise ValueError("invalid sessionId")
        return value

    @classmethod
    def from_body(cls, body: dict, *, max_chars: int) -> "HistoryRecordRequest":
        try:
            request = cls.model_validate(body)
        except ValidationError as exc:
            raise BadRequestError(_first_error(exc)) from exc
        for message in request.messages:
            if len(message.content) > max_chars:
                raise PayloadTooLargeError("message content too long")
        return request


# ============================================================================
# RESPONSE ENVELOPE
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TurnInput(_CamelModel):
    original: str
    sanitized: str
    embeddings: List[dict] = Field(default_factory=list)


class TurnOutput(_CamelModel):
    raw: str
    refined: str
    choices: Optional[List[Any]] = None


class TurnMetrics(_CamelModel):
    latency: int
    history_length: int = Field(..., alias="historyLength")
    hallucination_detected: bool = Field(default=False, alias="hallucinationDetected")


class NonSensitive(_CamelModel):
    context: str
    metrics: TurnMetrics


class UserInfo(_CamelModel):
    id: str
    email: Optional[str] = None
    username: Optional[str] = None


class ChatTurnResponse(_CamelModel):
    input: TurnInput
    output: TurnOutput
    non_sensitive: NonSensitive = Field(..., alias="nonSensitive")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    user: Optional[UserInfo] = None

    def to_json(self) -> dict:
        # choices stays in the payload even when the upstream omitted it
        payload = self.model_dump(by_alias=True, exclude_none=True)
        payload["output"].setdefault("choices", None)
        return payload


class ErrorEnvelope(_CamelModel):
    error: str
    code: Optional[str] = None
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    upstream_status: Optional[int] = Field(default=None, alias="upstreamStatus")
    detail: Optional[str] = None

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
