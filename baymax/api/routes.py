from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query

from baymax.api.guard import read_json_body, read_optional_json_body
from baymax.api.schemas import (
    ChatRequest,
    ChatTurnResponse,
    CredentialsRequest,
    HistoryRecordRequest,
    NonSensitive,
    TurnInput,
    TurnMetrics,
    TurnOutput,
    UserInfo,
    validate_session_id,
)
from baymax.config import AuthMode
from baymax.logging import get_logger
from baymax.service.auth import Identity, IssuedToken, extract_bearer
from baymax.service.errors import AuthenticationError, ForbiddenError, NotFoundError
from baymax.service.pipeline import carry_refresh_token
from baymax.service.runtime import get_runtime
from baymax.storage.models import ChatMessage, dump_history

logger = get_logger(__name__)

router = APIRouter()


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Unauthorized: missing token")
    return await get_runtime().verifier.verify(token)


def _require_mode(mode: AuthMode) -> None:
    # Routes of other credential strategies do not exist for this deployment
    if get_runtime().auth_mode != mode:
        raise NotFoundError("Not found")


def _user_info(identity: Identity) -> Optional[UserInfo]:
    mode = get_runtime().auth_mode
    if mode == AuthMode.TOKEN:
        return None
    if mode == AuthMode.AUTH0:
        return UserInfo(id=identity.subject, email=identity.email)
    return UserInfo(id=identity.user_id, username=identity.username)


def _with_refresh(payload: Dict[str, Any], identity: Identity) -> Dict[str, Any]:
    if identity.refresh_token:
        payload["refreshToken"] = identity.refresh_token
    return payload


def _auth_payload(identity: Identity, issued: IssuedToken) -> Dict[str, Any]:
    user = UserInfo(id=identity.user_id, username=identity.username)
    return {"token": issued.token, "user": user.model_dump(exclude_none=True)}


@router.post("/")
async def chat(
    identity: Identity = Depends(get_identity),
    body: dict = Depends(read_json_body),
):
    runtime = get_runtime()
    with carry_refresh_token(identity):
        request = ChatRequest.from_body(body, max_chars=runtime.settings.max_message_chars)
        subject = await runtime.pipeline.resolve_subject(identity, request.session_id)
        result = await runtime.pipeline.run_turn(
            identity, subject, request.user_message, request.sanitized
        )
    response = ChatTurnResponse(
        input=TurnInput(
            original=result.original,
            sanitized=result.sanitized,
            embeddings=result.embeddings,
        ),
        output=TurnOutput(
            raw=result.reply.raw,
            refined=result.reply.refined,
            choices=result.reply.choices,
        ),
        non_sensitive=NonSensitive(
            context=result.context.text,
            metrics=TurnMetrics(
                latency=result.reply.latency_ms,
                history_length=result.history_length,
            ),
        ),
        refresh_token=result.refresh_token,
        user=_user_info(identity),
    )
    return response.to_json()


@router.post("/clear")
async def clear_session(
    identity: Identity = Depends(get_identity),
    body: dict = Depends(read_optional_json_body),
):
    runtime = get_runtime()
    with carry_refresh_token(identity):
        session_id = validate_session_id(body.get("sessionId"))
        subject = await runtime.pipeline.resolve_subject(identity, session_id)
        await runtime.history.clear(subject)
    return _with_refresh({"success": True, "message": "Session cleared"}, identity)


@router.get("/history")
async def read_history(
    identity: Identity = Depends(get_identity),
    session_id: Optional[str] = Query(None, alias="sessionId"),
):
    runtime = get_runtime()
    with carry_refresh_token(identity):
        subject = await runtime.pipeline.resolve_subject(
            identity, validate_session_id(session_id)
        )
        history = await runtime.history.read(subject)
    return _with_refresh({"history": dump_history(history), "sessionId": subject}, identity)


@router.post("/history")
async def record_history(
    identity: Identity = Depends(get_identity),
    body: dict = Depends(read_json_body),
):
    runtime = get_runtime()
    with carry_refresh_token(identity):
        request = HistoryRecordRequest.from_body(
            body, max_chars=runtime.settings.max_message_chars
        )
        subject = await runtime.pipeline.resolve_subject(identity, request.session_id)
        history = await runtime.history.append(
            subject,
            *(ChatMessage(role=m.role, content=m.content) for m in request.messages),
        )
    logger.info("history_recorded", subject=subject, added=len(request.messages))
    return _with_refresh({"history": dump_history(history), "sessionId": subject}, identity)


@router.post("/signup", status_code=201)
async def signup(body: dict = Depends(read_json_body)):
    _require_mode(AuthMode.PASSWORD)
    credentials = CredentialsRequest.from_body(body)
    identity, issued = await get_runtime().verifier.signup(
        credentials.username, credentials.password
    )
    return _auth_payload(identity, issued)


@router.post("/login")
async def login(body: dict = Depends(read_json_body)):
    _require_mode(AuthMode.PASSWORD)
    credentials = CredentialsRequest.from_body(body)
    identity, issued = await get_runtime().verifier.login(
        credentials.username, credentials.password
    )
    return _auth_payload(identity, issued)


@router.get("/token")
async def issue_session_token(session_id: Optional[str] = Query(None, alias="sessionId")):
    _require_mode(AuthMode.TOKEN)
    runtime = get_runtime()
    requested = validate_session_id(session_id)
    sid = requested or uuid.uuid4().hex
    # Reserved at mint time; a second token for the same sid would share its history
    if not await runtime.history.reserve(sid, f"{runtime.verifier.namespace}:{sid}"):
        raise ForbiddenError("Session already in use")
    issued = runtime.verifier.issue(sid)
    logger.info("session_token_issued", session_id=sid, requested=bool(requested))
    return {"token": issued.token, "sessionId": sid, "expiresAt": issued.expires_at * 1000}
