from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from live_console.common.error_envelope import error_response
from live_console.identity.auth import resolve_caller_identity
from live_console.session.errors import SessionError, SessionErrorKind
from live_console.session.models import MessageInput, Session, SessionCreateOptions
from live_console.session.service import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, SessionService, get_session_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/session", tags=["session"])

_STATUS_BY_KIND = {
    SessionErrorKind.VALIDATION: 400,
    SessionErrorKind.NOT_FOUND: 404,
    SessionErrorKind.AUTHORIZATION_DENIED: 403,
    SessionErrorKind.STORE_UNAVAILABLE: 500,
}


class _CamelBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateSessionBody(_CamelBody):
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    preferences: Optional[Dict[str, Any]] = None


class AddMessageBody(_CamelBody):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    role: Optional[str] = None
    content: Optional[str] = None
    type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateContextBody(_CamelBody):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    context: Optional[Dict[str, Any]] = None


class UpdateSessionBody(_CamelBody):
    context: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


def _raise_session_error(exc: SessionError, service: SessionService) -> None:
    kind = exc.kind
    code, message = exc.code, exc.message
    if kind is SessionErrorKind.AUTHORIZATION_DENIED and service.policy.conceal_denied:
        kind, code, message = SessionErrorKind.NOT_FOUND, "session_not_found", "Session not found"
    details: Dict[str, Any] = {}
    if kind is SessionErrorKind.STORE_UNAVAILABLE:
        logger.error(f"Session store failure ({exc.code}): {exc.diagnostic or exc.message}")
        if exc.diagnostic:
            details["diagnostic"] = exc.diagnostic
    error_response(
        code=f"session.{code}",
        message=message,
        status_code=_STATUS_BY_KIND[kind],
        resource_kind="session",
        details=details,
    )


def _require_session_id(session_id: Optional[str]) -> str:
    if not session_id:
        error_response(
            code="session.missing_fields",
            message="Missing required field: sessionId",
            status_code=400,
            resource_kind="session",
        )
    return session_id


def _session_summary(session: Session) -> Dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "conversationId": session.conversation_id,
        "createdAt": session.created_at.isoformat(),
        "userId": session.user_id,
    }


@router.post("/create", status_code=201)
def create_session(
    payload: Optional[CreateSessionBody] = Body(default=None),
    caller_user_id: Optional[str] = Depends(resolve_caller_identity),
):
    service = get_session_service()
    payload = payload or CreateSessionBody()
    options = SessionCreateOptions(
        user_id=caller_user_id,
        conversation_id=payload.conversation_id,
        preferences=payload.preferences,
    )
    try:
        session = service.create_session(options)
    except SessionError as exc:
        _raise_session_error(exc, service)
    return {"success": True, "session": _session_summary(session)}


@router.post("/message")
def add_message(
    payload: AddMessageBody,
    caller_user_id: Optional[str] = Depends(resolve_caller_identity),
):
    service = get_session_service()
    session_id = _require_session_id(payload.session_id)
    message = MessageInput(
        role=payload.role,
        content=payload.content,
        type=payload.type,
        metadata=payload.metadata,
    )
    try:
        session = service.add_message(session_id, message, caller_user_id=caller_user_id)
    except SessionError as exc:
        _raise_session_error(exc, service)
    return {
        "success": True,
        "messageCount": len(session.messages),
        "lastMessage": session.last_message.model_dump(mode="json"),
    }


@router.post("/context")
def update_context(
    payload: UpdateContextBody,
    caller_user_id: Optional[str] = Depends(resolve_caller_identity),
):
    service = get_session_service()
    session_id = _require_session_id(payload.session_id)
    try:
        session = service.update_context(session_id, payload.context, caller_user_id=caller_user_id)
    except SessionError as exc:
        _raise_session_error(exc, service)
    return {"success": True, "context": session.context}


@router.get("/list")
def list_sessions(
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    caller_user_id: Optional[str] = Depends(resolve_caller_identity),
):
    if not caller_user_id:
        error_response(
            code="session.authentication_required",
            message="Listing sessions requires an authenticated caller",
            status_code=401,
            resource_kind="session",
        )
    service = get_session_service()
    try:
        sessions = service.list_user_sessions(caller_user_id, limit=limit)
    except SessionError as exc:
        _raise_session_error(exc, service)
    return {"success": True, "sessions": [_session_summary(s) for s in sessions]}


@router.get("/{session_id}/stats")
def get_session_stats(
    session_id: str,
    caller_user_id: Optional[str] = Depends(resolve_caller_identity),
):
    service = get_session_service()
    try:
        stats = service.session_stats(session_id, caller_user_id=caller_user_id)
    except SessionError as exc:
        _raise_session_error(exc, service)
    return {
        "success": True,
        "stats": {
            "messageCount": stats.message_count,
            "ageInHours": stats.age_in_hours,
            "lastActivityMinutesAgo": stats.last_activity_minutes_ago,
        },
    }


@router.get("/{session_id}")
def get_session(
    session_id: str,
    caller_user_id: Optional[str] = Depends(resolve_caller_identity),
):
    service = get_session_service()
    try:
        session = service.read_session(session_id, caller_user_id=caller_user_id)
    except SessionError as exc:
        _raise_session_error(exc, service)
    return {"success": True, "session": session.model_dump(mode="json")}


@router.post("/{session_id}")
def update_session(
    session_id: str,
    payload: UpdateSessionBody,
    caller_user_id: Optional[str] = Depends(resolve_caller_identity),
):
    service = get_session_service()
    try:
        session = service.update_session(
            session_id,
            context=payload.context,
            metadata=payload.metadata,
            caller_user_id=caller_user_id,
        )
    except SessionError as exc:
        _raise_session_error(exc, service)
    return {"success": True, "session": session.model_dump(mode="json")}
