from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from live_console.session.authorization import AccessPolicy, authorize
from live_console.session.errors import (
    SessionAccessDenied,
    SessionAlreadyExists,
    SessionNotFound,
    SessionValidationError,
    StoreUnavailable,
)
from live_console.session.models import (
    ALLOWED_ROLES,
    DEFAULT_MESSAGE_TYPE,
    Message,
    MessageInput,
    MessageRole,
    Session,
    SessionCreateOptions,
    SessionStats,
)
from live_console.session.repository import SessionRepository, session_repo_from_env

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3
DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 50


def _validate_message(message: MessageInput) -> Message:
    if not isinstance(message.role, str) or not message.role:
        raise SessionValidationError("role is required", code="invalid_role")
    if message.role not in ALLOWED_ROLES:
        raise SessionValidationError(
            f"role must be one of {sorted(ALLOWED_ROLES)}, got: {message.role}",
            code="invalid_role",
        )
    if not isinstance(message.content, str) or not message.content:
        raise SessionValidationError("content must be a non-empty string", code="missing_content")
    return Message(
        role=MessageRole(message.role),
        content=message.content,
        type=message.type or DEFAULT_MESSAGE_TYPE,
        metadata=message.metadata,
    )


class SessionService:
    """Creates sessions and applies authorized, validated updates to them.

    Holds no state of its own: atomicity of every write is the repository's job.
    """

    def __init__(self, repo: Optional[SessionRepository] = None, policy: Optional[AccessPolicy] = None) -> None:
        self.repo = repo or session_repo_from_env()
        self.policy = policy or AccessPolicy.from_env()

    def create_session(self, options: Optional[SessionCreateOptions] = None) -> Session:
        options = options or SessionCreateOptions()
        fields: Dict[str, Any] = {
            "user_id": options.user_id or None,
            "preferences": options.preferences or {},
        }
        if options.conversation_id:
            fields["conversation_id"] = options.conversation_id
        for _ in range(CREATE_ATTEMPTS):
            session = Session(**fields)
            try:
                self.repo.create(session)
            except SessionAlreadyExists:
                logger.warning(f"Session id collision on {session.session_id}, regenerating")
                continue
            logger.info(
                f"Session created: session={session.session_id} conversation={session.conversation_id} "
                f"owner={session.user_id or 'anonymous'}"
            )
            return session
        raise StoreUnavailable("Failed to create session", diagnostic="could not allocate a unique session id")

    def get_session(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        return self.repo.get(session_id)

    def _require_access(self, session_id: str, caller_user_id: Optional[str]) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if not authorize(session, caller_user_id, self.policy):
            logger.warning(f"Access denied: session={session_id} caller={caller_user_id or 'anonymous'}")
            raise SessionAccessDenied(session_id)
        return session

    def read_session(self, session_id: str, caller_user_id: Optional[str] = None) -> Session:
        return self._require_access(session_id, caller_user_id)

    def add_message(
        self,
        session_id: str,
        message: MessageInput,
        caller_user_id: Optional[str] = None,
    ) -> Session:
        record = _validate_message(message)
        self._require_access(session_id, caller_user_id)
        updated = self.repo.append_message(session_id, record)
        if updated is None:
            # expired or removed by the store between lookup and append
            raise SessionNotFound(session_id)
        return updated

    def update_session(
        self,
        session_id: str,
        context: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        caller_user_id: Optional[str] = None,
    ) -> Session:
        """Shallow-merge ``context`` and/or ``metadata`` into the session.

        Owner, preferences and messages are never touched here.
        """
        for name, value in (("context", context), ("metadata", metadata)):
            if value is not None and not isinstance(value, dict):
                raise SessionValidationError(f"{name} must be an object", code=f"invalid_{name}")
        if not context and not metadata:
            raise SessionValidationError("context or metadata is required", code="missing_updates")
        self._require_access(session_id, caller_user_id)
        updated = self.repo.merge_state(session_id, context=context, metadata=metadata)
        if updated is None:
            raise SessionNotFound(session_id)
        return updated

    def update_context(
        self,
        session_id: str,
        context: Optional[Dict[str, Any]],
        caller_user_id: Optional[str] = None,
    ) -> Session:
        if not isinstance(context, dict) or not context:
            raise SessionValidationError("context must be a non-empty object", code="missing_context")
        return self.update_session(session_id, context=context, caller_user_id=caller_user_id)

    def session_stats(self, session_id: str, caller_user_id: Optional[str] = None) -> SessionStats:
        return SessionStats.for_session(self._require_access(session_id, caller_user_id))

    def list_user_sessions(self, user_id: Optional[str], limit: int = DEFAULT_LIST_LIMIT) -> List[Session]:
        """Most recently active sessions owned by ``user_id``."""
        if not user_id:
            raise SessionValidationError("user_id is required to list sessions", code="missing_user")
        if limit < 1 or limit > MAX_LIST_LIMIT:
            raise SessionValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}", code="invalid_limit")
        return self.repo.list_for_owner(user_id, limit=limit)


_default_service: Optional[SessionService] = None


def get_session_service() -> SessionService:
    global _default_service
    if _default_service is None:
        _default_service = SessionService()
    return _default_service


def set_session_service(service: Optional[SessionService]) -> None:
    global _default_service
    _default_service = service
