"""Closed error taxonomy for session operations."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class SessionErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTHORIZATION_DENIED = "authorization_denied"
    STORE_UNAVAILABLE = "store_unavailable"


class SessionError(Exception):
    """Base error; callers branch on ``kind`` and ``code``, never on the message."""

    kind: SessionErrorKind = SessionErrorKind.VALIDATION
    default_code = "session.error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        diagnostic: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.diagnostic = diagnostic


class SessionValidationError(SessionError):
    kind = SessionErrorKind.VALIDATION
    default_code = "validation_error"


class SessionNotFound(SessionError):
    kind = SessionErrorKind.NOT_FOUND
    default_code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found")
        self.session_id = session_id


class SessionAccessDenied(SessionError):
    kind = SessionErrorKind.AUTHORIZATION_DENIED
    default_code = "access_denied"

    def __init__(self, session_id: str) -> None:
        super().__init__("Unauthorized access to session")
        self.session_id = session_id


class StoreUnavailable(SessionError):
    kind = SessionErrorKind.STORE_UNAVAILABLE
    default_code = "store_unavailable"


class SessionAlreadyExists(StoreUnavailable):
    """Raised by repositories when create() would overwrite an existing id."""

    default_code = "session_exists"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session id already present: {session_id}")
        self.session_id = session_id
