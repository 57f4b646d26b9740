"""Session lifecycle: models, repositories, authorization and service."""

from live_console.session.authorization import AccessPolicy, authorize  # noqa: F401
from live_console.session.errors import (  # noqa: F401
    SessionAccessDenied,
    SessionAlreadyExists,
    SessionError,
    SessionErrorKind,
    SessionNotFound,
    SessionValidationError,
    StoreUnavailable,
)
from live_console.session.models import (  # noqa: F401
    Message,
    MessageInput,
    MessageRole,
    Session,
    SessionCreateOptions,
    SessionStats,
)
from live_console.session.repository import (  # noqa: F401
    FileSessionRepository,
    InMemorySessionRepository,
    RedisSessionRepository,
    SessionRepository,
)
from live_console.session.service import SessionService  # noqa: F401
