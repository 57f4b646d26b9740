"""Ownership checks for reading and mutating sessions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from live_console.config import runtime_config
from live_console.session.models import Session


@dataclass(frozen=True)
class AccessPolicy:
    # Unauthenticated callers may touch owned sessions (observed default).
    allow_anonymous_callers: bool = True
    # Present denials as not-found at the HTTP edge.
    conceal_denied: bool = False

    @classmethod
    def from_env(cls) -> "AccessPolicy":
        return cls(
            allow_anonymous_callers=runtime_config.allow_anonymous_callers(),
            conceal_denied=runtime_config.conceal_denied_sessions(),
        )


def authorize(session: Session, caller_user_id: Optional[str], policy: Optional[AccessPolicy] = None) -> bool:
    """Return True when ``caller_user_id`` may act on ``session``.

    Anonymous sessions are open to everyone. Owned sessions are open to their
    owner, and to callers without identity when the policy allows it.
    """
    policy = policy or AccessPolicy()
    if not session.user_id:
        return True
    if not caller_user_id:
        return policy.allow_anonymous_callers
    return session.user_id == caller_user_id
