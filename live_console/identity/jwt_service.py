"""Minimal HS256 JWT issue/verify for resolving the calling user."""
from __future__ import annotations

import base64
import hmac
import json
import time
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any, Dict, Optional

from live_console.config import runtime_config


class TokenError(ValueError):
    pass


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


@dataclass
class CallerIdentity:
    user_id: str
    email: str = ""
    provider: str = "internal"
    claims: Dict[str, Any] = field(default_factory=dict)


class JwtService:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise TokenError("signing secret is required")
        self._secret = secret.encode("utf-8")

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(self._secret, signing_input.encode("utf-8"), sha256).digest()

    def issue_token(self, claims: Dict[str, object]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        signing_input = ".".join(
            [
                _b64url(json.dumps(header, separators=(",", ":"), sort_keys=True).encode()),
                _b64url(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode()),
            ]
        )
        return signing_input + "." + _b64url(self._sign(signing_input))

    def decode_token(self, token: str) -> CallerIdentity:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError("invalid token")
        signing_input = header_b64 + "." + payload_b64
        try:
            signature = _b64url_decode(sig_b64)
            payload = json.loads(_b64url_decode(payload_b64))
        except (ValueError, TypeError) as exc:
            raise TokenError("malformed token") from exc
        if not hmac.compare_digest(self._sign(signing_input), signature):
            raise TokenError("invalid signature")
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise TokenError("token has no subject")
        exp = payload.get("exp")
        if exp is not None:
            if not isinstance(exp, (int, float)):
                raise TokenError("invalid exp claim")
            if exp < time.time():
                raise TokenError("token expired")
        return CallerIdentity(
            user_id=str(payload["sub"]),
            email=payload.get("email", ""),
            provider=payload.get("iss", "internal"),
            claims=payload,
        )


def default_jwt_service() -> Optional[JwtService]:
    """Service built from AUTH_JWT_SIGNING, or None when auth is not configured."""
    secret = runtime_config.get_jwt_signing_secret()
    if not secret:
        return None
    return JwtService(secret)
