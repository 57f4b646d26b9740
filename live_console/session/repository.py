from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

import redis
from pydantic import ValidationError
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from live_console.config import runtime_config
from live_console.session.errors import SessionAlreadyExists, StoreUnavailable
from live_console.session.models import Message, Session, utcnow

logger = logging.getLogger(__name__)

Mutation = Callable[[Session], None]


def _sanitize_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", value or "unknown")


def _decode(raw: Any) -> Session:
    try:
        return Session.model_validate_json(raw)
    except ValidationError as exc:
        raise StoreUnavailable("Stored session record is unreadable", diagnostic=str(exc)) from exc


def _newest_first(sessions: List[Session], limit: int) -> List[Session]:
    return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)[:limit]


def _append(message: Message) -> Mutation:
    def apply(session: Session) -> None:
        session.messages.append(message)
        session.last_activity_at = message.timestamp

    return apply


def _merge(context: Optional[Dict[str, Any]], metadata: Optional[Dict[str, Any]]) -> Mutation:
    def apply(session: Session) -> None:
        if context:
            session.context = {**session.context, **context}
        if metadata:
            session.metadata = {**session.metadata, **metadata}
        session.last_activity_at = utcnow()

    return apply


class SessionRepository(Protocol):
    def get(self, session_id: str) -> Optional[Session]: ...

    def create(self, session: Session) -> Session: ...

    def append_message(self, session_id: str, message: Message) -> Optional[Session]: ...

    def merge_state(
        self,
        session_id: str,
        context: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]: ...

    def list_for_owner(self, user_id: str, limit: int = 10) -> List[Session]: ...


class InMemorySessionRepository(SessionRepository):
    """Process-local repository; each instance owns its own records."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def create(self, session: Session) -> Session:
        with self._lock:
            if session.session_id in self._sessions:
                raise SessionAlreadyExists(session.session_id)
            self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    def _mutate(self, session_id: str, mutation: Mutation) -> Optional[Session]:
        with self._lock:
            stored = self._sessions.get(session_id)
            if stored is None:
                return None
            updated = stored.model_copy(deep=True)
            mutation(updated)
            self._sessions[session_id] = updated
            return updated.model_copy(deep=True)

    def append_message(self, session_id: str, message: Message) -> Optional[Session]:
        return self._mutate(session_id, _append(message))

    def merge_state(
        self,
        session_id: str,
        context: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]:
        return self._mutate(session_id, _merge(context, metadata))

    def list_for_owner(self, user_id: str, limit: int = 10) -> List[Session]:
        with self._lock:
            owned = [s.model_copy(deep=True) for s in self._sessions.values() if s.user_id == user_id]
        return _newest_first(owned, limit)


class FileSessionRepository(SessionRepository):
    """Filesystem-backed repository, one JSON document per session.

    Writes go through a temp file and ``os.replace`` so readers never see a
    half-written record. Writers take an exclusive ``flock`` on a per-session
    lock file, which serializes them across threads, repository instances
    and worker processes sharing the directory.
    """

    def __init__(self, base_dir: Optional[str] = None) -> None:
        default_dir = Path(runtime_config.get_session_dir() or Path.cwd() / "var" / "sessions")
        self._base_dir = Path(base_dir) if base_dir else default_dir
        self._lock_dir = self._base_dir / ".locks"
        self._lock_dir.mkdir(parents=True, exist_ok=True)

    def _session_path(self, session_id: str) -> Path:
        return self._base_dir / f"{_sanitize_name(session_id)}.json"

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[None]:
        lock_path = self._lock_dir / f"{_sanitize_name(session_id)}.lock"
        with lock_path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read(self, path: Path, session_id: Optional[str] = None) -> Optional[Session]:
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as handle:
            session = _decode(handle.read())
        # sanitized file names can collide; only the exact id matches
        if session_id is not None and session.session_id != session_id:
            return None
        return session

    def _write(self, path: Path, session: Session) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._base_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(session.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, session_id: str) -> Optional[Session]:
        try:
            return self._read(self._session_path(session_id), session_id)
        except OSError as exc:
            raise StoreUnavailable("Failed to read session", diagnostic=str(exc)) from exc

    def create(self, session: Session) -> Session:
        path = self._session_path(session.session_id)
        try:
            with self._locked(session.session_id):
                if path.exists():
                    raise SessionAlreadyExists(session.session_id)
                self._write(path, session)
        except OSError as exc:
            raise StoreUnavailable("Failed to persist session", diagnostic=str(exc)) from exc
        return session

    def _mutate(self, session_id: str, mutation: Mutation) -> Optional[Session]:
        path = self._session_path(session_id)
        try:
            with self._locked(session_id):
                session = self._read(path, session_id)
                if session is None:
                    return None
                mutation(session)
                self._write(path, session)
        except OSError as exc:
            raise StoreUnavailable("Failed to update session", diagnostic=str(exc)) from exc
        return session

    def append_message(self, session_id: str, message: Message) -> Optional[Session]:
        return self._mutate(session_id, _append(message))

    def merge_state(
        self,
        session_id: str,
        context: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]:
        return self._mutate(session_id, _merge(context, metadata))

    def list_for_owner(self, user_id: str, limit: int = 10) -> List[Session]:
        owned: List[Session] = []
        try:
            for path in self._base_dir.glob("*.json"):
                try:
                    session = self._read(path)
                except StoreUnavailable as exc:
                    logger.warning(f"Skipping unreadable session file {path.name}: {exc.diagnostic}")
                    continue
                if session is not None and session.user_id == user_id:
                    owned.append(session)
        except OSError as exc:
            raise StoreUnavailable("Failed to list sessions", diagnostic=str(exc)) from exc
        return _newest_first(owned, limit)


class RedisSessionRepository(SessionRepository):
    """Redis implementation: one JSON string per session key with a rolling TTL.

    Updates use WATCH/MULTI so concurrent appends to one session never
    overwrite each other; a lost race is retried up to ``max_retries`` times.
    Connection blips are retried by the client itself with exponential backoff.
    """

    SCAN_LIMIT = 100

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        key_prefix: Optional[str] = None,
        max_retries: Optional[int] = None,
        connection_retries: Optional[int] = None,
    ) -> None:
        if client is None:
            url = url or runtime_config.get_redis_url()
            if not url:
                raise RuntimeError("REDIS_URL is required for redis session backend")
            retries = connection_retries or runtime_config.get_redis_connection_retries()
            client = redis.Redis.from_url(
                url,
                retry=Retry(ExponentialBackoff(cap=10, base=1), retries),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )
        self._client = client
        self._ttl = ttl_seconds or runtime_config.get_session_ttl_seconds()
        self._prefix = key_prefix or runtime_config.get_session_key_prefix()
        self._max_retries = max_retries or runtime_config.get_append_retries()

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    def get(self, session_id: str) -> Optional[Session]:
        try:
            raw = self._client.get(self._key(session_id))
        except RedisError as exc:
            raise StoreUnavailable("Failed to read session", diagnostic=str(exc)) from exc
        return _decode(raw) if raw else None

    def create(self, session: Session) -> Session:
        try:
            stored = self._client.set(
                self._key(session.session_id),
                session.model_dump_json(),
                ex=self._ttl,
                nx=True,
            )
        except RedisError as exc:
            raise StoreUnavailable("Failed to persist session", diagnostic=str(exc)) from exc
        if not stored:
            raise SessionAlreadyExists(session.session_id)
        return session

    def _mutate(self, session_id: str, mutation: Mutation) -> Optional[Session]:
        key = self._key(session_id)
        try:
            with self._client.pipeline() as pipe:
                for attempt in range(1, self._max_retries + 1):
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if not raw:
                            pipe.unwatch()
                            return None
                        session = _decode(raw)
                        mutation(session)
                        pipe.multi()
                        pipe.set(key, session.model_dump_json(), ex=self._ttl)
                        pipe.execute()
                        return session
                    except WatchError:
                        logger.warning(f"Concurrent update on session {session_id}, retry {attempt}/{self._max_retries}")
        except RedisError as exc:
            raise StoreUnavailable("Failed to update session", diagnostic=str(exc)) from exc
        raise StoreUnavailable(
            "Failed to update session",
            diagnostic=f"gave up after {self._max_retries} conflicting writes",
        )

    def append_message(self, session_id: str, message: Message) -> Optional[Session]:
        return self._mutate(session_id, _append(message))

    def merge_state(
        self,
        session_id: str,
        context: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]:
        return self._mutate(session_id, _merge(context, metadata))

    def list_for_owner(self, user_id: str, limit: int = 10) -> List[Session]:
        """Scan up to SCAN_LIMIT session keys; there is no per-owner index."""
        owned: List[Session] = []
        try:
            for scanned, key in enumerate(self._client.scan_iter(match=f"{self._prefix}*", count=self.SCAN_LIMIT)):
                if scanned >= self.SCAN_LIMIT:
                    break
                raw = self._client.get(key)
                if not raw:
                    continue
                try:
                    session = _decode(raw)
                except StoreUnavailable as exc:
                    logger.warning(f"Skipping unreadable session key {key!r}: {exc.diagnostic}")
                    continue
                if session.user_id == user_id:
                    owned.append(session)
        except RedisError as exc:
            raise StoreUnavailable("Failed to list sessions", diagnostic=str(exc)) from exc
        return _newest_first(owned, limit)


def session_repo_from_env() -> SessionRepository:
    backend = runtime_config.get_session_backend()
    if backend == "redis":
        try:
            return RedisSessionRepository()
        except (RuntimeError, RedisError, ValueError) as exc:
            raise RuntimeError(f"SESSION_BACKEND=redis failed to initialize: {exc}") from exc
    if backend in {"filesystem", "fs"}:
        storage_dir = runtime_config.get_session_dir()
        if not storage_dir:
            raise RuntimeError("SESSION_DIR is required for filesystem session backend")
        return FileSessionRepository(base_dir=storage_dir)
    if backend == "memory":
        if not runtime_config.is_dev_env():
            raise RuntimeError("SESSION_BACKEND=memory is only allowed in dev/local/test")
        return InMemorySessionRepository()
    raise RuntimeError("SESSION_BACKEND must be set to 'redis', 'filesystem' or 'memory'")
