from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError
from redis.retry import Retry

from live_console.session.errors import SessionAlreadyExists, StoreUnavailable
from live_console.session.models import Message, MessageRole, Session
from live_console.session.repository import (
    FileSessionRepository,
    InMemorySessionRepository,
    RedisSessionRepository,
    session_repo_from_env,
)


def _msg(content: str, role: MessageRole = MessageRole.USER) -> Message:
    return Message(role=role, content=content)


@pytest.fixture(params=["memory", "filesystem"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionRepository()
    return FileSessionRepository(base_dir=str(tmp_path / "sessions"))


def test_create_get_roundtrip(repo):
    session = Session(user_id="alice", conversation_id="c1", preferences={"voice": "puck"})
    repo.create(session)
    loaded = repo.get(session.session_id)
    assert loaded == session
    assert repo.get("missing") is None


def test_create_never_overwrites(repo):
    session = Session()
    repo.create(session)
    repo.append_message(session.session_id, _msg("keep me"))
    with pytest.raises(SessionAlreadyExists):
        repo.create(Session(session_id=session.session_id))
    assert len(repo.get(session.session_id).messages) == 1


def test_append_returns_new_state(repo):
    session = repo.create(Session())
    first = repo.append_message(session.session_id, _msg("one"))
    second = repo.append_message(session.session_id, _msg("two", MessageRole.ASSISTANT))
    assert [m.content for m in first.messages] == ["one"]
    assert [m.content for m in second.messages] == ["one", "two"]
    assert second.last_activity_at == second.messages[-1].timestamp


def test_append_to_missing_session(repo):
    assert repo.append_message("missing", _msg("x")) is None
    assert repo.merge_state("missing", context={"a": 1}) is None


def test_returned_state_is_detached(repo):
    session = repo.create(Session())
    loaded = repo.get(session.session_id)
    loaded.messages.append(_msg("sneaky"))
    assert repo.get(session.session_id).messages == []


def test_concurrent_appends_lose_nothing(repo):
    session = repo.create(Session())
    workers, per_worker = 8, 10

    def worker(n: int) -> None:
        for i in range(per_worker):
            repo.append_message(session.session_id, _msg(f"{n}-{i}"))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    contents = [m.content for m in repo.get(session.session_id).messages]
    assert len(contents) == workers * per_worker
    assert set(contents) == {f"{n}-{i}" for n in range(workers) for i in range(per_worker)}
    # each worker's own messages keep their relative order
    for n in range(workers):
        mine = [c for c in contents if c.startswith(f"{n}-")]
        assert mine == [f"{n}-{i}" for i in range(per_worker)]


def test_file_repo_ignores_sanitized_name_collisions(tmp_path):
    repo = FileSessionRepository(base_dir=str(tmp_path))
    repo.create(Session(session_id="a_b"))
    assert repo.get("a/b") is None
    assert repo.append_message("a/b", _msg("x")) is None


def test_file_repo_wraps_os_errors(tmp_path, monkeypatch):
    repo = FileSessionRepository(base_dir=str(tmp_path))
    session = repo.create(Session())

    def broken_write(path, session):
        raise OSError("disk full")

    monkeypatch.setattr(repo, "_write", broken_write)
    with pytest.raises(StoreUnavailable) as exc_info:
        repo.append_message(session.session_id, _msg("x"))
    assert "disk full" in exc_info.value.diagnostic
    assert repo.get(session.session_id).messages == []


def test_merge_state_merges_context_and_metadata(repo):
    session = repo.create(Session(user_id="alice", preferences={"voice": "puck"}))
    repo.append_message(session.session_id, _msg("hello"))
    repo.merge_state(session.session_id, context={"topic": "news"}, metadata={"device": "web"})
    updated = repo.merge_state(session.session_id, metadata={"locale": "en"})
    assert updated.context == {"topic": "news"}
    assert updated.metadata == {"device": "web", "locale": "en"}
    stored = repo.get(session.session_id)
    assert stored.metadata == updated.metadata
    assert stored.preferences == {"voice": "puck"}
    assert [m.content for m in stored.messages] == ["hello"]


def test_list_for_owner_newest_first(repo):
    older = repo.create(Session(user_id="alice"))
    newer = repo.create(Session(user_id="alice"))
    repo.create(Session(user_id="bob"))
    repo.create(Session())
    repo.append_message(newer.session_id, _msg("bump"))

    listed = repo.list_for_owner("alice")
    assert [s.session_id for s in listed] == [newer.session_id, older.session_id]
    assert [s.session_id for s in repo.list_for_owner("alice", limit=1)] == [newer.session_id]
    assert repo.list_for_owner("carol") == []


def _shared_dir_repos(tmp_path):
    base_dir = str(tmp_path / "shared")
    return FileSessionRepository(base_dir=base_dir), FileSessionRepository(base_dir=base_dir)


def test_file_repos_sharing_a_directory_lose_no_appends(tmp_path):
    first, second = _shared_dir_repos(tmp_path)
    session = first.create(Session())
    workers, per_worker = 4, 50

    def worker(n: int) -> None:
        repo = first if n % 2 == 0 else second
        for i in range(per_worker):
            repo.append_message(session.session_id, _msg(f"{n}-{i}"))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    contents = [m.content for m in second.get(session.session_id).messages]
    assert len(contents) == workers * per_worker
    assert set(contents) == {f"{n}-{i}" for n in range(workers) for i in range(per_worker)}


def test_file_repos_sharing_a_directory_never_overwrite_on_create(tmp_path):
    first, second = _shared_dir_repos(tmp_path)
    session = first.create(Session(user_id="alice"))
    first.append_message(session.session_id, _msg("keep me"))
    with pytest.raises(SessionAlreadyExists):
        second.create(Session(session_id=session.session_id))
    assert [m.content for m in second.get(session.session_id).messages] == ["keep me"]


def test_file_repo_corrupt_record_is_store_unavailable(tmp_path):
    repo = FileSessionRepository(base_dir=str(tmp_path))
    session = repo.create(Session(user_id="alice"))
    (tmp_path / f"{session.session_id}.json").write_text("{truncated", encoding="utf-8")

    with pytest.raises(StoreUnavailable) as exc_info:
        repo.get(session.session_id)
    assert exc_info.value.diagnostic
    with pytest.raises(StoreUnavailable):
        repo.append_message(session.session_id, _msg("x"))
    with pytest.raises(StoreUnavailable):
        repo.merge_state(session.session_id, context={"a": 1})
    # the damaged file is left for an operator to inspect
    assert (tmp_path / f"{session.session_id}.json").read_text(encoding="utf-8") == "{truncated"


def test_file_repo_listing_skips_corrupt_records(tmp_path):
    repo = FileSessionRepository(base_dir=str(tmp_path))
    good = repo.create(Session(user_id="alice"))
    (tmp_path / "broken.json").write_text("{truncated", encoding="utf-8")
    assert [s.session_id for s in repo.list_for_owner("alice")] == [good.session_id]


# --- Redis ---

@pytest.fixture
def redis_client():
    client = MagicMock()
    pipe = MagicMock()
    client.pipeline.return_value.__enter__.return_value = pipe
    return client, pipe


def _redis_repo(client, **kwargs) -> RedisSessionRepository:
    return RedisSessionRepository(client=client, ttl_seconds=60, key_prefix="test:session:", **kwargs)


def test_redis_create_uses_nx_and_ttl(redis_client):
    client, _ = redis_client
    client.set.return_value = True
    repo = _redis_repo(client)
    session = Session(conversation_id="c1")
    repo.create(session)
    args, kwargs = client.set.call_args
    assert args[0] == f"test:session:{session.session_id}"
    assert Session.model_validate_json(args[1]) == session
    assert kwargs == {"ex": 60, "nx": True}


def test_redis_create_conflict(redis_client):
    client, _ = redis_client
    client.set.return_value = None
    with pytest.raises(SessionAlreadyExists):
        _redis_repo(client).create(Session())


def test_redis_get(redis_client):
    client, _ = redis_client
    session = Session(user_id="alice")
    client.get.return_value = session.model_dump_json().encode("utf-8")
    assert _redis_repo(client).get(session.session_id) == session
    client.get.return_value = None
    assert _redis_repo(client).get("missing") is None


def test_redis_append_retries_after_watch_conflict(redis_client):
    client, pipe = redis_client
    session = Session()
    pipe.get.return_value = session.model_dump_json()
    pipe.execute.side_effect = [WatchError("changed"), [True]]
    updated = _redis_repo(client).append_message(session.session_id, _msg("hi"))
    assert [m.content for m in updated.messages] == ["hi"]
    assert pipe.execute.call_count == 2
    key, payload = pipe.set.call_args[0]
    assert key == f"test:session:{session.session_id}"
    assert pipe.set.call_args[1] == {"ex": 60}
    assert len(Session.model_validate_json(payload).messages) == 1


def test_redis_append_gives_up_after_retries(redis_client):
    client, pipe = redis_client
    pipe.get.return_value = Session().model_dump_json()
    pipe.execute.side_effect = WatchError("changed")
    with pytest.raises(StoreUnavailable):
        _redis_repo(client, max_retries=3).append_message("s1", _msg("hi"))
    assert pipe.execute.call_count == 3


def test_redis_append_missing_session(redis_client):
    client, pipe = redis_client
    pipe.get.return_value = None
    assert _redis_repo(client).append_message("missing", _msg("hi")) is None
    pipe.execute.assert_not_called()


def test_redis_errors_become_store_unavailable(redis_client):
    client, pipe = redis_client
    client.get.side_effect = RedisConnectionError("down")
    client.set.side_effect = RedisConnectionError("down")
    pipe.watch.side_effect = RedisConnectionError("down")
    repo = _redis_repo(client)
    with pytest.raises(StoreUnavailable):
        repo.get("s1")
    with pytest.raises(StoreUnavailable):
        repo.create(Session())
    with pytest.raises(StoreUnavailable) as exc_info:
        repo.merge_state("s1", context={"a": 1})
    assert exc_info.value.diagnostic == "down"


def test_redis_corrupt_record_is_store_unavailable(redis_client):
    client, pipe = redis_client
    client.get.return_value = b"{truncated"
    pipe.get.return_value = b"{truncated"
    repo = _redis_repo(client)
    with pytest.raises(StoreUnavailable):
        repo.get("s1")
    with pytest.raises(StoreUnavailable):
        repo.append_message("s1", _msg("hi"))
    pipe.execute.assert_not_called()


def test_redis_merge_state_writes_metadata(redis_client):
    client, pipe = redis_client
    session = Session(metadata={"device": "web"})
    pipe.get.return_value = session.model_dump_json()
    pipe.execute.return_value = [True]
    updated = _redis_repo(client).merge_state(session.session_id, metadata={"locale": "en"})
    assert updated.metadata == {"device": "web", "locale": "en"}
    _, payload = pipe.set.call_args[0]
    assert Session.model_validate_json(payload).metadata == {"device": "web", "locale": "en"}


def test_redis_list_for_owner_scans_prefix(redis_client):
    client, _ = redis_client
    older = Session(user_id="alice")
    newer = Session(user_id="alice")
    newer.last_activity_at = older.last_activity_at.replace(year=older.last_activity_at.year + 1)
    other = Session(user_id="bob")
    records = {
        b"test:session:1": older.model_dump_json().encode("utf-8"),
        b"test:session:2": b"{truncated",
        b"test:session:3": other.model_dump_json().encode("utf-8"),
        b"test:session:4": newer.model_dump_json().encode("utf-8"),
        b"test:session:5": None,
    }
    client.scan_iter.return_value = iter(records)
    client.get.side_effect = records.get

    listed = _redis_repo(client).list_for_owner("alice", limit=5)
    assert [s.session_id for s in listed] == [newer.session_id, older.session_id]
    client.scan_iter.assert_called_once_with(match="test:session:*", count=RedisSessionRepository.SCAN_LIMIT)


def test_redis_list_for_owner_wraps_errors(redis_client):
    client, _ = redis_client
    client.scan_iter.side_effect = RedisConnectionError("down")
    with pytest.raises(StoreUnavailable):
        _redis_repo(client).list_for_owner("alice")


def test_redis_client_built_with_connection_retry(monkeypatch):
    from_url = MagicMock()
    monkeypatch.setattr("live_console.session.repository.redis.Redis.from_url", from_url)
    monkeypatch.setenv("SESSION_REDIS_RETRIES", "4")

    RedisSessionRepository(url="redis://cache:6379/0")

    args, kwargs = from_url.call_args
    assert args == ("redis://cache:6379/0",)
    assert isinstance(kwargs["retry"], Retry)
    assert kwargs["retry"]._retries == 4
    assert kwargs["retry_on_error"] == [RedisConnectionError, RedisTimeoutError]


def test_redis_client_retry_count_override(monkeypatch):
    from_url = MagicMock()
    monkeypatch.setattr("live_console.session.repository.redis.Redis.from_url", from_url)
    RedisSessionRepository(url="redis://cache:6379/0", connection_retries=1)
    assert from_url.call_args[1]["retry"]._retries == 1


# --- Backend selection ---

def test_repo_from_env_memory(monkeypatch):
    monkeypatch.setenv("SESSION_BACKEND", "memory")
    monkeypatch.setenv("APP_ENV", "test")
    assert isinstance(session_repo_from_env(), InMemorySessionRepository)


def test_repo_from_env_memory_rejected_in_prod(monkeypatch):
    monkeypatch.setenv("SESSION_BACKEND", "memory")
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.setenv("APP_ENV", "prod")
    with pytest.raises(RuntimeError):
        session_repo_from_env()


def test_repo_from_env_filesystem(monkeypatch, tmp_path):
    monkeypatch.setenv("SESSION_BACKEND", "fs")
    monkeypatch.setenv("SESSION_DIR", str(tmp_path))
    assert isinstance(session_repo_from_env(), FileSessionRepository)
    monkeypatch.delenv("SESSION_DIR")
    with pytest.raises(RuntimeError):
        session_repo_from_env()


def test_repo_from_env_redis_requires_url(monkeypatch):
    monkeypatch.setenv("SESSION_BACKEND", "redis")
    monkeypatch.delenv("REDIS_URL", raising=False)
    with pytest.raises(RuntimeError):
        session_repo_from_env()


def test_repo_from_env_redis_init_failure_is_runtime_error(monkeypatch):
    monkeypatch.setenv("SESSION_BACKEND", "redis")
    broken = MagicMock(side_effect=RedisConnectionError("unreachable"))
    monkeypatch.setattr("live_console.session.repository.RedisSessionRepository", broken)
    with pytest.raises(RuntimeError) as exc_info:
        session_repo_from_env()
    assert "unreachable" in str(exc_info.value)


def test_repo_from_env_redis_programming_errors_propagate(monkeypatch):
    monkeypatch.setenv("SESSION_BACKEND", "redis")
    broken = MagicMock(side_effect=TypeError("unexpected keyword"))
    monkeypatch.setattr("live_console.session.repository.RedisSessionRepository", broken)
    with pytest.raises(TypeError):
        session_repo_from_env()


def test_repo_from_env_unset(monkeypatch):
    monkeypatch.delenv("SESSION_BACKEND", raising=False)
    with pytest.raises(RuntimeError):
        session_repo_from_env()
