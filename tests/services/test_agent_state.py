"""
Tests for `services/agent_state.py` using pytest.

Focus:
- TTL visibility (including TTL 0 and negative TTL)
- Supersession: at most one active record per (conversation, domain, state type)
- Resolve by tuple and by id
- Update keeps or replaces the expiry
- Sweep deletes expired records only
- Sweep running alongside concurrent saves and reads

Time is controlled through the store's injectable clock, so nothing sleeps. The
concurrency test uses the real clock with TTLs far from the boundary.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from services.agent_state import AgentStateStore
from shared.errors import StorageError

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db_path, clock):
    return AgentStateStore(db_path, default_ttl_seconds=300, clock=clock)


def test_saved_state_is_visible_until_ttl(store, clock):
    store.save_state("c1", "health", "pending_question", {"question": "sleep?"}, ttl_seconds=60)
    assert store.get_state("c1", "health", "pending_question") == {"question": "sleep?"}

    clock.advance(59)
    assert store.get_state("c1", "health", "pending_question") is not None

    clock.advance(1)
    assert store.get_state("c1", "health", "pending_question") is None


def test_default_ttl_is_used(store, clock):
    store.save_state("c1", "health", "flag", {"x": 1})
    record = store.get_record("c1", "health", "flag")
    assert record.expires_at - record.created_at == timedelta(seconds=300)


def test_zero_ttl_is_never_visible(store):
    store.save_state("c1", "health", "flag", {"x": 1}, ttl_seconds=0)
    assert store.get_state("c1", "health", "flag") is None


def test_negative_ttl_is_rejected(store, db_path):
    with pytest.raises(ValueError):
        store.save_state("c1", "health", "flag", {"x": 1}, ttl_seconds=-1)
    with pytest.raises(ValueError):
        AgentStateStore(db_path, default_ttl_seconds=-5)


def test_save_supersedes_previous_active_record(store, clock):
    first_id = store.save_state("c1", "health", "flag", {"v": 1})
    clock.advance(1)
    second_id = store.save_state("c1", "health", "flag", {"v": 2})

    assert first_id != second_id
    assert store.get_state("c1", "health", "flag") == {"v": 2}
    assert [r.id for r in store.get_states_for_domain("health")] == [second_id]


def test_tuples_are_isolated(store):
    store.save_state("c1", "health", "flag", {"v": "health"})
    store.save_state("c1", "finance", "flag", {"v": "finance"})
    store.save_state("c2", "health", "flag", {"v": "other conversation"})
    assert store.get_state("c1", "health", "flag") == {"v": "health"}
    assert store.get_state("c1", "finance", "flag") == {"v": "finance"}
    assert store.get_state("c2", "health", "flag") == {"v": "other conversation"}


def test_get_state_without_type_returns_newest(store, clock):
    store.save_state("c1", "health", "a", {"v": "a"})
    clock.advance(1)
    store.save_state("c1", "health", "b", {"v": "b"})
    assert store.get_state("c1", "health") == {"v": "b"}


def test_get_state_with_metadata(store):
    state_id = store.save_state("c1", "health", "flag", {"v": 1}, ttl_seconds=60)
    result = store.get_state_with_metadata("c1", "health", "flag")
    assert result["data"] == {"v": 1}
    assert result["metadata"]["id"] == state_id
    assert result["metadata"]["state_type"] == "flag"
    assert store.get_state_with_metadata("c1", "health", "missing") is None


def test_resolve_state_hides_record(store):
    store.save_state("c1", "health", "flag", {"v": 1})
    assert store.resolve_state("c1", "health", "flag") is True
    assert store.get_state("c1", "health", "flag") is None
    assert store.resolve_state("c1", "health", "flag") is False


def test_resolve_by_id_is_idempotent(store):
    state_id = store.save_state("c1", "health", "flag", {"v": 1})
    assert store.resolve_state_by_id(state_id) is True
    assert store.resolve_state_by_id(state_id) is True
    assert store.resolve_state_by_id("missing") is False
    assert store.get_state("c1", "health", "flag") is None


def test_update_merges_and_keeps_expiry(store, clock):
    store.save_state("c1", "health", "flag", {"a": 1, "b": 1}, ttl_seconds=100)
    original = store.get_record("c1", "health", "flag")
    clock.advance(30)

    assert store.update_state("c1", "health", "flag", {"b": 2, "c": 3}) is True

    updated = store.get_record("c1", "health", "flag")
    assert updated.data == {"a": 1, "b": 2, "c": 3}
    assert updated.expires_at == original.expires_at
    assert updated.id != original.id


def test_update_with_ttl_extends_expiry(store, clock):
    store.save_state("c1", "health", "flag", {"a": 1}, ttl_seconds=10)
    clock.advance(5)
    store.update_state("c1", "health", "flag", {"a": 2}, ttl_seconds=60)
    clock.advance(30)
    assert store.get_state("c1", "health", "flag") == {"a": 2}


def test_update_without_active_record_writes_nothing(store):
    assert store.update_state("c1", "health", "flag", {"a": 1}) is False
    assert store.get_state("c1", "health", "flag") is None


def test_clear_conversation_states(store):
    store.save_state("c1", "health", "a", {})
    store.save_state("c1", "finance", "b", {})
    store.save_state("c2", "health", "a", {})
    assert store.clear_conversation_states("c1") == 2
    assert store.get_state("c1", "health") is None
    assert store.get_state("c2", "health") == {}


def test_sweep_deletes_expired_including_resolved(store, clock):
    store.save_state("c1", "health", "short", {}, ttl_seconds=10)
    resolved_id = store.save_state("c1", "health", "resolved", {}, ttl_seconds=10)
    store.resolve_state_by_id(resolved_id)
    store.save_state("c1", "health", "long", {}, ttl_seconds=1000)

    clock.advance(10)
    assert store.sweep_expired() == 2
    assert store.get_state("c1", "health", "long") == {}
    assert store.sweep_expired() == 0


def test_storage_errors_are_wrapped(store, db_path, monkeypatch):
    import services.database as database

    def broken_connect(*args, **kwargs):
        raise database.sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(database.sqlite3, "connect", broken_connect)
    with pytest.raises(StorageError):
        store.get_state("c1", "health", "flag")


def test_sweep_alongside_saves_and_reads_never_exposes_inactive_records(db_path):
    live_store = AgentStateStore(db_path, default_ttl_seconds=300)
    writers_done = threading.Event()
    errors = []
    seen = []

    def write(writer):
        try:
            for seq in range(40):
                # ttl 0 records are expired from the moment they are written
                ttl = 0 if seq % 2 else 60
                live_store.save_state(
                    "c1", "health", "pending", {"writer": writer, "seq": seq, "ttl": ttl}, ttl_seconds=ttl
                )
        except Exception as e:
            errors.append(e)

    def read():
        try:
            while not writers_done.is_set():
                result = live_store.get_state_with_metadata("c1", "health", "pending")
                if result is not None:
                    seen.append(result['data'])
        except Exception as e:
            errors.append(e)

    def sweep():
        try:
            while not writers_done.is_set():
                live_store.sweep_expired()
        except Exception as e:
            errors.append(e)

    writers = [threading.Thread(target=write, args=(w,)) for w in range(2)]
    others = [threading.Thread(target=read) for _ in range(2)] + [threading.Thread(target=sweep)]
    for thread in others + writers:
        thread.start()
    for thread in writers:
        thread.join(timeout=60)
    writers_done.set()
    for thread in others:
        thread.join(timeout=60)

    assert errors == []
    assert all(data['ttl'] == 60 for data in seen)
    active = [r for r in live_store.get_states_for_domain("health") if r.conversation_id == "c1"]
    # both writers end with a ttl 0 save, which superseded every earlier record
    assert active == []
