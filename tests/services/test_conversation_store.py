"""
Tests for `services/conversation_store.py` using pytest.

Focus:
- Conversation creation, lookup, active selection and archiving
- Recent message window in chronological order
- Atomic turn persistence
- Append-only state snapshots (latest and history ordering)
"""

from datetime import timedelta

import pytest

from services.conversation_store import ConversationStore
from shared.errors import StorageError
from shared.models import (
    ConversationMode,
    ConversationState,
    ExtractedData,
    SteeringHints,
)
from shared.utils import utc_now


@pytest.fixture
def store(db_path):
    return ConversationStore(db_path)


def test_create_and_get_conversation(store):
    created = store.create_conversation("user-1", metadata={"channel": "web"})
    fetched = store.get_conversation(created['id'])
    assert fetched['user_id'] == "user-1"
    assert fetched['status'] == "active"
    assert fetched['metadata'] == {"channel": "web"}
    assert store.get_conversation("missing") is None


def test_find_active_ignores_archived(store):
    first = store.create_conversation("user-1")
    assert store.find_active_conversation("user-1")['id'] == first['id']
    assert store.archive_conversation(first['id']) is True
    assert store.find_active_conversation("user-1") is None
    assert store.find_active_conversation("user-2") is None


def test_duplicate_conversation_id_raises_storage_error(store):
    store.create_conversation("user-1", conversation_id="fixed")
    with pytest.raises(StorageError):
        store.create_conversation("user-1", conversation_id="fixed")


def test_save_turn_and_recent_messages(store):
    conversation = store.create_conversation("user-1")
    state = ConversationState(conversation_id=conversation['id'], mode=ConversationMode.CONSULT)

    reply_id = store.save_turn(state, "How do I sleep better?", "Keep a schedule.")

    assert isinstance(reply_id, str)
    assert store.get_recent_messages(conversation['id']) == [
        {'role': 'user', 'content': 'How do I sleep better?'},
        {'role': 'assistant', 'content': 'Keep a schedule.'},
    ]
    assert store.get_latest_state(conversation['id']).id == state.id


def test_recent_messages_window(store):
    conversation = store.create_conversation("user-1")
    for turn in range(3):
        state = ConversationState(conversation_id=conversation['id'])
        store.save_turn(state, f"question {turn}", f"answer {turn}")
    recent = store.get_recent_messages(conversation['id'], limit=3)
    assert [m['content'] for m in recent] == ["answer 1", "question 2", "answer 2"]


def test_failed_turn_writes_nothing(store):
    conversation = store.create_conversation("user-1")
    state = ConversationState(conversation_id=conversation['id'])
    store.save_state(state)
    with pytest.raises(StorageError):
        # same snapshot id violates the primary key after the messages were inserted
        store.save_turn(state, "hello", "hi")
    assert store.get_recent_messages(conversation['id']) == []


def test_snapshot_round_trip_keeps_persisted_fields(store):
    state = ConversationState(
        conversation_id="c1",
        mode=ConversationMode.CONSULT,
        extractions={"health": [ExtractedData(domain_id="health", data={"hours": 5}, confidence=0.9)]},
        steering_hints=SteeringHints(type="merged", suggestions=["Ask about caffeine"], priority=0.8),
        metadata={"user_id": "user-1"},
        messages=[{'role': 'user', 'content': 'not persisted'}],
        reply="not persisted either",
    )
    store.save_state(state)

    loaded = store.get_latest_state("c1")
    assert loaded.mode == ConversationMode.CONSULT
    assert loaded.extractions["health"][0].data == {"hours": 5}
    assert loaded.steering_hints.suggestions == ["Ask about caffeine"]
    assert loaded.metadata == {"user_id": "user-1"}
    assert loaded.messages == []
    assert loaded.reply is None


def test_latest_and_history_ordering(store):
    base = utc_now()
    for offset, mode in enumerate([ConversationMode.SMALLTALK, ConversationMode.CONSULT, ConversationMode.META]):
        store.save_state(ConversationState(
            conversation_id="c1", mode=mode, created_at=base + timedelta(seconds=offset)
        ))
    assert store.get_latest_state("c1").mode == ConversationMode.META
    history = store.get_state_history("c1", limit=2)
    assert [s.mode for s in history] == [ConversationMode.META, ConversationMode.CONSULT]
    assert store.get_latest_state("unknown") is None
