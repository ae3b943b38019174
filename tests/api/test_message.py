"""
API tests for `api/message.py` and `api/domains.py` using FastAPI's TestClient.

Covers:
- POST /api/message: success path, conversation continuation, request validation
  and the error payload when the turn fails
- GET /api/domains and GET /api/steering: registry introspection

Each test gets its own application context on a temporary database with a
fake text generator, so no network access happens. The client is used as a
context manager so the lifespan (sweeper start and shutdown) runs too.
"""

import copy
import json

import pytest
from fastapi.testclient import TestClient

from config import CONFIG
from core.context import AppContext
from main import create_app
from shared.errors import GenerationError

CLASSIFICATION = json.dumps({
    "intents": [{"mode": "CONSULT", "confidence": 0.9, "trigger": "sleep", "essential": True}],
    "requires_orchestration": False,
})


class FakeGenerator:
    def __init__(self, reply="Keep a regular sleep schedule.", fail=False):
        self.reply = reply
        self.fail = fail

    async def generate_json(self, system_prompt, user_message, model_key="classification"):
        return CLASSIFICATION

    async def generate(self, history, user_message, system_prompt=None, model_key="generation"):
        if self.fail:
            raise GenerationError("LLM is down")
        return self.reply


def build_context(db_path, generator, definitions=()):
    config = copy.deepcopy(CONFIG)
    config['database']['path'] = db_path
    config['domains'] = {'definitions': list(definitions), 'strategies': [], 'extractors': []}
    return AppContext.from_config(config, generator=generator)


@pytest.fixture
def client(db_path):
    context = build_context(db_path, FakeGenerator(), definitions=[
        {'id': 'health', 'name': 'Health', 'priority': 10, 'capabilities': {'extraction': True}},
    ])
    with TestClient(create_app(context)) as test_client:
        yield test_client


def test_message_success(client):
    resp = client.post("/api/message", json={"user_id": "user-1", "message": "How can I sleep better?"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "text"
    assert body["reply"] == "Keep a regular sleep schedule."
    assert body["mode"] == "consult"
    assert body["modes_used"] == ["consult"]
    assert body["steering_hints"] is None
    assert body["conversation_id"]
    assert body["message_id"]


def test_message_continues_active_conversation(client):
    first = client.post("/api/message", json={"user_id": "user-1", "message": "hello"}).json()
    second = client.post("/api/message", json={"user_id": "user-1", "message": "and again"}).json()
    fresh = client.post("/api/message", json={"user_id": "user-1", "message": "new topic", "force_new": True}).json()

    assert second["conversation_id"] == first["conversation_id"]
    assert fresh["conversation_id"] != first["conversation_id"]


def test_message_rejects_empty_message(client):
    resp = client.post("/api/message", json={"user_id": "user-1", "message": ""})
    assert resp.status_code == 422


def test_message_failure_returns_error_payload(db_path):
    context = build_context(db_path, FakeGenerator(fail=True))
    with TestClient(create_app(context)) as test_client:
        resp = test_client.post(
            "/api/message", json={"user_id": "user-1", "message": "hello", "conversation_id": "conv-1"}
        )

    assert resp.status_code == 500
    body = resp.json()
    assert body["type"] == "error"
    assert body["error"] == "PipelineError"
    assert body["conversation_id"] == "conv-1"
    assert "reply" not in body
    # nothing of the failed turn is stored
    assert context.conversation_store.get_recent_messages("conv-1") == []


def test_domains_endpoint(client):
    resp = client.get("/api/domains")

    assert resp.status_code == 200
    body = resp.json()
    assert [d["id"] for d in body["domains"]] == ["health"]
    assert body["stats"]["total"] == 1
    assert body["stats"]["by_capability"]["extraction"] == 1


def test_steering_endpoint(client):
    resp = client.get("/api/steering")

    assert resp.status_code == 200
    assert resp.json()["total"] == 0
