"""
conftest.py – central pytest configuration and test bootstrap ("config test").

Pytest imports this module before it collects any test files, which lets us
prepare the environment the application's configuration layer reads at import
time:
  1) Extend `sys.path` with the project root directory so absolute-style imports
     like `from core ...` and `from shared ...` resolve without an editable install.
  2) Define safe default environment variables: a dummy OpenAI key, a database
     path inside a temporary directory (so importing `main` never writes into the
     project tree) and an empty log file path, which disables file logging.

Shared fixtures for building conversation states live here as well.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure project root is on sys.path for direct imports like `core`, `shared`, etc.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Provide required environment defaults for tests
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_PATH", str(Path(tempfile.mkdtemp(prefix="orchestrator-tests-")) / "app.sqlite"))
os.environ.setdefault("LOG_FILE_PATH", "")


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh SQLite database file for one test."""
    return str(tmp_path / "test.sqlite")


@pytest.fixture
def make_state():
    """Factory for conversation states with a user message as the current turn."""
    from shared.models import ConversationState

    def _make(message="hello", conversation_id="conv-1", history=None, **kwargs):
        messages = list(history or []) + [{'role': 'user', 'content': message}]
        return ConversationState(conversation_id=conversation_id, messages=messages, **kwargs)

    return _make
