"""
Shared fixtures for the chat backend test suite.

Environment overrides MUST be set before any app module is imported,
because app.config builds its settings and app.database its engine at
import time.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-length-for-hs256")
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from app.database import build_engine  # noqa: E402
from app.models.conversation import Conversation, Message  # noqa: E402,F401
from app.services.chat_service import ConversationLifecycle, SessionState  # noqa: E402
from app.services.generator import ResponseGenerator  # noqa: E402
from app.services.store import ConversationStore  # noqa: E402


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite://")
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def store(engine):
    return ConversationStore(engine)


@pytest.fixture
def generator():
    """Generator double that always answers with the same reply."""
    mock = MagicMock(spec=ResponseGenerator)
    mock.generate.return_value = "*Photosynthesis* turns light into sugar."
    return mock


@pytest.fixture
def session_state():
    return SessionState()


@pytest.fixture
def controller(store, generator, session_state):
    return ConversationLifecycle(store, generator, session_state)
