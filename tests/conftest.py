"""
Test fixtures for StudyAI.

Provides app, client, auth_client, store and generator fixtures. The
document store is in-memory, background writes run synchronously, the
Firebase REST API is replaced by a mocked HTTP session and Gemini by a
mocked generator, so no test touches the network.
"""

from __future__ import annotations

import base64
import pytest
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import Flashcard, QuizQuestion, User  # noqa: E402

TEST_UID = "uid-test-1"
TEST_EMAIL = "test@example.com"
TEST_NAME = "Test Student"


def make_questions(n: int = 5, correct: int = 0) -> list[QuizQuestion]:
    return [
        QuizQuestion(
            question=f"Question {i + 1}?",
            options=[f"Q{i + 1} option {j}" for j in range(4)],
            correct_answer_index=correct,
            explanation=f"Because option {correct} is right.",
        )
        for i in range(n)
    ]


def make_cards(n: int = 3) -> list[Flashcard]:
    return [Flashcard(front=f"Term {i}", back=f"Definition {i}", hint=f"Hint {i}") for i in range(n)]


def fake_response(status: int = 200, body: dict | None = None) -> MagicMock:
    """A stand-in for requests.Response."""
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else {}
    return resp


def firebase_user_body(uid: str = TEST_UID, email: str = TEST_EMAIL, name: str = TEST_NAME) -> dict:
    return {
        "localId": uid,
        "email": email,
        "displayName": name,
        "idToken": f"id-token-{uid}",
        "refreshToken": "refresh-token",
        "expiresIn": "3600",
    }


@pytest.fixture(autouse=True)
def reset_circuit_breaker():
    from ai_resilience import get_circuit_breaker
    get_circuit_breaker().reset()
    yield
    get_circuit_breaker().reset()


@pytest.fixture
def user():
    return User(TEST_UID, TEST_NAME, TEST_EMAIL)


@pytest.fixture
def firebase_http():
    """Mocked requests.Session used by the identity client."""
    http = MagicMock()
    http.post.return_value = fake_response(200, firebase_user_body())
    return http


@pytest.fixture
def generator():
    """Mocked Gemini generator with canned content."""
    gen = MagicMock()
    gen.available = True
    gen.generate_quiz.return_value = make_questions(5)
    gen.generate_flashcards.return_value = make_cards(3)
    gen.generate_summary.return_value = "- Point one\n- Point two"
    gen.generate_revision_quiz.return_value = make_questions(5, correct=1)
    gen.analyze_image.return_value = "A diagram of a cell."
    gen.generate_speech.return_value = base64.b64encode(b"\x00\x00" * 240).decode("ascii")
    chat = MagicMock()
    chat.send.return_value = "Mitochondria produce ATP."
    gen.create_chat.return_value = chat
    return gen


@pytest.fixture
def app(firebase_http, generator):
    """Create app with an in-memory document store for testing."""
    from app import create_app
    from document_store import set_store
    from extensions import ServiceManager
    from identity import IdentityClient

    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
    })
    ServiceManager.set_identity(IdentityClient("test-firebase-key", http=firebase_http))
    ServiceManager.set_generator(generator)

    with app.app_context():
        yield app

    ServiceManager.reset()
    set_store(None)


@pytest.fixture
def store(app):
    """The app's in-memory document store."""
    from document_store import get_store
    return get_store()


@pytest.fixture
def registry(app):
    from extensions import ServiceManager
    return ServiceManager.get_registry()


@pytest.fixture
def client(app):
    """Unauthenticated test client."""
    return app.test_client()


@pytest.fixture
def auth_client(app, firebase_http):
    """Authenticated test client (signed in as the test user)."""
    client = app.test_client()
    firebase_http.post.return_value = fake_response(200, firebase_user_body())
    resp = client.post("/login", json={"email": TEST_EMAIL, "password": "testpass123"})
    assert resp.status_code == 200
    return client
