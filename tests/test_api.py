"""
Integration tests for the JSON API: auth, generation, players,
Smart Revision, sync status and the AI tools.
"""

from __future__ import annotations

import base64
import io
import wave
from unittest.mock import patch

import pytest

from conftest import TEST_EMAIL, TEST_UID, fake_response, firebase_user_body, make_cards, make_questions
from document_store import PERMISSION_DENIED, RECOMMENDED_RULES, StoreError
from generator import GENERATION_FAILED_MESSAGE, REVISION_FAILED_MESSAGE, GenerationError
from identity import IdentityClient
from models import Mistake, User


def _generate(client, **body):
    payload = {"type": "QUIZ", "topic": "Photosynthesis", "difficulty": "Medium", "num_questions": 5}
    payload.update(body)
    return client.post("/api/sets/generate", json=payload)


# ── Basics ────────────────────────────────────────────


class TestBasics:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_dashboard_requires_login(self, client):
        resp = client.get("/api/dashboard")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Authentication required."

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"

    def test_request_id_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"

    def test_unknown_route_is_json(self, client):
        resp = client.get("/no-such-page")
        assert resp.status_code == 404
        assert "error" in resp.get_json()

    def test_rules_are_public_plain_text(self, client):
        resp = client.get("/api/sync/rules")
        assert resp.status_code == 200
        assert resp.mimetype == "text/plain"
        assert resp.get_data(as_text=True) == RECOMMENDED_RULES


# ── Auth ──────────────────────────────────────────────


class TestAuth:
    def test_login_opens_session_and_creates_document(self, auth_client, registry, store):
        assert registry.get(TEST_UID) is not None
        snap = store.get(TEST_UID)
        assert snap.exists
        assert snap.data["email"] == TEST_EMAIL

    def test_login_invalid_credentials(self, client, firebase_http):
        firebase_http.post.return_value = fake_response(
            400, {"error": {"message": "INVALID_LOGIN_CREDENTIALS"}})
        resp = client.post("/login", json={"email": TEST_EMAIL, "password": "wrong"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid email or password."
        assert resp.get_json()["code"] == "auth/invalid-credential"

    def test_login_missing_fields(self, client):
        resp = client.post("/login", json={"email": TEST_EMAIL})
        assert resp.status_code == 400

    def test_register(self, client, firebase_http, store):
        firebase_http.post.side_effect = [
            fake_response(200, firebase_user_body(uid="new-1", email="new@example.com", name="")),
            fake_response(200, {}),
        ]
        resp = client.post("/register", json={
            "name": "Newbie", "email": "new@example.com", "password": "secret1",
        })
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["is_new_user"] is True
        assert data["user"]["name"] == "Newbie"
        doc = store.get("new-1").data
        assert doc["name"] == "Newbie"
        assert doc["stats"]["streakDays"] == 1

    def test_register_email_in_use(self, client, firebase_http):
        firebase_http.post.return_value = fake_response(400, {"error": {"message": "EMAIL_EXISTS"}})
        resp = client.post("/register", json={"email": TEST_EMAIL, "password": "secret1"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Email already in use."

    def test_me(self, auth_client):
        resp = auth_client.get("/api/me")
        assert resp.status_code == 200
        assert resp.get_json()["user"]["id"] == TEST_UID

    def test_logout_tears_down_state(self, auth_client, registry):
        resp = auth_client.post("/logout")
        assert resp.status_code == 200
        assert registry.get(TEST_UID) is None
        assert auth_client.get("/api/dashboard").status_code == 401

    def test_bearer_token(self, client):
        with patch.object(IdentityClient, "verify_id_token",
                          return_value=User("bearer-1", "Api User", "api@example.com")):
            resp = client.get("/api/dashboard", headers={"Authorization": "Bearer tok"})
        assert resp.status_code == 200
        assert resp.get_json()["user"]["id"] == "bearer-1"

    def test_bad_bearer_token(self, client):
        resp = client.get("/api/dashboard", headers={"Authorization": "Bearer garbage"})
        assert resp.status_code == 401

    def test_update_profile(self, auth_client, firebase_http, store):
        firebase_http.post.return_value = fake_response(200, {})
        resp = auth_client.patch("/api/profile", json={"name": "Renamed"})
        assert resp.status_code == 200
        assert resp.get_json()["user"]["name"] == "Renamed"
        assert firebase_http.post.call_args[0][0].endswith("/accounts:update")
        assert store.get(TEST_UID).data["name"] == "Renamed"

    def test_update_profile_requires_name(self, auth_client):
        assert auth_client.patch("/api/profile", json={"name": "  "}).status_code == 400


# ── Dashboard & generation ────────────────────────────


class TestDashboard:
    def test_fresh_user(self, auth_client):
        data = auth_client.get("/api/dashboard").get_json()
        assert data["stats"]["xp"] == 0
        assert data["stats"]["streakDays"] == 1
        assert data["level"] == 1
        assert data["recent_sets"] == []
        assert data["ai_available"] is True
        assert data["google_login"] is False
        assert len(data["suggestions"]) == 5
        assert data["sync"]["pending_write"] is False

    def test_recent_sets_capped_at_four(self, auth_client):
        for i in range(5):
            _generate(auth_client, topic=f"Topic {i}")
        data = auth_client.get("/api/dashboard").get_json()
        assert len(data["recent_sets"]) == 4
        assert data["set_count"] == 5
        assert data["stats"]["xp"] == 250


class TestGenerate:
    def test_quiz(self, auth_client, generator, store):
        resp = _generate(auth_client, difficulty="Hard", num_questions=7)
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["set"]["type"] == "QUIZ"
        assert data["set"]["title"] == "Photosynthesis"
        assert data["player"]["kind"] == "quiz"
        assert data["stats"]["xp"] == 50
        assert data["stats"]["itemsCreated"] == 1
        generator.generate_quiz.assert_called_once_with("Photosynthesis", "Hard", 7, None)
        assert store.get(TEST_UID).data["sets"][0]["id"] == data["set"]["id"]

    def test_flashcards_and_summary(self, auth_client):
        deck = _generate(auth_client, type="FLASHCARDS").get_json()
        summary = _generate(auth_client, type="summary", topic="Some long notes").get_json()
        assert deck["player"]["kind"] == "flashcards"
        assert summary["set"]["content"] == "- Point one\n- Point two"
        sets = auth_client.get("/api/sets").get_json()["sets"]
        assert [s["type"] for s in sets] == ["SUMMARY", "FLASHCARDS"]
        assert "content" not in sets[0]

    def test_document_upload(self, auth_client, generator):
        resp = auth_client.post("/api/sets/generate", data={
            "type": "QUIZ",
            "file": (io.BytesIO(b"%PDF-1.4 lecture notes"), "lecture.pdf"),
        }, content_type="multipart/form-data")
        assert resp.status_code == 201
        assert resp.get_json()["set"]["title"] == "lecture.pdf"
        file_input = generator.generate_quiz.call_args[0][3]
        assert file_input.mime_type == "application/pdf"
        assert file_input.raw == b"%PDF-1.4 lecture notes"

    def test_document_only_for_quizzes(self, auth_client):
        resp = auth_client.post("/api/sets/generate", data={
            "type": "FLASHCARDS",
            "file": (io.BytesIO(b"%PDF-1.4"), "notes.pdf"),
        }, content_type="multipart/form-data")
        assert resp.status_code == 400

    @pytest.mark.parametrize("body", [
        {"topic": ""},
        {"type": "ESSAY"},
        {"difficulty": "Impossible"},
        {"num_questions": 0},
        {"num_questions": 51},
        {"num_questions": "many"},
    ])
    def test_validation(self, auth_client, generator, body):
        resp = _generate(auth_client, **body)
        assert resp.status_code == 400
        generator.generate_quiz.assert_not_called()

    def test_generation_failure(self, auth_client, generator, store):
        generator.generate_quiz.side_effect = GenerationError("model overloaded")
        resp = _generate(auth_client)
        assert resp.status_code == 502
        assert resp.get_json()["error"] == GENERATION_FAILED_MESSAGE
        assert store.get(TEST_UID).data["sets"] == []

    def test_get_and_open_set(self, auth_client):
        set_id = _generate(auth_client).get_json()["set"]["id"]
        auth_client.post("/api/player/exit")
        assert auth_client.get(f"/api/sets/{set_id}").get_json()["set"]["id"] == set_id
        resp = auth_client.post(f"/api/sets/{set_id}/open")
        assert resp.get_json()["player"]["set_id"] == set_id
        assert auth_client.get("/api/sets/nope").status_code == 404
        assert auth_client.post("/api/sets/nope/open").status_code == 404


# ── Players ───────────────────────────────────────────


class TestQuizPlayer:
    def test_full_quiz(self, auth_client, generator, store):
        generator.generate_quiz.return_value = make_questions(2)
        _generate(auth_client, num_questions=2)

        first = auth_client.post("/api/player/quiz/answer", json={"index": 0}).get_json()
        assert first["answer"]["correct"] is True
        assert auth_client.post("/api/player/quiz/next").get_json().get("result") is None

        second = auth_client.post("/api/player/quiz/answer", json={"index": 1}).get_json()
        assert second["answer"]["correct"] is False
        assert second["answer"]["correct_index"] == 0

        done = auth_client.post("/api/player/quiz/next").get_json()
        assert done["result"]["score"] == 1
        assert done["result"]["xp_change"] == -5
        assert done["stats"]["xp"] == 45
        assert done["stats"]["quizzesTaken"] == 1

        mistakes = auth_client.get("/api/mistakes").get_json()["mistakes"]
        assert len(mistakes) == 1
        assert mistakes[0]["userAnswer"] == "Q2 option 1"
        assert len(store.get(TEST_UID).data["mistakes"]) == 1

    def test_next_after_finish_does_not_score_twice(self, auth_client, generator):
        generator.generate_quiz.return_value = make_questions(1)
        _generate(auth_client, num_questions=1)
        auth_client.post("/api/player/quiz/answer", json={"index": 0})
        auth_client.post("/api/player/quiz/next")
        again = auth_client.post("/api/player/quiz/next").get_json()
        assert "stats" not in again
        stats = auth_client.get("/api/dashboard").get_json()["stats"]
        assert stats["quizzesTaken"] == 1
        assert stats["xp"] == 50 + 60

    def test_next_before_answer(self, auth_client):
        _generate(auth_client)
        assert auth_client.post("/api/player/quiz/next").status_code == 400

    def test_answer_must_be_integer(self, auth_client):
        _generate(auth_client)
        assert auth_client.post("/api/player/quiz/answer", json={"index": "1"}).status_code == 400
        assert auth_client.post("/api/player/quiz/answer", json={"index": True}).status_code == 400

    def test_no_open_player(self, auth_client):
        assert auth_client.post("/api/player/quiz/answer", json={"index": 0}).status_code == 409

    def test_restart(self, auth_client):
        _generate(auth_client)
        auth_client.post("/api/player/quiz/answer", json={"index": 0})
        player = auth_client.post("/api/player/quiz/restart").get_json()["player"]
        assert player["index"] == 0
        assert player["answered"] is False


class TestFlashcardPlayer:
    def test_flip_and_navigate(self, auth_client, generator):
        generator.generate_flashcards.return_value = make_cards(3)
        _generate(auth_client, type="FLASHCARDS")

        flipped = auth_client.post("/api/player/flashcards/flip").get_json()["player"]
        assert flipped["flipped"] is True
        assert flipped["back"] == "Definition 0"

        nxt = auth_client.post("/api/player/flashcards/next").get_json()["player"]
        assert nxt["position"] == 2
        assert nxt["flipped"] is False

        prev = auth_client.post("/api/player/flashcards/prev").get_json()["player"]
        assert prev["position"] == 1

        assert auth_client.post("/api/player/flashcards/shuffle").status_code == 404

    def test_quiz_routes_reject_deck(self, auth_client):
        _generate(auth_client, type="FLASHCARDS")
        assert auth_client.post("/api/player/quiz/answer", json={"index": 0}).status_code == 409

    def test_exit(self, auth_client):
        _generate(auth_client, type="FLASHCARDS")
        auth_client.post("/api/player/exit")
        assert auth_client.get("/api/player").get_json()["player"] is None


# ── Smart Revision ────────────────────────────────────


class TestRevision:
    def _seed_mistakes(self, store, n):
        store.merge(TEST_UID, {"mistakes": [
            Mistake(f"m{i}", f"Q{i}?", f"A{i}", "Biology", i).to_dict() for i in range(n)
        ]})

    def test_no_mistakes(self, auth_client, generator):
        resp = auth_client.post("/api/revision")
        assert resp.status_code == 200
        assert resp.get_json()["set"] is None
        generator.generate_revision_quiz.assert_not_called()

    def test_revision_consumes_batch(self, auth_client, store):
        self._seed_mistakes(store, 12)
        resp = auth_client.post("/api/revision")
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["set"]["title"].startswith("Smart Revision - ")
        assert data["set"]["id"].startswith("rev-")
        assert data["player"]["kind"] == "quiz"
        assert data["mistake_count"] == 2
        assert len(store.get(TEST_UID).data["mistakes"]) == 2

    def test_revision_failure_keeps_mistakes(self, auth_client, generator, store):
        self._seed_mistakes(store, 3)
        generator.generate_revision_quiz.side_effect = GenerationError("down")
        resp = auth_client.post("/api/revision")
        assert resp.status_code == 502
        assert resp.get_json()["error"] == REVISION_FAILED_MESSAGE
        assert len(store.get(TEST_UID).data["mistakes"]) == 3


# ── Sync status ───────────────────────────────────────


class TestSync:
    def test_permission_denied_surfaces_rules(self, auth_client, store):
        store.emit_error(TEST_UID, StoreError("Missing or insufficient permissions.", code=PERMISSION_DENIED))
        sync = auth_client.get("/api/sync").get_json()
        assert sync["sync_error"]["kind"] == "permission-denied"
        assert sync["sync_error"]["rules"] == RECOMMENDED_RULES

        dismissed = auth_client.post("/api/sync/dismiss").get_json()
        assert dismissed["sync_error"] is None

    def test_failed_write_reported(self, auth_client, store):
        store.fail_next_write(StoreError("deadline exceeded", code="unavailable"))
        resp = _generate(auth_client)
        assert resp.status_code == 201
        sync = auth_client.get("/api/sync").get_json()
        assert sync["write_error"] == "deadline exceeded"
        assert sync["pending_write"] is False


# ── AI tools ──────────────────────────────────────────


class TestChat:
    def test_conversation(self, auth_client, generator):
        resp = auth_client.post("/api/chat/message", json={"message": "What do mitochondria do?"})
        assert resp.status_code == 200
        assert resp.get_json()["reply"]["text"] == "Mitochondria produce ATP."
        auth_client.post("/api/chat/message", json={"message": "And chloroplasts?"})

        history = auth_client.get("/api/chat").get_json()["messages"]
        assert [m["role"] for m in history] == ["user", "model", "user", "model"]
        generator.create_chat.assert_called_once()

    def test_reset_starts_new_chat(self, auth_client, generator):
        auth_client.post("/api/chat/message", json={"message": "hi"})
        auth_client.post("/api/chat/reset")
        assert auth_client.get("/api/chat").get_json()["messages"] == []
        auth_client.post("/api/chat/message", json={"message": "hi again"})
        assert generator.create_chat.call_count == 2

    def test_empty_message(self, auth_client):
        assert auth_client.post("/api/chat/message", json={"message": " "}).status_code == 400


class TestImageAnalysis:
    def test_json_image(self, auth_client, generator):
        image = base64.b64encode(b"\x89PNG fake").decode("ascii")
        resp = auth_client.post("/api/analyze-image", json={
            "image": image, "mime_type": "image/png", "prompt": "Label the parts",
        })
        assert resp.status_code == 200
        assert resp.get_json()["analysis"] == "A diagram of a cell."
        generator.analyze_image.assert_called_once_with(image, "Label the parts", "image/png")

    def test_upload(self, auth_client, generator):
        resp = auth_client.post("/api/analyze-image", data={
            "image": (io.BytesIO(b"\xff\xd8\xff photo"), "photo.jpg"),
        }, content_type="multipart/form-data")
        assert resp.status_code == 200
        assert generator.analyze_image.call_args[0][2] == "image/jpeg"

    def test_unsupported_type(self, auth_client):
        resp = auth_client.post("/api/analyze-image", json={"image": "aGk=", "mime_type": "image/gif"})
        assert resp.status_code == 400

    def test_failure(self, auth_client, generator):
        generator.analyze_image.side_effect = GenerationError("vision down")
        resp = auth_client.post("/api/analyze-image", json={"image": "aGk=", "mime_type": "image/png"})
        assert resp.status_code == 502


class TestSpeech:
    def test_wav_response(self, auth_client):
        resp = auth_client.post("/api/tts", json={"text": "Hello world"})
        assert resp.status_code == 200
        assert resp.mimetype == "audio/wav"
        with wave.open(io.BytesIO(resp.get_data())) as wav:
            assert wav.getframerate() == 24000
            assert wav.getnframes() == 240

    def test_base64_format(self, auth_client):
        resp = auth_client.post("/api/tts?format=base64", json={"text": "Hello"})
        data = resp.get_json()
        assert data["mime_type"] == "audio/wav"
        assert base64.b64decode(data["audio"])[:4] == b"RIFF"

    def test_text_required(self, auth_client):
        assert auth_client.post("/api/tts", json={"text": ""}).status_code == 400

    def test_failure(self, auth_client, generator):
        generator.generate_speech.side_effect = GenerationError("No audio generated")
        resp = auth_client.post("/api/tts", json={"text": "Hello"})
        assert resp.status_code == 502
        assert resp.get_json()["error"] == GENERATION_FAILED_MESSAGE
