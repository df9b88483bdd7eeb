"""
Gemini content generation: quizzes, flashcards, revision quizzes,
summaries, image analysis, speech and chat.

Every request goes through ai_resilience.resilient_call(); structured
outputs use a response schema and are validated locally into domain
types, so callers only ever see domain objects or a GenerationError.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from google import genai
from google.genai import types

from ai_resilience import resilient_call
from gamification import now_ms
from models import (
    ContentType,
    Flashcard,
    FlashcardContent,
    Mistake,
    QuizContent,
    QuizQuestion,
    StudyContent,
    StudySet,
    SummaryContent,
)

logger = logging.getLogger(__name__)

DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
DEFAULT_VISION_MODEL = "gemini-3-pro-preview"
DEFAULT_TTS_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_TTS_VOICE = "Kore"

FLASHCARD_COUNT = 8
REVISION_QUESTION_COUNT = 5
SUMMARY_INPUT_LIMIT = 8000
DIFFICULTIES = ("Easy", "Medium", "Hard", "Expert")
MIN_QUESTIONS = 1
MAX_QUESTIONS = 50

GENERATION_FAILED_MESSAGE = "Failed to generate content. Please try again."
REVISION_FAILED_MESSAGE = "Could not generate revision quiz. Please try again."
CHAT_FALLBACK_REPLY = "I'm having trouble connecting to my brain right now. Please try again."
DEFAULT_IMAGE_PROMPT = "Analyze this image in detail."
CHAT_SYSTEM_INSTRUCTION = (
    "You are StudyAI, a helpful, encouraging, and knowledgeable study assistant. "
    "Help the user learn concepts, answer questions about their study materials, "
    "and provide tips. Keep answers concise."
)


class GenerationError(Exception):
    """The AI service failed or returned something unusable."""


# ── Schemas ────────────────────────────────────────────────

QUIZ_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "question": {"type": "STRING", "description": "The quiz question text"},
            "options": {
                "type": "ARRAY",
                "items": {"type": "STRING"},
                "description": "An array of 4 possible answers",
            },
            "correctAnswerIndex": {
                "type": "INTEGER",
                "description": "The index (0-3) of the correct answer",
            },
            "explanation": {
                "type": "STRING",
                "description": "A brief explanation of why the answer is correct",
            },
        },
        "required": ["question", "options", "correctAnswerIndex", "explanation"],
    },
}

FLASHCARD_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "front": {
                "type": "STRING",
                "description": "The term, concept, or question on the front of the card",
            },
            "back": {
                "type": "STRING",
                "description": "The definition, answer, or detail on the back",
            },
            "hint": {
                "type": "STRING",
                "description": "A subtle hint to help recall the answer",
            },
        },
        "required": ["front", "back"],
    },
}


# ── File input ─────────────────────────────────────────────

@dataclass(frozen=True)
class FileInput:
    mime_type: str
    data: str  # base64

    @property
    def raw(self) -> bytes:
        return base64.b64decode(self.data)


# Magic byte signatures for file header validation
_MAGIC_BYTES = {
    ".pdf": b"%PDF",
    ".png": b"\x89PNG",
    ".jpg": b"\xff\xd8\xff",
    ".jpeg": b"\xff\xd8\xff",
    ".webp": b"RIFF",
}

_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".txt": "text/plain",
    ".md": "text/markdown",
}

ALLOWED_EXTENSIONS = frozenset(_MIME_TYPES)


def file_input_from_upload(file_storage) -> FileInput:
    """Read an uploaded file into a FileInput.

    Raises ValueError when the extension is not supported or the content
    does not match it.
    """
    filename = file_storage.filename or ""
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValueError(f"Unsupported file type: {ext or filename!r}")

    data = file_storage.read()
    if not data:
        raise ValueError("Uploaded file is empty")

    expected = _MAGIC_BYTES.get(ext)
    if expected is not None and not data.startswith(expected):
        raise ValueError(f"File content does not match its {ext} extension")
    if expected is None:
        try:
            data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValueError("Text files must be UTF-8 encoded") from e

    return FileInput(mime_type=_MIME_TYPES[ext], data=base64.b64encode(data).decode("ascii"))


# ── Response parsing ───────────────────────────────────────

def _text_of(response) -> str:
    try:
        text = response.text
    except (ValueError, AttributeError):
        text = None
    if not text:
        raise GenerationError("No response from AI")
    return text


def _json_list(response) -> list:
    text = _text_of(response)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise GenerationError(f"AI returned invalid JSON: {e}") from e
    if not isinstance(data, list):
        raise GenerationError("AI returned JSON that is not a list")
    return data


def parse_quiz(response) -> list[QuizQuestion]:
    try:
        questions = [QuizQuestion.from_dict(q) for q in _json_list(response)]
    except ValueError as e:
        raise GenerationError(f"AI returned a malformed question: {e}") from e
    if not questions:
        raise GenerationError("AI returned no questions")
    return questions


def parse_flashcards(response) -> list[Flashcard]:
    try:
        cards = [Flashcard.from_dict(c) for c in _json_list(response)]
    except ValueError as e:
        raise GenerationError(f"AI returned a malformed flashcard: {e}") from e
    if not cards:
        raise GenerationError("AI returned no flashcards")
    return cards


def mistakes_context(mistakes: list[Mistake]) -> str:
    return "\n\n".join(
        f"- Topic: {m.topic}\n  Question: {m.question}\n  Correct Answer: {m.correct_answer}"
        for m in mistakes
    )


# ── Generator ──────────────────────────────────────────────

class GeminiGenerator:
    """Thin wrapper over the google-genai client."""

    def __init__(
        self,
        api_key: str = "",
        text_model: str = DEFAULT_TEXT_MODEL,
        vision_model: str = DEFAULT_VISION_MODEL,
        tts_model: str = DEFAULT_TTS_MODEL,
        tts_voice: str = DEFAULT_TTS_VOICE,
        max_attempts: int = 1,
        client: genai.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.text_model = text_model
        self.vision_model = vision_model
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.max_attempts = max_attempts
        self._client = client

    @classmethod
    def from_config(cls, config) -> GeminiGenerator:
        return cls(
            api_key=config.get("GOOGLE_API_KEY", ""),
            text_model=config.get("GEMINI_TEXT_MODEL", DEFAULT_TEXT_MODEL),
            vision_model=config.get("GEMINI_VISION_MODEL", DEFAULT_VISION_MODEL),
            tts_model=config.get("GEMINI_TTS_MODEL", DEFAULT_TTS_MODEL),
            tts_voice=config.get("GEMINI_TTS_VOICE", DEFAULT_TTS_VOICE),
            max_attempts=int(config.get("AI_MAX_ATTEMPTS", 1)),
        )

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self.api_key)

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise GenerationError("GOOGLE_API_KEY is not configured")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _generate(self, model: str, contents, config: types.GenerateContentConfig | None = None,
                  input_text: str = ""):
        client = self.client
        try:
            response, _metrics = resilient_call(
                model,
                lambda: client.models.generate_content(model=model, contents=contents, config=config),
                input_text=input_text,
                max_attempts=self.max_attempts,
            )
        except GenerationError:
            raise
        except Exception as e:
            logger.error("Gemini %s request failed: %s", model, e)
            raise GenerationError(str(e)) from e
        return response

    # ── Structured content ─────────────────────────────────

    def generate_quiz(self, topic: str, difficulty: str = "Medium", num_questions: int = 5,
                      file: FileInput | None = None) -> list[QuizQuestion]:
        if file is not None:
            prompt = (
                f"Analyze this document and create a strict {num_questions}-question multiple "
                f"choice quiz about the content. Difficulty: {difficulty}. "
                "Ensure options are plausible. Output JSON."
            )
            contents = [types.Part.from_bytes(data=file.raw, mime_type=file.mime_type), prompt]
        else:
            prompt = (
                f'Create a strict {num_questions}-question multiple choice quiz about: "{topic}". '
                f"Difficulty: {difficulty}. Ensure the options are plausible. "
                "The output must be a valid JSON array matching the schema."
            )
            contents = prompt

        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=QUIZ_SCHEMA,
            temperature=0.7,
        )
        return parse_quiz(self._generate(self.text_model, contents, config, prompt))

    def generate_flashcards(self, topic: str) -> list[Flashcard]:
        prompt = (
            f'Create a set of {FLASHCARD_COUNT} educational flashcards about: "{topic}".\n'
            "Keep the front concise and the back informative.\n"
            "The output must be a valid JSON array matching the schema."
        )
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=FLASHCARD_SCHEMA,
        )
        return parse_flashcards(self._generate(self.text_model, prompt, config, prompt))

    def generate_revision_quiz(self, mistakes: list[Mistake]) -> list[QuizQuestion]:
        prompt = (
            "The user answered the following questions incorrectly in previous sessions:\n\n"
            f"{mistakes_context(mistakes)}\n\n"
            f"Please create a remedial revision quiz ({REVISION_QUESTION_COUNT} questions) that "
            "targets the underlying concepts of these mistakes.\n"
            "Do not simply repeat the questions. Create NEW questions that test the same "
            "knowledge or logic to ensure the user has mastered the concept.\n"
            "The output must be a valid JSON array matching the schema."
        )
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=QUIZ_SCHEMA,
            temperature=0.7,
        )
        return parse_quiz(self._generate(self.text_model, prompt, config, prompt))

    # ── Free text ──────────────────────────────────────────

    def generate_summary(self, text: str) -> str:
        prompt = (
            "Provide a structured summary of the following content. "
            "Use bullet points for key takeaways. "
            f"Content: {text[:SUMMARY_INPUT_LIMIT]}"
        )
        return _text_of(self._generate(self.text_model, prompt, input_text=prompt))

    def analyze_image(self, data_b64: str, prompt: str = "", mime_type: str = "image/jpeg") -> str:
        try:
            data = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise GenerationError(f"Invalid image data: {e}") from e
        prompt = prompt or DEFAULT_IMAGE_PROMPT
        contents = [types.Part.from_bytes(data=data, mime_type=mime_type), prompt]
        return _text_of(self._generate(self.vision_model, contents, input_text=prompt))

    def generate_speech(self, text: str) -> str:
        """Speak ``text``; returns base64 raw PCM (mono, 16-bit, 24 kHz)."""
        config = types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self.tts_voice),
                ),
            ),
        )
        response = self._generate(self.tts_model, text, config, text)
        try:
            audio = response.candidates[0].content.parts[0].inline_data.data
        except (AttributeError, IndexError, TypeError):
            audio = None
        if not audio:
            raise GenerationError("No audio generated")
        if isinstance(audio, bytes):
            return base64.b64encode(audio).decode("ascii")
        return audio

    # ── Chat ───────────────────────────────────────────────

    def create_chat(self) -> ChatSession:
        chat = self.client.chats.create(
            model=self.text_model,
            config=types.GenerateContentConfig(system_instruction=CHAT_SYSTEM_INSTRUCTION),
        )
        return ChatSession(chat, self.text_model, self.max_attempts)


class ChatSession:
    """Multi-turn conversation; history lives in the SDK chat object."""

    def __init__(self, chat, model: str, max_attempts: int = 1) -> None:
        self._chat = chat
        self.model = model
        self.max_attempts = max_attempts

    def send(self, text: str) -> str:
        try:
            response, _metrics = resilient_call(
                self.model,
                lambda: self._chat.send_message(text),
                input_text=text,
                max_attempts=self.max_attempts,
            )
            return _text_of(response)
        except Exception as e:
            logger.error("Chat turn failed: %s", e)
            return CHAT_FALLBACK_REPLY


# ── Study sets ─────────────────────────────────────────────

def generate_study_set(
    generator: GeminiGenerator,
    content_type: ContentType,
    topic: str = "",
    difficulty: str = "Medium",
    num_questions: int = 5,
    file: FileInput | None = None,
    file_name: str = "",
    now: datetime | None = None,
) -> StudySet:
    """Ask Gemini for content of ``content_type`` and wrap it in a new StudySet.

    Only quizzes can be generated from an uploaded document; flashcards and
    summaries work from the topic text.
    """
    content: StudyContent
    if content_type is ContentType.QUIZ:
        content = QuizContent(generator.generate_quiz(topic, difficulty, num_questions, file))
    elif content_type is ContentType.FLASHCARDS:
        content = FlashcardContent(generator.generate_flashcards(topic))
    else:
        content = SummaryContent(generator.generate_summary(topic))

    created = now_ms(now)
    return StudySet(
        id=str(created),
        title=topic or file_name or "Generated Content",
        created_at=created,
        content=content,
        mastery=0,
    )
