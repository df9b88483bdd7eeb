"""
Domain types for StudyAI.

Every type round-trips through ``to_dict()`` / ``from_dict()`` using the
camelCase field names stored in the per-user document, so a document
written by an older client decodes unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class ContentType(str, Enum):
    QUIZ = "QUIZ"
    FLASHCARDS = "FLASHCARDS"
    SUMMARY = "SUMMARY"


QUIZ_OPTION_COUNT = 4


def _require(data: dict, key: str) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"Expected an object, got {type(data).__name__}")
    if key not in data or data[key] is None:
        raise ValueError(f"Missing field: {key}")
    return data[key]


# ── Quiz & flashcards ──────────────────────────────────────

@dataclass
class QuizQuestion:
    """One multiple-choice question with exactly four options."""

    question: str
    options: list[str]
    correct_answer_index: int
    explanation: str = ""

    def __post_init__(self) -> None:
        if len(self.options) != QUIZ_OPTION_COUNT:
            raise ValueError(
                f"A quiz question needs {QUIZ_OPTION_COUNT} options, got {len(self.options)}"
            )
        if not 0 <= self.correct_answer_index < QUIZ_OPTION_COUNT:
            raise ValueError(f"correctAnswerIndex out of range: {self.correct_answer_index}")

    @property
    def correct_answer(self) -> str:
        return self.options[self.correct_answer_index]

    def to_dict(self) -> dict:
        return {
            "question": self.question,
            "options": list(self.options),
            "correctAnswerIndex": self.correct_answer_index,
            "explanation": self.explanation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> QuizQuestion:
        options = _require(data, "options")
        if not isinstance(options, list):
            raise ValueError("options must be a list")
        try:
            index = int(_require(data, "correctAnswerIndex"))
        except (TypeError, ValueError) as e:
            raise ValueError(f"correctAnswerIndex must be an integer: {e}") from e
        return cls(
            question=str(_require(data, "question")),
            options=[str(o) for o in options],
            correct_answer_index=index,
            explanation=str(data.get("explanation") or ""),
        )


@dataclass
class Flashcard:
    front: str
    back: str
    hint: str | None = None

    def to_dict(self) -> dict:
        d = {"front": self.front, "back": self.back}
        if self.hint:
            d["hint"] = self.hint
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Flashcard:
        return cls(
            front=str(_require(data, "front")),
            back=str(_require(data, "back")),
            hint=data.get("hint") or None,
        )


# ── Study set content variants ─────────────────────────────
# The content shape is fixed by the variant; ContentType is derived from it.

@dataclass
class QuizContent:
    questions: list[QuizQuestion]

    content_type = ContentType.QUIZ

    def to_wire(self) -> list[dict]:
        return [q.to_dict() for q in self.questions]


@dataclass
class FlashcardContent:
    cards: list[Flashcard]

    content_type = ContentType.FLASHCARDS

    def to_wire(self) -> list[dict]:
        return [c.to_dict() for c in self.cards]


@dataclass
class SummaryContent:
    text: str

    content_type = ContentType.SUMMARY

    def to_wire(self) -> str:
        return self.text


StudyContent = Union[QuizContent, FlashcardContent, SummaryContent]


def content_from_wire(content_type: ContentType, raw: Any) -> StudyContent:
    """Decode the ``content`` field according to its set type."""
    if content_type is ContentType.QUIZ:
        if not isinstance(raw, list):
            raise ValueError("QUIZ content must be a list of questions")
        return QuizContent([QuizQuestion.from_dict(q) for q in raw])
    if content_type is ContentType.FLASHCARDS:
        if not isinstance(raw, list):
            raise ValueError("FLASHCARDS content must be a list of cards")
        return FlashcardContent([Flashcard.from_dict(c) for c in raw])
    if content_type is ContentType.SUMMARY:
        if not isinstance(raw, str):
            raise ValueError("SUMMARY content must be a string")
        return SummaryContent(raw)
    raise ValueError(f"Unknown content type: {content_type}")


@dataclass
class StudySet:
    """A generated unit of study content owned by one user."""

    id: str
    title: str
    created_at: int  # epoch milliseconds
    content: StudyContent
    mastery: int = 0
    score: int | None = None

    @property
    def type(self) -> ContentType:
        return self.content.content_type

    @property
    def item_count(self) -> int:
        if isinstance(self.content, QuizContent):
            return len(self.content.questions)
        if isinstance(self.content, FlashcardContent):
            return len(self.content.cards)
        return 1

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "title": self.title,
            "type": self.type.value,
            "createdAt": self.created_at,
            "content": self.content.to_wire(),
            "mastery": self.mastery,
        }
        if self.score is not None:
            d["score"] = self.score
        return d

    def summary_dict(self) -> dict:
        """Listing view without the content payload."""
        d = self.to_dict()
        del d["content"]
        d["itemCount"] = self.item_count
        return d

    @classmethod
    def from_dict(cls, data: dict) -> StudySet:
        try:
            content_type = ContentType(_require(data, "type"))
        except ValueError as e:
            raise ValueError(f"Invalid study set type: {e}") from e
        score = data.get("score")
        return cls(
            id=str(_require(data, "id")),
            title=str(data.get("title") or "Generated Content"),
            created_at=int(data.get("createdAt") or 0),
            content=content_from_wire(content_type, data.get("content")),
            mastery=int(data.get("mastery") or 0),
            score=int(score) if score is not None else None,
        )


# ── Stats & mistakes ───────────────────────────────────────

@dataclass
class UserStats:
    xp: int = 0
    streak_days: int = 1
    items_created: int = 0
    quizzes_taken: int = 0
    last_study_date: int | None = None  # epoch milliseconds

    def to_dict(self) -> dict:
        d = {
            "xp": self.xp,
            "streakDays": self.streak_days,
            "itemsCreated": self.items_created,
            "quizzesTaken": self.quizzes_taken,
        }
        if self.last_study_date is not None:
            d["lastStudyDate"] = self.last_study_date
        return d

    @classmethod
    def from_dict(cls, data: dict) -> UserStats:
        if not isinstance(data, dict):
            raise ValueError("stats must be an object")
        last = data.get("lastStudyDate")
        return cls(
            xp=max(0, int(data.get("xp") or 0)),
            streak_days=max(1, int(data.get("streakDays") or 1)),
            items_created=int(data.get("itemsCreated") or 0),
            quizzes_taken=int(data.get("quizzesTaken") or 0),
            last_study_date=int(last) if last is not None else None,
        )


@dataclass
class Mistake:
    """One incorrectly answered quiz question, queued for revision."""

    id: str
    question: str
    correct_answer: str
    topic: str
    timestamp: int
    user_answer: str | None = None

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "question": self.question,
            "correctAnswer": self.correct_answer,
            "topic": self.topic,
            "timestamp": self.timestamp,
        }
        if self.user_answer is not None:
            d["userAnswer"] = self.user_answer
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Mistake:
        return cls(
            id=str(_require(data, "id")),
            question=str(_require(data, "question")),
            correct_answer=str(_require(data, "correctAnswer")),
            topic=str(data.get("topic") or ""),
            timestamp=int(data.get("timestamp") or 0),
            user_answer=data.get("userAnswer"),
        )


# ── Users & chat ───────────────────────────────────────────

DEFAULT_DISPLAY_NAME = "Scholar"


@dataclass(frozen=True)
class User:
    """Mirror of the identity provider's session record."""

    id: str
    name: str
    email: str

    @staticmethod
    def display_name(name: str | None, email: str | None) -> str:
        if name:
            return name
        if email and "@" in email:
            return email.split("@", 1)[0]
        return email or DEFAULT_DISPLAY_NAME

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email}


@dataclass
class ChatMessage:
    id: str
    role: str  # "user" | "model"
    text: str
    timestamp: int

    def to_dict(self) -> dict:
        return {"id": self.id, "role": self.role, "text": self.text, "timestamp": self.timestamp}


# ── Whole user document ────────────────────────────────────

@dataclass
class UserDocument:
    email: str = ""
    name: str = ""
    stats: UserStats = field(default_factory=UserStats)
    sets: list[StudySet] = field(default_factory=list)
    mistakes: list[Mistake] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "name": self.name,
            "stats": self.stats.to_dict(),
            "sets": [s.to_dict() for s in self.sets],
            "mistakes": [m.to_dict() for m in self.mistakes],
        }
