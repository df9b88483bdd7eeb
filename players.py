"""
Study players: interactive state machines for quizzes and flashcards.

A player is created from a StudySet via ``player_for()``; the HTTP layer
keeps one active player per user session and serialises it with
``to_dict()`` after every action.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from gamification import now_ms, quiz_xp_delta
from models import (
    Flashcard,
    FlashcardContent,
    Mistake,
    QuizContent,
    QuizQuestion,
    StudySet,
    SummaryContent,
)


@dataclass
class AnswerResult:
    correct: bool
    selected_index: int
    correct_index: int
    explanation: str

    def to_dict(self) -> dict:
        return {
            "correct": self.correct,
            "selected_index": self.selected_index,
            "correct_index": self.correct_index,
            "explanation": self.explanation,
        }


@dataclass
class QuizResult:
    set_id: str
    score: int
    total: int
    mistakes: list[Mistake] = field(default_factory=list)

    @property
    def percentage(self) -> int:
        return round(self.score / self.total * 100) if self.total else 0

    @property
    def xp_change(self) -> int:
        return quiz_xp_delta(self.score, self.total)

    @property
    def perfect(self) -> bool:
        return self.total > 0 and self.score == self.total

    def to_dict(self) -> dict:
        return {
            "set_id": self.set_id,
            "score": self.score,
            "total": self.total,
            "percentage": self.percentage,
            "xp_change": self.xp_change,
            "perfect": self.perfect,
            "mistakes": [m.to_dict() for m in self.mistakes],
        }


class QuizPlayer:
    """Walks through a quiz one question at a time."""

    kind = "quiz"

    def __init__(self, study_set: StudySet) -> None:
        if not isinstance(study_set.content, QuizContent):
            raise ValueError(f"Set {study_set.id} is not a quiz")
        if not study_set.content.questions:
            raise ValueError(f"Quiz {study_set.id} has no questions")
        self.study_set = study_set
        self.questions: list[QuizQuestion] = study_set.content.questions
        self.restart()

    def restart(self) -> None:
        self.current_index = 0
        self.selected_option: int | None = None
        self.is_answered = False
        self.score = 0
        self.session_mistakes: list[Mistake] = []
        self.result: QuizResult | None = None

    @property
    def current_question(self) -> QuizQuestion:
        return self.questions[self.current_index]

    @property
    def finished(self) -> bool:
        return self.result is not None

    def answer(self, index: int, now: datetime | None = None) -> AnswerResult:
        """Record an answer for the current question.

        A second answer to the same question is ignored and the first
        result is returned again.
        """
        if self.finished:
            raise ValueError("Quiz is already finished")
        question = self.current_question
        if not 0 <= index < len(question.options):
            raise ValueError(f"Option index out of range: {index}")

        if self.is_answered:
            index = self.selected_option
        else:
            self.selected_option = index
            self.is_answered = True
            if index == question.correct_answer_index:
                self.score += 1
            else:
                self.session_mistakes.append(Mistake(
                    id=uuid.uuid4().hex,
                    question=question.question,
                    correct_answer=question.correct_answer,
                    user_answer=question.options[index],
                    topic=self.study_set.title,
                    timestamp=now_ms(now),
                ))

        return AnswerResult(
            correct=index == question.correct_answer_index,
            selected_index=index,
            correct_index=question.correct_answer_index,
            explanation=question.explanation,
        )

    def next(self) -> QuizResult | None:
        """Advance to the next question; returns the result after the last one."""
        if self.finished:
            return self.result
        if not self.is_answered:
            raise ValueError("Answer the current question first")
        if self.current_index < len(self.questions) - 1:
            self.current_index += 1
            self.selected_option = None
            self.is_answered = False
            return None
        self.result = QuizResult(
            set_id=self.study_set.id,
            score=self.score,
            total=len(self.questions),
            mistakes=list(self.session_mistakes),
        )
        return self.result

    def to_dict(self) -> dict:
        d = {
            "kind": self.kind,
            "set_id": self.study_set.id,
            "title": self.study_set.title,
            "index": self.current_index,
            "total": len(self.questions),
            "score": self.score,
            "answered": self.is_answered,
            "selected_option": self.selected_option,
            "finished": self.finished,
        }
        if self.finished:
            d["result"] = self.result.to_dict()
        else:
            q = self.current_question
            d["question"] = {"question": q.question, "options": list(q.options)}
            if self.is_answered:
                d["question"]["correct_index"] = q.correct_answer_index
                d["question"]["explanation"] = q.explanation
        return d


class FlashcardPlayer:
    """Cycles through a deck; next/prev wrap around and hide the back."""

    kind = "flashcards"

    def __init__(self, study_set: StudySet) -> None:
        if not isinstance(study_set.content, FlashcardContent):
            raise ValueError(f"Set {study_set.id} is not a flashcard deck")
        if not study_set.content.cards:
            raise ValueError(f"Deck {study_set.id} has no cards")
        self.study_set = study_set
        self.cards: list[Flashcard] = study_set.content.cards
        self.current_index = 0
        self.is_flipped = False

    @property
    def current_card(self) -> Flashcard:
        return self.cards[self.current_index]

    @property
    def position(self) -> int:
        return self.current_index + 1

    def flip(self) -> bool:
        self.is_flipped = not self.is_flipped
        return self.is_flipped

    def next(self) -> Flashcard:
        self.is_flipped = False
        self.current_index = (self.current_index + 1) % len(self.cards)
        return self.current_card

    def prev(self) -> Flashcard:
        self.is_flipped = False
        self.current_index = (self.current_index - 1 + len(self.cards)) % len(self.cards)
        return self.current_card

    def to_dict(self) -> dict:
        card = self.current_card
        d = {
            "kind": self.kind,
            "set_id": self.study_set.id,
            "title": self.study_set.title,
            "position": self.position,
            "total": len(self.cards),
            "flipped": self.is_flipped,
            "front": card.front,
            "hint": card.hint,
        }
        if self.is_flipped:
            d["back"] = card.back
        return d


class SummaryView:
    kind = "summary"

    def __init__(self, study_set: StudySet) -> None:
        if not isinstance(study_set.content, SummaryContent):
            raise ValueError(f"Set {study_set.id} is not a summary")
        self.study_set = study_set

    @property
    def text(self) -> str:
        return self.study_set.content.text

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "set_id": self.study_set.id,
            "title": self.study_set.title,
            "text": self.text,
        }


Player = QuizPlayer | FlashcardPlayer | SummaryView


def player_for(study_set: StudySet) -> Player:
    """Build the player matching the set's content variant."""
    content = study_set.content
    match content:
        case QuizContent():
            return QuizPlayer(study_set)
        case FlashcardContent():
            return FlashcardPlayer(study_set)
        case SummaryContent():
            return SummaryView(study_set)
    raise TypeError(f"Unsupported study content: {type(content).__name__}")
