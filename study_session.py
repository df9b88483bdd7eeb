"""
Per-user application state (stats, study sets, mistake log, the active
player and the chat transcript) kept in sync with the user's remote
document.

A StudySession is opened when a user signs in and stopped when they sign
out. Remote snapshots overwrite the local copy wholesale; local mutations
update state first and then merge-write the changed fields in the
background. Writes from one session are applied one at a time in the
order they were made, and while a field has unacknowledged writes,
snapshots leave the local value of that field alone. Failed writes are
not rolled back or retried; they are reported through ``sync_status()``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime

import tasks
from document_store import (
    RECOMMENDED_RULES,
    DocumentSnapshot,
    DocumentStore,
    StoreError,
    Subscription,
    get_store,
)
from gamification import (
    CREATE_SET_XP,
    DEFAULT_STATS,
    apply_xp,
    now_ms,
    record_study,
    remove_mistakes,
    select_revision_batch,
)
from identity import AuthEvent
from models import (
    ChatMessage,
    Mistake,
    QuizContent,
    StudySet,
    User,
    UserDocument,
    UserStats,
)
from players import Player, QuizResult, player_for

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MESSAGE = (
    "Permission denied. If you are setting up, your rules might be too "
    "restrictive or haven't propagated."
)


@dataclass(frozen=True)
class SyncErrorState:
    kind: str  # "permission-denied" | "sync"
    message: str
    rules: str | None = None

    def to_dict(self) -> dict:
        d = {"kind": self.kind, "message": self.message}
        if self.rules:
            d["rules"] = self.rules
        return d

    @classmethod
    def from_store_error(cls, error: StoreError) -> SyncErrorState:
        if error.is_permission_denied:
            return cls("permission-denied", PERMISSION_DENIED_MESSAGE, RECOMMENDED_RULES)
        return cls("sync", f"Database Sync Error: {error.message}")


def revision_title(now: datetime) -> str:
    return f"Smart Revision - {now.month}/{now.day}/{now.year}"


def _decode_list(raw, decode, label: str, uid: str) -> list:
    if not isinstance(raw, list):
        logger.warning("Ignoring malformed %s for user %s: not a list", label, uid)
        return []
    items = []
    for entry in raw:
        try:
            items.append(decode(entry))
        except (ValueError, TypeError) as e:
            logger.warning("Skipping malformed %s entry for user %s: %s", label, uid, e)
    return items


class StudySession:
    """State container for one signed-in user."""

    def __init__(self, user: User, store: DocumentStore) -> None:
        self.user = user
        self.store = store
        self._lock = threading.RLock()
        self._subscription: Subscription | None = None
        self.pending_writes = 0
        self.last_write_error: str | None = None
        self._write_queue: deque[dict] = deque()
        self._draining = False
        # field name -> writes not yet acknowledged by the store
        self._unacked: dict[str, int] = {}
        self.last_access = time.monotonic()
        self._reset()

    def _reset(self) -> None:
        self.stats: UserStats = replace(DEFAULT_STATS)
        self.sets: list[StudySet] = []
        self.mistakes: list[Mistake] = []
        self.active_set: StudySet | None = None
        self.player: Player | None = None
        self.chat = None
        self.chat_history: list[ChatMessage] = []
        self.sync_error: SyncErrorState | None = None
        self.loaded = False

    @property
    def uid(self) -> str:
        return self.user.id

    # ── Lifecycle ──────────────────────────────────────────

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def start(self) -> None:
        """Subscribe to the user's document. Calling twice is a no-op."""
        if self.active:
            return
        try:
            self._subscription = self.store.subscribe(self.uid, self._on_snapshot, self._on_error)
        except StoreError as e:
            self._on_error(e)

    def stop(self) -> None:
        """Cancel the subscription and drop all per-user state."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        with self._lock:
            self._reset()

    # ── Remote sync ────────────────────────────────────────

    def _on_snapshot(self, snapshot: DocumentSnapshot) -> None:
        if not snapshot.exists:
            with self._lock:
                self.sync_error = None
            self._create_document()
            return

        with self._lock:
            data = {k: v for k, v in (snapshot.data or {}).items() if not self._unacked.get(k)}
            self.sync_error = None
            if "stats" in data:
                try:
                    self.stats = UserStats.from_dict(data["stats"])
                except (ValueError, TypeError) as e:
                    logger.warning("Ignoring malformed stats for user %s: %s", self.uid, e)
            if "sets" in data:
                self.sets = _decode_list(data["sets"], StudySet.from_dict, "sets", self.uid)
            if "mistakes" in data:
                self.mistakes = _decode_list(data["mistakes"], Mistake.from_dict, "mistakes", self.uid)
            self.loaded = True

    def _create_document(self) -> None:
        doc = UserDocument(email=self.user.email, name=self.user.name, stats=replace(DEFAULT_STATS))
        try:
            created = self.store.create_if_absent(self.uid, doc.to_dict())
            if created:
                logger.info("Created document for user %s", self.uid)
        except StoreError as e:
            logger.error("Error creating document for user %s: %s", self.uid, e)

    def _on_error(self, error: StoreError) -> None:
        logger.error("Firestore sync error for user %s (%s): %s", self.uid, error.code, error.message)
        with self._lock:
            self.sync_error = SyncErrorState.from_store_error(error)

    def dismiss_sync_error(self) -> None:
        with self._lock:
            self.sync_error = None

    # ── Persistence ────────────────────────────────────────

    @property
    def pending_write(self) -> bool:
        return self.pending_writes > 0

    def _persist(self, fields: dict) -> None:
        """Queue a merge-write of ``fields``; local state is already updated.

        At most one drain task per session is in flight, so writes reach
        the store in the order they were queued.
        """
        with self._lock:
            self.pending_writes += 1
            for key in fields:
                self._unacked[key] = self._unacked.get(key, 0) + 1
            self._write_queue.append(fields)
            if self._draining:
                return
            self._draining = True
        tasks.enqueue(self._drain_writes)

    def _drain_writes(self) -> None:
        while True:
            with self._lock:
                if not self._write_queue:
                    self._draining = False
                    return
                fields = self._write_queue.popleft()
            self._write(fields)

    def _write(self, fields: dict) -> None:
        try:
            self.store.merge(self.uid, fields)
            with self._lock:
                self.last_write_error = None
        except StoreError as e:
            logger.error("Error saving data for user %s (%s): %s", self.uid, e.code, e.message)
            with self._lock:
                self.last_write_error = e.message
        except Exception as e:
            logger.exception("Unexpected error saving data for user %s", self.uid)
            with self._lock:
                self.last_write_error = str(e)
        finally:
            with self._lock:
                self.pending_writes -= 1
                for key in fields:
                    remaining = self._unacked.get(key, 0) - 1
                    if remaining > 0:
                        self._unacked[key] = remaining
                    else:
                        self._unacked.pop(key, None)

    def sync_status(self) -> dict:
        with self._lock:
            return {
                "pending_write": self.pending_write,
                "sync_error": self.sync_error.to_dict() if self.sync_error else None,
                "write_error": self.last_write_error,
            }

    # ── Mutations ──────────────────────────────────────────

    def create_set(self, study_set: StudySet, now: datetime | None = None) -> Player:
        """Add a freshly generated set, award creation XP and open it."""
        with self._lock:
            self.stats = record_study(
                self.stats, now,
                xp=self.stats.xp + CREATE_SET_XP,
                items_created=self.stats.items_created + 1,
            )
            self.sets = [study_set, *self.sets]
            player = self._open(study_set)
            fields = {
                "stats": self.stats.to_dict(),
                "sets": [s.to_dict() for s in self.sets],
            }
        self._persist(fields)
        return player

    def complete_quiz(self, result: QuizResult, now: datetime | None = None) -> UserStats:
        with self._lock:
            self.stats = record_study(
                self.stats, now,
                xp=apply_xp(self.stats.xp, result.xp_change),
                quizzes_taken=self.stats.quizzes_taken + 1,
            )
            if result.mistakes:
                self.mistakes = [*self.mistakes, *result.mistakes]
            self.sets = [
                replace(s, score=result.score, mastery=result.percentage) if s.id == result.set_id else s
                for s in self.sets
            ]
            fields = {
                "stats": self.stats.to_dict(),
                "sets": [s.to_dict() for s in self.sets],
                "mistakes": [m.to_dict() for m in self.mistakes],
            }
            stats = self.stats
        self._persist(fields)
        return stats

    def start_revision(self, generator, now: datetime | None = None) -> StudySet | None:
        """Turn the latest mistakes into a new quiz.

        Returns None when there are no mistakes. Generator errors propagate
        and leave the mistake log unchanged.
        """
        with self._lock:
            if not self.mistakes:
                return None
            batch = select_revision_batch(self.mistakes)

        questions = generator.generate_revision_quiz(batch)

        now = now or datetime.now()
        created = now_ms(now)
        revision = StudySet(
            id=f"rev-{created}",
            title=revision_title(now),
            created_at=created,
            content=QuizContent(list(questions)),
            mastery=0,
        )
        with self._lock:
            self.sets = [revision, *self.sets]
            self.mistakes = remove_mistakes(self.mistakes, batch)
            self._open(revision)
            fields = {
                "sets": [s.to_dict() for s in self.sets],
                "mistakes": [m.to_dict() for m in self.mistakes],
            }
        self._persist(fields)
        logger.info("Revision quiz %s built from %d mistakes for user %s", revision.id, len(batch), self.uid)
        return revision

    def rename(self, name: str) -> None:
        with self._lock:
            self.user = replace(self.user, name=name)
        self._persist({"name": name})

    # ── Sets & player ──────────────────────────────────────

    def get_set(self, set_id: str) -> StudySet | None:
        with self._lock:
            return next((s for s in self.sets if s.id == set_id), None)

    def open_set(self, set_id: str) -> Player:
        """Activate a stored set in its player. Raises KeyError for an unknown id."""
        study_set = self.get_set(set_id)
        if study_set is None:
            raise KeyError(set_id)
        with self._lock:
            return self._open(study_set)

    def _open(self, study_set: StudySet) -> Player:
        self.active_set = study_set
        self.player = player_for(study_set)
        return self.player

    def close_player(self) -> None:
        with self._lock:
            self.active_set = None
            self.player = None

    # ── Chat ───────────────────────────────────────────────

    def add_chat_message(self, message: ChatMessage) -> None:
        with self._lock:
            self.chat_history.append(message)

    def reset_chat(self) -> None:
        with self._lock:
            self.chat = None
            self.chat_history = []


class SessionRegistry:
    """All open StudySessions, keyed by user id.

    Sessions untouched for ``idle_timeout`` seconds are closed by
    ``sweep()``, which ``open()`` runs at most once per ``sweep_interval``.
    """

    def __init__(self, store: DocumentStore | None = None,
                 idle_timeout: float = 3600, sweep_interval: float = 60) -> None:
        self._store = store
        self._sessions: dict[str, StudySession] = {}
        self._lock = threading.Lock()
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._last_sweep = time.monotonic()

    @property
    def store(self) -> DocumentStore:
        return self._store if self._store is not None else get_store()

    def open(self, user: User) -> StudySession:
        """Return the user's session, starting one if none is open."""
        now = time.monotonic()
        if now - self._last_sweep >= self.sweep_interval:
            self.sweep(now)
        with self._lock:
            session = self._sessions.get(user.id)
            if session is None:
                session = StudySession(user, self.store)
                self._sessions[user.id] = session
            else:
                session.user = user
            session.last_access = now
        session.start()
        return session

    def get(self, uid: str) -> StudySession | None:
        with self._lock:
            session = self._sessions.get(uid)
            if session is not None:
                session.last_access = time.monotonic()
            return session

    def sweep(self, now: float | None = None) -> list[str]:
        """Close sessions idle past ``idle_timeout``. Returns the closed uids.

        Sessions with writes still queued are kept until the next sweep.
        """
        now = time.monotonic() if now is None else now
        self._last_sweep = now
        with self._lock:
            idle = [
                uid for uid, s in self._sessions.items()
                if now - s.last_access > self.idle_timeout and not s.pending_write
            ]
        for uid in idle:
            self.close(uid)
        if idle:
            logger.info("Closed %d idle study sessions", len(idle))
        return idle

    def close(self, uid: str) -> None:
        with self._lock:
            session = self._sessions.pop(uid, None)
        if session is not None:
            session.stop()
            logger.info("Closed study session for user %s", uid)

    def close_all(self) -> None:
        with self._lock:
            uids = list(self._sessions)
        for uid in uids:
            self.close(uid)

    def handle_auth_event(self, event: AuthEvent) -> None:
        if event.kind == "signed_in":
            self.open(event.user)
        elif event.kind == "signed_out":
            self.close(event.user.id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
