"""Per-user document store with Firestore / SQLite / in-memory swap.

Each user owns exactly one document at ``users/{uid}`` holding the fields
``email``, ``name``, ``stats``, ``sets`` and ``mistakes``. The store offers
the primitives the application needs and nothing more:

    subscribe(uid, on_snapshot, on_error) -> Subscription
    get(uid) -> DocumentSnapshot
    create_if_absent(uid, data) -> bool
    merge(uid, fields)          # merge-write of a partial field set
    set(uid, data)              # full overwrite

When DOCUMENT_STORE=firestore and firebase-admin is configured, Firestore
is used; otherwise a local SQLite file (development) or a process-local
dict (tests).

Usage:
    from document_store import init_store, get_store
    init_store(app)          # called once in create_app()
    store = get_store()
    sub = store.subscribe(uid, on_snapshot, on_error)
    sub.unsubscribe()
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
PERMISSION_DENIED = "permission-denied"

RECOMMENDED_RULES = """rules_version = '2';
service cloud.firestore {
  match /databases/{database}/documents {
    match /users/{userId} {
      allow read, write: if request.auth != null && request.auth.uid == userId;
    }
  }
}"""


@dataclass(frozen=True)
class DocumentSnapshot:
    exists: bool
    data: dict | None = None


class StoreError(Exception):
    """A document store failure, tagged with a provider-neutral code."""

    def __init__(self, message: str, code: str = "unknown") -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def is_permission_denied(self) -> bool:
        return self.code == PERMISSION_DENIED


SnapshotCallback = Callable[[DocumentSnapshot], None]
ErrorCallback = Callable[[StoreError], None]


class Subscription:
    """Handle for a live document subscription. ``unsubscribe()`` is idempotent."""

    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel = cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        try:
            self._cancel()
        except Exception as e:
            logger.warning("Error cancelling subscription: %s", e)


def _deep_merge(target: dict, fields: dict) -> dict:
    """Merge ``fields`` into ``target`` the way a merge-write does: maps merge, everything else replaces."""
    for key, value in fields.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


# ── Protocol ───────────────────────────────────────────────

class DocumentStore(Protocol):
    def subscribe(self, uid: str, on_snapshot: SnapshotCallback,
                  on_error: ErrorCallback | None = None) -> Subscription: ...
    def get(self, uid: str) -> DocumentSnapshot: ...
    def create_if_absent(self, uid: str, data: dict) -> bool: ...
    def merge(self, uid: str, fields: dict) -> None: ...
    def set(self, uid: str, data: dict) -> None: ...


# ── Local stores (in-process change notification) ──────────

class LocalDocumentStore:
    """Shared listener bookkeeping for the in-process backends.

    Listeners are notified synchronously on the writing thread, after the
    write is committed and outside the store lock.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: dict[str, list[tuple[SnapshotCallback, ErrorCallback | None]]] = {}

    # Subclasses implement raw persistence
    def _read(self, uid: str) -> dict | None:
        raise NotImplementedError

    def _write(self, uid: str, data: dict) -> None:
        raise NotImplementedError

    def _before_write(self, uid: str) -> None:
        """Hook for subclasses to reject a write."""

    def subscribe(self, uid: str, on_snapshot: SnapshotCallback,
                  on_error: ErrorCallback | None = None) -> Subscription:
        entry = (on_snapshot, on_error)
        with self._lock:
            self._listeners.setdefault(uid, []).append(entry)
            snapshot = self._snapshot(uid)

        def cancel() -> None:
            with self._lock:
                listeners = self._listeners.get(uid, [])
                if entry in listeners:
                    listeners.remove(entry)

        subscription = Subscription(cancel)
        on_snapshot(snapshot)
        return subscription

    def get(self, uid: str) -> DocumentSnapshot:
        with self._lock:
            return self._snapshot(uid)

    def create_if_absent(self, uid: str, data: dict) -> bool:
        with self._lock:
            if self._read(uid) is not None:
                return False
            self._before_write(uid)
            self._write(uid, copy.deepcopy(data))
            snapshot = self._snapshot(uid)
        self._notify(uid, snapshot)
        return True

    def merge(self, uid: str, fields: dict) -> None:
        with self._lock:
            self._before_write(uid)
            current = self._read(uid) or {}
            self._write(uid, _deep_merge(current, fields))
            snapshot = self._snapshot(uid)
        self._notify(uid, snapshot)

    def set(self, uid: str, data: dict) -> None:
        with self._lock:
            self._before_write(uid)
            self._write(uid, copy.deepcopy(data))
            snapshot = self._snapshot(uid)
        self._notify(uid, snapshot)

    def listener_count(self, uid: str) -> int:
        with self._lock:
            return len(self._listeners.get(uid, []))

    def _snapshot(self, uid: str) -> DocumentSnapshot:
        data = self._read(uid)
        if data is None:
            return DocumentSnapshot(exists=False)
        return DocumentSnapshot(exists=True, data=copy.deepcopy(data))

    def _notify(self, uid: str, snapshot: DocumentSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners.get(uid, []))
        for on_snapshot, _ in listeners:
            try:
                on_snapshot(DocumentSnapshot(snapshot.exists, copy.deepcopy(snapshot.data)))
            except Exception:
                logger.exception("Snapshot listener failed for user %s", uid)

    def _notify_error(self, uid: str, error: StoreError) -> None:
        with self._lock:
            listeners = list(self._listeners.get(uid, []))
        for _, on_error in listeners:
            if on_error is None:
                continue
            try:
                on_error(error)
            except Exception:
                logger.exception("Error listener failed for user %s", uid)


class InMemoryDocumentStore(LocalDocumentStore):
    """Process-local dict of documents, with failure injection for tests."""

    def __init__(self) -> None:
        super().__init__()
        self._docs: dict[str, dict] = {}
        self._write_failures: list[StoreError] = []

    def _read(self, uid: str) -> dict | None:
        return self._docs.get(uid)

    def _write(self, uid: str, data: dict) -> None:
        self._docs[uid] = data

    def _before_write(self, uid: str) -> None:
        if self._write_failures:
            raise self._write_failures.pop(0)

    def fail_next_write(self, error: StoreError) -> None:
        with self._lock:
            self._write_failures.append(error)

    def emit_error(self, uid: str, error: StoreError) -> None:
        """Push an error to the subscribers of ``uid``."""
        self._notify_error(uid, error)

    def clear(self) -> None:
        with self._lock:
            self._docs.clear()
            self._write_failures.clear()


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS user_documents (
    uid TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SqliteDocumentStore(LocalDocumentStore):
    """One JSON row per user in a local SQLite file (WAL mode)."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        with self._conn:
            self._conn.executescript(_SQLITE_SCHEMA)

    def _read(self, uid: str) -> dict | None:
        row = self._conn.execute(
            "SELECT data FROM user_documents WHERE uid = ?", (uid,)
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["data"])
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt document for user {uid}: {e}", code="data-loss") from e

    def _write(self, uid: str, data: dict) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO user_documents (uid, data, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(uid) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                    (uid, json.dumps(data), datetime.now().isoformat()),
                )
        except sqlite3.Error as e:
            raise StoreError(f"SQLite write failed: {e}", code="unavailable") from e

    def close(self) -> None:
        self._conn.close()


# ── Firestore ──────────────────────────────────────────────

def _translate_google_error(exc: Exception) -> StoreError:
    """Map google-api-core exceptions to a StoreError code."""
    from google.api_core import exceptions as gexc

    if isinstance(exc, (gexc.PermissionDenied, gexc.Forbidden, gexc.Unauthenticated)):
        return StoreError(str(exc), code=PERMISSION_DENIED)
    if isinstance(exc, gexc.NotFound):
        return StoreError(str(exc), code="not-found")
    if isinstance(exc, (gexc.ServiceUnavailable, gexc.DeadlineExceeded)):
        return StoreError(str(exc), code="unavailable")
    return StoreError(str(exc), code="unknown")


class FirestoreDocumentStore:
    """Firestore-backed store using a ``firebase_admin.firestore`` client."""

    def __init__(self, client, collection: str = USERS_COLLECTION) -> None:
        self._client = client
        self._collection = collection

    def _ref(self, uid: str):
        return self._client.collection(self._collection).document(uid)

    def subscribe(self, uid: str, on_snapshot: SnapshotCallback,
                  on_error: ErrorCallback | None = None) -> Subscription:
        from google.api_core.exceptions import GoogleAPICallError

        ref = self._ref(uid)
        # The watch stream has no error callback; a priming read surfaces
        # permission problems before the listener is attached.
        try:
            ref.get()
        except GoogleAPICallError as e:
            error = _translate_google_error(e)
            logger.error("Firestore subscribe failed for user %s: %s", uid, error)
            if on_error is not None:
                on_error(error)
            return Subscription(lambda: None)

        def _callback(doc_snapshots, changes, read_time) -> None:
            if not doc_snapshots:
                on_snapshot(DocumentSnapshot(exists=False))
                return
            for snap in doc_snapshots:
                if snap.exists:
                    on_snapshot(DocumentSnapshot(exists=True, data=snap.to_dict()))
                else:
                    on_snapshot(DocumentSnapshot(exists=False))

        watch = ref.on_snapshot(_callback)
        return Subscription(watch.unsubscribe)

    def get(self, uid: str) -> DocumentSnapshot:
        from google.api_core.exceptions import GoogleAPICallError

        try:
            snap = self._ref(uid).get()
        except GoogleAPICallError as e:
            raise _translate_google_error(e) from e
        if not snap.exists:
            return DocumentSnapshot(exists=False)
        return DocumentSnapshot(exists=True, data=snap.to_dict())

    def create_if_absent(self, uid: str, data: dict) -> bool:
        from google.api_core.exceptions import AlreadyExists, GoogleAPICallError

        try:
            self._ref(uid).create(data)
            return True
        except AlreadyExists:
            return False
        except GoogleAPICallError as e:
            raise _translate_google_error(e) from e

    def merge(self, uid: str, fields: dict) -> None:
        from google.api_core.exceptions import GoogleAPICallError

        try:
            self._ref(uid).set(fields, merge=True)
        except GoogleAPICallError as e:
            raise _translate_google_error(e) from e

    def set(self, uid: str, data: dict) -> None:
        from google.api_core.exceptions import GoogleAPICallError

        try:
            self._ref(uid).set(data)
        except GoogleAPICallError as e:
            raise _translate_google_error(e) from e


# ── Module-level singleton ────────────────────────────────

_store: DocumentStore | None = None


def init_store(app) -> None:
    """Initialize the document store backend. Call once from create_app()."""
    global _store

    backend = app.config.get("DOCUMENT_STORE", "sqlite")
    if backend == "firestore":
        try:
            from extensions import init_firebase
            from firebase_admin import firestore

            firebase_app = init_firebase(app)
            _store = FirestoreDocumentStore(firestore.client(firebase_app))
            app.logger.info("Document store: Firestore")
            return
        except Exception as e:
            app.logger.warning("Firestore unavailable (%s); falling back to SQLite.", e)
            backend = "sqlite"

    if backend == "memory":
        _store = InMemoryDocumentStore()
        app.logger.info("Document store: in-memory")
        return

    path = app.config.get("DOCUMENT_DB", "studyai_documents.db")
    _store = SqliteDocumentStore(path)
    app.logger.info("Document store: SQLite (%s)", path)


def get_store() -> DocumentStore:
    """Return the active store. Lazily initializes an in-memory store if needed."""
    global _store
    if _store is None:
        _store = InMemoryDocumentStore()
    return _store


def set_store(store: DocumentStore | None) -> None:
    global _store
    _store = store
