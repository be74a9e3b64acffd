from __future__ import annotations

"""Session persistence: an in-memory store for dev/tests and a Firestore store."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import threading

from firebase_admin import firestore

from src.backend.firebase_app import get_firestore_client
from src.ingest.commit import CommitEligibilityError, SessionUpdate
from src.ingest.models import Session


class SessionNotFoundError(KeyError):
    """No session document exists under the requested id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(session_id)


class InMemorySessionStore:
    """Stores sessions as serialized documents so callers never share instances."""

    def __init__(self) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create_session(self, session: Session) -> Session:
        with self._lock:
            if session.id in self._docs:
                raise ValueError(f"Session {session.id} already exists")
            self._docs[session.id] = session.to_dict()
        return session

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            doc = self._docs.get(session_id)
            if doc is None:
                raise SessionNotFoundError(session_id)
            return Session.from_dict(doc)

    def save_session(self, session: Session) -> None:
        session.touch()
        with self._lock:
            if session.id not in self._docs:
                raise SessionNotFoundError(session.id)
            self._docs[session.id] = session.to_dict()

    def find_by_source_hash(self, source_sha256: str, *, exclude_id: Optional[str] = None) -> Optional[str]:
        with self._lock:
            for session_id, doc in self._docs.items():
                if session_id != exclude_id and doc.get("sourceSha256") == source_sha256:
                    return session_id
        return None

    def apply_commit_update(self, session_id: str, update: SessionUpdate) -> None:
        """Write the commit's session fields if the session has not moved meanwhile."""
        with self._lock:
            doc = self._docs.get(session_id)
            if doc is None:
                raise SessionNotFoundError(session_id)
            session = Session.from_dict(doc)
            if session.workflow_status is not update.expected_status:
                raise CommitEligibilityError(session_id, session.workflow_status, update.reviewed_by)
            doc.update(update.to_dict())


@dataclass
class FirestoreSessionStore:
    """Session documents in Firestore, keyed by session id."""
    collection: str = "ingest_sessions"
    _client: Optional[firestore.Client] = field(default=None, init=False, repr=False)

    def _ensure_client(self) -> firestore.Client:
        if self._client is None:
            self._client = get_firestore_client()
        return self._client

    def _doc(self, session_id: str):
        return self._ensure_client().collection(self.collection).document(session_id)

    def create_session(self, session: Session) -> Session:
        self._doc(session.id).create(session.to_dict())
        return session

    def get_session(self, session_id: str) -> Session:
        snapshot = self._doc(session_id).get()
        if not snapshot.exists:
            raise SessionNotFoundError(session_id)
        data = snapshot.to_dict() or {}
        data.setdefault("id", session_id)
        return Session.from_dict(data)

    def save_session(self, session: Session) -> None:
        session.touch()
        self._doc(session.id).set(session.to_dict())

    def find_by_source_hash(self, source_sha256: str, *, exclude_id: Optional[str] = None) -> Optional[str]:
        query = (
            self._ensure_client()
            .collection(self.collection)
            .where("sourceSha256", "==", source_sha256)
            .limit(2)
        )
        for doc in query.stream():
            if doc.id != exclude_id:
                return doc.id
        return None
