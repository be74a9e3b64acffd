from __future__ import annotations

"""Catalogue library persistence for committed sessions.

Both stores apply a CommitPlan as one atomic unit and refuse a second commit
that names the same origin session.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import threading

from google.api_core import exceptions as api_exceptions
from google.cloud import firestore

from src.backend.firebase_app import get_firestore_client
from src.backend.logging_utils import get_logger
from src.backend.session_store import InMemorySessionStore, SessionNotFoundError
from src.ingest.commit import (
    CommitEligibilityError,
    CommitPlan,
    CommitRecord,
    DuplicateCommitError,
)
from src.ingest.state import WORKFLOW_TRANSITIONS

logger = get_logger(__name__)


def _record_for(plan: CommitPlan) -> CommitRecord:
    return CommitRecord(
        catalogue_record_id=plan.piece.id,
        title=plan.piece.title,
        file_id=plan.original_file.id,
        session_id=plan.session_id,
        parts_committed=len(plan.parts),
    )


def _file_doc(plan: CommitPlan, payload: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    doc = dict(payload)
    doc.update(
        {
            "pieceId": plan.piece.id,
            "uploadedBy": plan.approved_by,
            "originalUploadId": plan.session_id,
            "source": "SMART_UPLOAD",
            "createdAt": now,
        }
    )
    return doc


class InMemoryLibraryStore:
    """Dict-backed catalogue used in dev and tests."""

    def __init__(self, sessions: InMemorySessionStore) -> None:
        self._sessions = sessions
        self._lock = threading.Lock()
        self.people: Dict[str, Dict[str, Any]] = {}
        self.publishers: Dict[str, Dict[str, Any]] = {}
        self.instruments: Dict[str, Dict[str, Any]] = {}
        self.pieces: Dict[str, Dict[str, Any]] = {}
        self.files: Dict[str, Dict[str, Any]] = {}
        self.parts: Dict[str, Dict[str, Any]] = {}
        self._origins: Dict[str, CommitRecord] = {}

    def find_commit_by_origin(self, session_id: str) -> Optional[CommitRecord]:
        with self._lock:
            return self._origins.get(session_id)

    def find_piece_by_work_fingerprint(self, fingerprint: str) -> Optional[Tuple[str, str]]:
        with self._lock:
            for piece_id, piece in self.pieces.items():
                if piece.get("workFingerprint") == fingerprint:
                    return piece_id, piece.get("title", "")
        return None

    def execute_commit(self, plan: CommitPlan) -> CommitRecord:
        with self._lock:
            if plan.session_id in self._origins:
                raise DuplicateCommitError(plan.session_id)
            if plan.session_update is not None:
                self._sessions.apply_commit_update(plan.session_id, plan.session_update)
            now = datetime.now(timezone.utc)
            for person in plan.people:
                self.people.setdefault(person.key, person.to_dict())
            if plan.publisher is not None:
                self.publishers.setdefault(plan.publisher.key, plan.publisher.to_dict())
            for instrument in plan.instruments:
                self.instruments.setdefault(instrument.key, instrument.to_dict())
            piece = plan.piece.to_dict()
            piece["originSessionId"] = plan.session_id
            self.pieces[plan.piece.id] = piece
            self.files[plan.original_file.id] = _file_doc(plan, plan.original_file.to_dict(), now)
            for part_file in plan.part_files:
                self.files[part_file.id] = _file_doc(plan, part_file.to_dict(), now)
            for part in plan.parts:
                doc = part.to_dict()
                doc["pieceId"] = plan.piece.id
                self.parts[part.id] = doc
            record = _record_for(plan)
            self._origins[plan.session_id] = record
            return record


@dataclass
class FirestoreLibraryStore:
    """Catalogue collections in Firestore.

    The commit_origins/{session_id} document is created inside the commit
    transaction; Firestore rejects a second create, which closes the race
    between two concurrent commits of the same session.
    """
    sessions_collection: str = "ingest_sessions"
    origins_collection: str = "commit_origins"
    pieces_collection: str = "catalogue_pieces"
    files_collection: str = "catalogue_files"
    parts_collection: str = "catalogue_parts"
    people_collection: str = "people"
    publishers_collection: str = "publishers"
    instruments_collection: str = "instruments"
    _client: Optional[firestore.Client] = field(default=None, init=False, repr=False)

    def _ensure_client(self) -> firestore.Client:
        if self._client is None:
            self._client = get_firestore_client()
        return self._client

    def find_commit_by_origin(self, session_id: str) -> Optional[CommitRecord]:
        snapshot = self._ensure_client().collection(self.origins_collection).document(session_id).get()
        if not snapshot.exists:
            return None
        return CommitRecord.from_dict(snapshot.to_dict() or {})

    def find_piece_by_work_fingerprint(self, fingerprint: str) -> Optional[Tuple[str, str]]:
        query = (
            self._ensure_client()
            .collection(self.pieces_collection)
            .where("workFingerprint", "==", fingerprint)
            .limit(1)
        )
        for doc in query.stream():
            data = doc.to_dict() or {}
            return doc.id, data.get("title", "")
        return None

    def execute_commit(self, plan: CommitPlan) -> CommitRecord:
        db = self._ensure_client()
        origin_ref = db.collection(self.origins_collection).document(plan.session_id)
        session_ref = db.collection(self.sessions_collection).document(plan.session_id)
        people_refs = {p.key: db.collection(self.people_collection).document(p.key) for p in plan.people}
        instrument_refs = {
            i.key: db.collection(self.instruments_collection).document(i.key) for i in plan.instruments
        }
        publisher_ref = (
            db.collection(self.publishers_collection).document(plan.publisher.key)
            if plan.publisher is not None
            else None
        )

        @firestore.transactional
        def _transactional_commit(transaction):
            # Firestore transactions require every read before the first write.
            if origin_ref.get(transaction=transaction).exists:
                raise DuplicateCommitError(plan.session_id)
            session_snapshot = session_ref.get(transaction=transaction)
            if not session_snapshot.exists:
                raise SessionNotFoundError(plan.session_id)
            update = plan.session_update
            if update is not None:
                current = (session_snapshot.to_dict() or {}).get("workflowStatus")
                if current != update.expected_status.value:
                    raise CommitEligibilityError(
                        plan.session_id, WORKFLOW_TRANSITIONS.coerce(current or ""), update.reviewed_by
                    )
            missing_people = [
                key for key, ref in people_refs.items() if not ref.get(transaction=transaction).exists
            ]
            missing_instruments = [
                key for key, ref in instrument_refs.items() if not ref.get(transaction=transaction).exists
            ]
            publisher_missing = (
                publisher_ref is not None and not publisher_ref.get(transaction=transaction).exists
            )

            now = datetime.now(timezone.utc)
            for person in plan.people:
                if person.key in missing_people:
                    transaction.set(people_refs[person.key], {**person.to_dict(), "createdAt": now})
            if publisher_missing:
                transaction.set(publisher_ref, {**plan.publisher.to_dict(), "createdAt": now})
            for instrument in plan.instruments:
                if instrument.key in missing_instruments:
                    transaction.set(
                        instrument_refs[instrument.key], {**instrument.to_dict(), "createdAt": now}
                    )

            piece_ref = db.collection(self.pieces_collection).document(plan.piece.id)
            transaction.set(
                piece_ref,
                {**plan.piece.to_dict(), "originSessionId": plan.session_id, "createdAt": now},
            )
            for file_record in [plan.original_file, *plan.part_files]:
                file_ref = db.collection(self.files_collection).document(file_record.id)
                transaction.set(file_ref, _file_doc(plan, file_record.to_dict(), now))
            for part in plan.parts:
                part_ref = db.collection(self.parts_collection).document(part.id)
                transaction.set(part_ref, {**part.to_dict(), "pieceId": plan.piece.id, "createdAt": now})
            if update is not None:
                transaction.update(session_ref, update.to_dict())

            record = _record_for(plan)
            transaction.create(origin_ref, {**record.to_dict(), "createdAt": now})
            return record

        transaction = db.transaction()
        try:
            return _transactional_commit(transaction)
        except api_exceptions.AlreadyExists as exc:
            logger.warning("commit_origin_conflict session_id=%s error=%s", plan.session_id, exc)
            raise DuplicateCommitError(plan.session_id) from exc
