from __future__ import annotations

"""Firebase Admin bootstrap shared by the Firestore stores and bearer auth."""

from typing import Any, Dict, Optional
import os

import firebase_admin
from firebase_admin import auth, credentials, firestore
from google.auth.credentials import AnonymousCredentials

from src.backend.config import resolve_project_id

_app: Optional[firebase_admin.App] = None
_firestore_client: Optional[firestore.Client] = None

_EMULATOR_VARS = (
    "FIRESTORE_EMULATOR_HOST",
    "FIREBASE_AUTH_EMULATOR_HOST",
    "FIREBASE_STORAGE_EMULATOR_HOST",
)


def _credential() -> Optional[Any]:
    """Service account file, anonymous credentials for emulators, else ADC (None)."""
    service_account_path = os.getenv("FIREBASE_SERVICE_ACCOUNT_FILE")
    if service_account_path:
        return credentials.Certificate(service_account_path)
    if any(os.getenv(name) for name in _EMULATOR_VARS):
        return AnonymousCredentials()
    return None


def initialize_firebase_app() -> firebase_admin.App:
    """Reuse an already-registered default app, else create one."""
    global _app
    if _app is None:
        try:
            _app = firebase_admin.get_app()
        except ValueError:
            project_id = resolve_project_id()
            options: Dict[str, str] = {"projectId": project_id} if project_id else {}
            _app = firebase_admin.initialize_app(_credential(), options or None)
    return _app


def get_firestore_client() -> firestore.Client:
    global _firestore_client
    if _firestore_client is None:
        _firestore_client = firestore.client(initialize_firebase_app())
    return _firestore_client


def verify_id_token(token: str) -> str:
    """Verify a Firebase ID token and return the reviewer's uid."""
    decoded = auth.verify_id_token(token, app=initialize_firebase_app())
    uid = decoded.get("uid")
    if not uid:
        raise ValueError("Missing uid in Firebase token.")
    return uid
