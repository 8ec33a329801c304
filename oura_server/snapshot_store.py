"""
Append-only snapshot writer backed by Cloud Firestore's REST API.

Each save creates one new document
``{start, end, payload, createdAt}`` where ``createdAt`` is stamped by the
server (``REQUEST_TIME`` transform). There is no update or delete path.
"""

import logging
import uuid
from typing import Any, Dict, Optional

import requests

from .oura_client import is_success

logger = logging.getLogger("oura-dashboard.snapshots")

FIRESTORE_BASE = "https://firestore.googleapis.com/v1"
DEFAULT_COLLECTION = "sleep_snapshots"


class SnapshotStoreError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


# ---- Python -> Firestore Value ----

def to_firestore_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        # int64 travels as a string
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [to_firestore_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": {str(k): to_firestore_value(v) for k, v in value.items()}}}
    return {"stringValue": str(value)}


class FirestoreSnapshotStore:
    def __init__(self, project_id: str, collection: str = DEFAULT_COLLECTION,
                 api_key: Optional[str] = None, id_token: Optional[str] = None,
                 timeout: Optional[float] = None, database: str = "(default)"):
        if not project_id:
            raise ValueError("project_id is required")
        self.project_id = project_id
        self.collection = collection or DEFAULT_COLLECTION
        self.api_key = api_key
        self.id_token = id_token
        self.timeout = timeout
        self.database = database

    @property
    def _documents_root(self) -> str:
        return f"projects/{self.project_id}/databases/{self.database}/documents"

    def _commit_url(self) -> str:
        return f"{FIRESTORE_BASE}/{self._documents_root}:commit"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.id_token:
            headers["Authorization"] = f"Bearer {self.id_token}"
        return headers

    def build_commit(self, doc_id: str, start: str, end: str, payload: Any) -> Dict[str, Any]:
        fields = {
            "start": to_firestore_value(start),
            "end": to_firestore_value(end),
            "payload": to_firestore_value(payload),
        }
        return {
            "writes": [{
                "update": {
                    "name": f"{self._documents_root}/{self.collection}/{doc_id}",
                    "fields": fields,
                },
                # create-only; an existing id is an error, never an overwrite
                "currentDocument": {"exists": False},
                "updateTransforms": [
                    {"fieldPath": "createdAt", "setToServerValue": "REQUEST_TIME"}
                ],
            }]
        }

    def append(self, start: str, end: str, payload: Any) -> Dict[str, Any]:
        """Write one snapshot. Returns ``{"id", "createdAt"}``."""
        doc_id = uuid.uuid4().hex
        params = {"key": self.api_key} if self.api_key else None
        try:
            res = requests.post(
                self._commit_url(),
                headers=self._headers(),
                params=params,
                json=self.build_commit(doc_id, start, end, payload),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SnapshotStoreError(f"Snapshot save failed: {e}") from e

        if not is_success(res):
            raise SnapshotStoreError(
                f"Snapshot save failed: HTTP {res.status_code}",
                status_code=res.status_code,
                detail=res.text[:300],
            )

        try:
            body = res.json()
        except ValueError as e:
            raise SnapshotStoreError("Snapshot save failed: non-JSON response") from e

        created_at = None
        results = body.get("writeResults") or [{}]
        transforms = results[0].get("transformResults") or []
        if transforms:
            created_at = transforms[0].get("timestampValue")
        created_at = created_at or body.get("commitTime")
        logger.info(f"Saved snapshot {doc_id} ({start}..{end})")
        return {"id": doc_id, "createdAt": created_at}
