from __future__ import annotations

import copy
import json
import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock as ThreadLock
from typing import Any, Dict, List, Optional

from referralweb.errors import StorePermissionError
from referralweb.models import Referral

logger = logging.getLogger("referralweb.store")

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.getenv("REFERRAL_DATA_DIR", os.path.join(PROJECT_ROOT, "data"))
DB_PATH = os.getenv("REFERRAL_DB_PATH", os.path.join(DATA_DIR, "referrals.sqlite"))

COLLECTION = "referrals"

# sqlite error texts that mean "not allowed" rather than "broken"
_PERMISSION_MARKERS = (
    "not authorized",
    "readonly database",
    "read-only",
    "access permission denied",
    "unable to open database file",
)


# =========================
# Timestamp conversion at the store boundary
# =========================

def ts_to_store(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def ts_from_store(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def referral_to_document(referral: Referral) -> Dict[str, Any]:
    doc = referral.model_dump(by_alias=True, mode="python")
    doc["createdAt"] = ts_to_store(referral.created_at)
    doc["updatedAt"] = ts_to_store(referral.updated_at)
    doc["statusHistory"] = [
        {**h, "changedAt": ts_to_store(h["changedAt"])} for h in doc.get("statusHistory", [])
    ]
    doc["internalNotes"] = [
        {**n, "createdAt": ts_to_store(n["createdAt"])} for n in doc.get("internalNotes", [])
    ]
    return doc


def referral_from_document(doc: Dict[str, Any]) -> Referral:
    data = copy.deepcopy(doc)
    data["createdAt"] = ts_from_store(data["createdAt"])
    data["updatedAt"] = ts_from_store(data["updatedAt"])
    data["statusHistory"] = [
        {**h, "changedAt": ts_from_store(h["changedAt"])} for h in data.get("statusHistory") or []
    ]
    data["internalNotes"] = [
        {**n, "createdAt": ts_from_store(n["createdAt"])} for n in data.get("internalNotes") or []
    ]
    return Referral.model_validate(data)


def _as_permission_error(exc: Exception, operation: str, path: str) -> Optional[StorePermissionError]:
    msg = str(exc).lower()
    if any(marker in msg for marker in _PERMISSION_MARKERS):
        return StorePermissionError(operation=operation, path=path, detail=str(exc))
    return None


# =========================
# Repository interface
# =========================

class ReferralRepository(ABC):
    """
    Durable persistence for referral documents, keyed by id.

    save() is a full-document replace. Concurrent writers to the same referral
    are last-write-wins; there is no version token.
    """

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> "ReferralRepository":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def get_all(self) -> List[Referral]:
        """All referrals, newest createdAt first."""

    @abstractmethod
    def get_by_id(self, referral_id: str) -> Optional[Referral]:
        ...

    @abstractmethod
    def save(self, referral: Referral) -> Referral:
        ...

    def find_by_id_and_dob(self, referral_id: str, dob: str) -> Optional[Referral]:
        # Exact string match on DOB; no date parsing.
        referral = self.get_by_id(referral_id)
        if referral is None or referral.patient_dob != dob:
            return None
        return referral


# =========================
# SQLite document table
# =========================

def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS referrals (
            id TEXT PRIMARY KEY,
            created_at_utc TEXT NOT NULL,
            patient_dob TEXT NOT NULL,
            document_json TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_referrals_created ON referrals(created_at_utc DESC)"
    )
    conn.commit()


class SqliteReferralStore(ReferralRepository):
    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = ThreadLock()

    # -------------------------
    # Lifecycle
    # -------------------------
    def open(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            if self.db_path != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
            try:
                conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                _ensure_schema(conn)
            except sqlite3.DatabaseError as e:
                perm = _as_permission_error(e, "open", COLLECTION)
                if perm is None:
                    raise
                logger.error(perm.message)
                raise perm from e
            self._conn = conn
        logger.info("Referral store opened at %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.info("Referral store closed")

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Referral store is not open")
        return self._conn

    # -------------------------
    # Reads
    # -------------------------
    def get_all(self) -> List[Referral]:
        try:
            with self._lock:
                rows = self._connection().execute(
                    "SELECT document_json FROM referrals ORDER BY created_at_utc DESC"
                ).fetchall()
        except sqlite3.DatabaseError as e:
            perm = _as_permission_error(e, "list", COLLECTION)
            if perm is None:
                raise
            # List views degrade to empty rather than failing the page.
            logger.error("%s (%s)", perm.message, perm.detail)
            return []

        return [referral_from_document(json.loads(row["document_json"])) for row in rows]

    def get_by_id(self, referral_id: str) -> Optional[Referral]:
        rid = (referral_id or "").strip()
        if not rid:
            return None
        try:
            with self._lock:
                row = self._connection().execute(
                    "SELECT document_json FROM referrals WHERE id = ?",
                    (rid,),
                ).fetchone()
        except sqlite3.DatabaseError as e:
            perm = _as_permission_error(e, "get", f"{COLLECTION}/{rid}")
            if perm is None:
                raise
            logger.error("%s (%s)", perm.message, perm.detail)
            raise perm from e

        if not row:
            return None
        return referral_from_document(json.loads(row["document_json"]))

    # -------------------------
    # Writes
    # -------------------------
    def save(self, referral: Referral) -> Referral:
        doc = referral_to_document(referral)
        document_json = json.dumps(doc, ensure_ascii=True, sort_keys=True)
        try:
            with self._lock:
                conn = self._connection()
                conn.execute(
                    """
                    INSERT INTO referrals (id, created_at_utc, patient_dob, document_json)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        created_at_utc = excluded.created_at_utc,
                        patient_dob = excluded.patient_dob,
                        document_json = excluded.document_json
                    """,
                    (referral.id, doc["createdAt"], referral.patient_dob, document_json),
                )
                conn.commit()
        except sqlite3.DatabaseError as e:
            perm = _as_permission_error(e, "update", f"{COLLECTION}/{referral.id}")
            if perm is None:
                raise
            logger.error("%s (%s)", perm.message, perm.detail)
            raise perm from e
        return referral
