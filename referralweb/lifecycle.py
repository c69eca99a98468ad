from __future__ import annotations

import logging
import os
import secrets
from datetime import datetime
from typing import Callable, List, Optional

from referralweb.errors import (
    EmptyNoteError,
    InvalidStatusError,
    ReferralNotFound,
)
from referralweb.models import (
    INITIAL_STATUS,
    REFERRAL_STATUSES,
    AISummary,
    Document,
    InternalNote,
    Referral,
    ReferralFields,
    StatusCheckResult,
    StatusHistoryEntry,
    utc_now,
)
from referralweb.record_store import ReferralRepository

logger = logging.getLogger("referralweb.lifecycle")

REFERRAL_ID_PREFIX = os.getenv("REFERRAL_ID_PREFIX", "TX-REF").strip() or "TX-REF"
MAX_ID_ATTEMPTS = 1000

STAFF_AUTHOR_DEFAULT = "Staff Member"
PUBLIC_NOTE_AUTHOR = "Referrer/Patient"
REFERRAL_NOT_FOUND_MESSAGE = "Referral not found."


def format_referral_id(at: datetime, offset: int = 0, prefix: str = REFERRAL_ID_PREFIX) -> str:
    """TX-REF-2026-123456: year plus the last six digits of the epoch-ms instant."""
    millis = int(at.timestamp() * 1000) + offset
    return f"{prefix}-{at.year:04d}-{millis % 1_000_000:06d}"


def new_note_id() -> str:
    return f"note-{secrets.token_hex(6)}"


class ReferralLifecycle:
    """
    Owns every mutation of status, status_history and internal_notes.
    Each operation is read, mutate, save against the repository.
    """

    def __init__(self, store: ReferralRepository, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    # -------------------------
    # Ids
    # -------------------------
    def reserve_id(self, at: Optional[datetime] = None) -> str:
        """
        Returns an id that is not yet held by the store. The id is not locked;
        two concurrent reservations in the same millisecond may still collide.
        """
        at = at or self.clock()
        for attempt in range(MAX_ID_ATTEMPTS):
            candidate = format_referral_id(at, offset=attempt)
            if self.store.get_by_id(candidate) is None:
                if attempt:
                    logger.warning("Referral id collision; regenerated after %s attempt(s)", attempt)
                return candidate
        raise RuntimeError("Could not allocate a unique referral id")

    # -------------------------
    # Create
    # -------------------------
    def create(
        self,
        fields: ReferralFields,
        documents: List[Document],
        ai_summary: Optional[AISummary] = None,
        referral_id: Optional[str] = None,
    ) -> Referral:
        now = self.clock()
        rid = referral_id
        if not rid or self.store.get_by_id(rid) is not None:
            rid = self.reserve_id(now)

        referral = Referral(
            **fields.model_dump(),
            id=rid,
            documents=list(documents),
            status=INITIAL_STATUS,
            status_history=[StatusHistoryEntry(status=INITIAL_STATUS, changed_at=now)],
            internal_notes=[],
            ai_summary=ai_summary,
            created_at=now,
            updated_at=now,
        )
        self.store.save(referral)
        logger.info("Referral created id=%s documents=%s", rid, len(referral.documents))
        return referral

    # -------------------------
    # Staff mutations
    # -------------------------
    def _require(self, referral_id: str) -> Referral:
        referral = self.store.get_by_id(referral_id)
        if referral is None:
            raise ReferralNotFound(REFERRAL_NOT_FOUND_MESSAGE)
        return referral

    def change_status(self, referral_id: str, new_status: str, notes: Optional[str] = None) -> Referral:
        if new_status not in REFERRAL_STATUSES:
            raise InvalidStatusError(new_status)
        referral = self._require(referral_id)

        now = self.clock()
        previous = referral.status
        clean_notes = (notes or "").strip() or None
        referral.status_history = [
            *referral.status_history,
            StatusHistoryEntry(status=new_status, changed_at=now, notes=clean_notes),
        ]
        referral.status = new_status
        referral.updated_at = now
        self.store.save(referral)
        logger.info("Referral status changed id=%s %s -> %s", referral.id, previous, new_status)
        return referral

    def add_note(self, referral_id: str, content: str, author: str = STAFF_AUTHOR_DEFAULT) -> Referral:
        text = (content or "").strip()
        if not text:
            raise EmptyNoteError()
        referral = self._require(referral_id)

        now = self.clock()
        note = InternalNote(id=new_note_id(), content=text, author=author or STAFF_AUTHOR_DEFAULT, created_at=now)
        referral.internal_notes = [*referral.internal_notes, note]
        referral.updated_at = now
        self.store.save(referral)
        logger.info("Note added id=%s note_id=%s author=%s", referral.id, note.id, note.author)
        return referral

    # -------------------------
    # Public status path
    # -------------------------
    def find_by_id_and_dob(self, referral_id: str, dob: str) -> Referral:
        referral = self.store.find_by_id_and_dob((referral_id or "").strip(), dob or "")
        if referral is None:
            # Same error for unknown id and wrong DOB.
            raise ReferralNotFound()
        return referral

    def check_status(self, referral_id: str, dob: str, optional_note: Optional[str] = None) -> StatusCheckResult:
        referral = self.find_by_id_and_dob(referral_id, dob)
        note_added = False
        if optional_note and optional_note.strip():
            referral = self.add_note(referral.id, optional_note, author=PUBLIC_NOTE_AUTHOR)
            note_added = True
        return StatusCheckResult(status=referral.status, updated_at=referral.updated_at, note_added=note_added)

    # -------------------------
    # Staff reads
    # -------------------------
    def get(self, referral_id: str) -> Referral:
        return self._require(referral_id)

    def list_referrals(self) -> List[Referral]:
        return self.store.get_all()
