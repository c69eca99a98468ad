import re
from datetime import timedelta

import pytest

from conftest import TickingClock
from referralweb.errors import (
    GENERIC_NOT_FOUND_MESSAGE,
    EmptyNoteError,
    InvalidStatusError,
    ReferralNotFound,
)
from referralweb.lifecycle import (
    PUBLIC_NOTE_AUTHOR,
    REFERRAL_ID_PREFIX,
    STAFF_AUTHOR_DEFAULT,
    ReferralLifecycle,
    format_referral_id,
)
from referralweb.models import AISummary, Document

ID_RE = re.compile(rf"^{re.escape(REFERRAL_ID_PREFIX)}-\d{{4}}-\d{{6}}$")


@pytest.fixture
def lifecycle(store, clock):
    return ReferralLifecycle(store, clock=clock)


@pytest.fixture
def created(lifecycle, referral_fields):
    docs = [Document(id="referrals/abc/r.pdf", name="r.pdf", url="https://blobs.test/r.pdf", size=10)]
    return lifecycle.create(referral_fields, docs)


def test_create_seeds_received_status(lifecycle, created):
    assert ID_RE.match(created.id)
    assert created.status == "RECEIVED"
    assert len(created.status_history) == 1
    assert created.status_history[0].status == "RECEIVED"
    assert created.status_history[0].changed_at == created.created_at
    assert created.created_at == created.updated_at
    assert created.internal_notes == []
    assert lifecycle.get(created.id) == created


def test_create_keeps_ai_summary(lifecycle, referral_fields):
    hint = AISummary(suggested_categories=["Orthopedic"], reasoning="Hip replacement follow-up.")
    referral = lifecycle.create(referral_fields, [], ai_summary=hint)
    assert lifecycle.get(referral.id).ai_summary == hint


def test_format_referral_id_uses_last_six_millis(clock):
    at = clock()
    millis = int(at.timestamp() * 1000)
    rid = format_referral_id(at)
    assert rid == f"{REFERRAL_ID_PREFIX}-{at.year}-{millis % 1_000_000:06d}"


def test_colliding_ids_are_regenerated(store, referral_fields):
    frozen = TickingClock(step=timedelta(0))
    lc = ReferralLifecycle(store, clock=frozen)
    first = lc.create(referral_fields, [])
    second = lc.create(referral_fields, [])
    assert first.id != second.id
    assert len(store.get_all()) == 2


def test_explicit_id_is_used_when_free(lifecycle, referral_fields):
    rid = lifecycle.reserve_id()
    referral = lifecycle.create(referral_fields, [], referral_id=rid)
    assert referral.id == rid


def test_change_status_appends_history(lifecycle, created):
    updated = lifecycle.change_status(created.id, "ACCEPTED")
    assert updated.status == "ACCEPTED"
    assert len(updated.status_history) == 2
    assert updated.status_history[-1].status == "ACCEPTED"
    assert updated.updated_at > created.updated_at
    assert updated.updated_at == updated.status_history[-1].changed_at

    stored = lifecycle.get(created.id)
    assert stored.status == stored.status_history[-1].status


def test_change_status_allows_repeats_and_regressions(lifecycle, created):
    lifecycle.change_status(created.id, "ACCEPTED")
    lifecycle.change_status(created.id, "ACCEPTED", notes="  confirmed twice  ")
    referral = lifecycle.change_status(created.id, "IN_REVIEW")
    assert [h.status for h in referral.status_history] == ["RECEIVED", "ACCEPTED", "ACCEPTED", "IN_REVIEW"]
    assert referral.status_history[2].notes == "confirmed twice"


def test_invalid_status_leaves_record_untouched(lifecycle, created):
    with pytest.raises(InvalidStatusError):
        lifecycle.change_status(created.id, "CLOSED")
    assert lifecycle.get(created.id) == created


def test_change_status_unknown_id(lifecycle):
    with pytest.raises(ReferralNotFound):
        lifecycle.change_status("TX-REF-2026-999999", "ACCEPTED")


def test_add_note_strips_and_records_author(lifecycle, created):
    referral = lifecycle.add_note(created.id, "  Called the PCP office.  ", author="jsmith")
    note = referral.internal_notes[-1]
    assert note.content == "Called the PCP office."
    assert note.author == "jsmith"
    assert note.id.startswith("note-")
    assert referral.updated_at == note.created_at
    assert referral.status_history == created.status_history


def test_notes_keep_insertion_order(lifecycle, created):
    for text in ("first", "second", "third"):
        lifecycle.add_note(created.id, text)
    notes = lifecycle.get(created.id).internal_notes
    assert [n.content for n in notes] == ["first", "second", "third"]
    assert all(n.author == STAFF_AUTHOR_DEFAULT for n in notes)
    assert len({n.id for n in notes}) == 3


def test_blank_note_rejected_before_lookup(lifecycle):
    with pytest.raises(EmptyNoteError):
        lifecycle.add_note("TX-REF-2026-999999", "   ")


def test_add_note_unknown_id(lifecycle):
    with pytest.raises(ReferralNotFound):
        lifecycle.add_note("TX-REF-2026-999999", "hello")


def test_wrong_dob_and_unknown_id_look_the_same(lifecycle, created):
    with pytest.raises(ReferralNotFound) as wrong_dob:
        lifecycle.find_by_id_and_dob(created.id, "1985-05-16")
    with pytest.raises(ReferralNotFound) as unknown:
        lifecycle.find_by_id_and_dob("TX-REF-2026-999999", "1985-05-15")
    assert wrong_dob.value.message == unknown.value.message == GENERIC_NOT_FOUND_MESSAGE


def test_find_by_id_and_dob_match(lifecycle, created):
    assert lifecycle.find_by_id_and_dob(f"  {created.id} ", "1985-05-15") == created


def test_check_status_without_note_does_not_write(lifecycle, created):
    result = lifecycle.check_status(created.id, "1985-05-15")
    assert result.status == "RECEIVED"
    assert result.updated_at == created.updated_at
    assert result.note_added is False
    assert lifecycle.get(created.id) == created


def test_check_status_with_note_appends_public_note(lifecycle, created):
    result = lifecycle.check_status(created.id, "1985-05-15", "Patient discharged on Friday.")
    assert result.note_added is True
    referral = lifecycle.get(created.id)
    assert referral.internal_notes[-1].author == PUBLIC_NOTE_AUTHOR
    assert referral.internal_notes[-1].content == "Patient discharged on Friday."
    assert result.updated_at == referral.updated_at


def test_check_status_blank_note_is_ignored(lifecycle, created):
    result = lifecycle.check_status(created.id, "1985-05-15", "   ")
    assert result.note_added is False


def test_get_is_idempotent(lifecycle, created):
    assert lifecycle.get(created.id) == lifecycle.get(created.id)


def test_get_unknown_raises(lifecycle):
    with pytest.raises(ReferralNotFound):
        lifecycle.get("TX-REF-2026-999999")


def test_list_referrals_newest_first(lifecycle, referral_fields):
    a = lifecycle.create(referral_fields, [])
    b = lifecycle.create(referral_fields, [])
    assert [r.id for r in lifecycle.list_referrals()] == [b.id, a.id]
