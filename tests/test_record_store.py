import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from referralweb.errors import StorePermissionError
from referralweb.models import InternalNote
from referralweb.record_store import (
    SqliteReferralStore,
    referral_from_document,
    referral_to_document,
    ts_from_store,
    ts_to_store,
)


class _DeniedConnection:
    def execute(self, *args, **kwargs):
        raise sqlite3.OperationalError("attempt to write a readonly database")

    def commit(self):
        pass

    def close(self):
        pass


def test_save_then_get_round_trips_every_field(store, make_referral):
    referral = make_referral()
    referral.internal_notes = [
        InternalNote(
            id="note-1",
            content="Called PCP office",
            author="Staff Member",
            created_at=referral.created_at + timedelta(minutes=5),
        )
    ]
    store.save(referral)

    loaded = store.get_by_id(referral.id)
    assert loaded == referral
    assert loaded.created_at.tzinfo is not None
    assert loaded.internal_notes[0].created_at == referral.internal_notes[0].created_at


def test_timestamp_conversion_is_symmetric():
    dt = datetime(2026, 3, 2, 15, 30, 0, 654321, tzinfo=timezone.utc)
    assert ts_from_store(ts_to_store(dt)) == dt

    offset = datetime(2026, 3, 2, 9, 30, tzinfo=timezone(timedelta(hours=-6)))
    assert ts_from_store(ts_to_store(offset)) == offset
    assert ts_to_store(offset).endswith("+00:00")


def test_document_form_uses_store_strings(make_referral):
    referral = make_referral()
    doc = referral_to_document(referral)
    assert isinstance(doc["createdAt"], str)
    assert isinstance(doc["statusHistory"][0]["changedAt"], str)
    assert doc["patientDOB"] == "1985-05-15"
    assert referral_from_document(doc) == referral


def test_get_all_newest_first(store, make_referral):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    store.save(make_referral("TX-REF-2026-000001", created_at=base))
    store.save(make_referral("TX-REF-2026-000003", created_at=base + timedelta(days=2)))
    store.save(make_referral("TX-REF-2026-000002", created_at=base + timedelta(days=1)))

    ids = [r.id for r in store.get_all()]
    assert ids == ["TX-REF-2026-000003", "TX-REF-2026-000002", "TX-REF-2026-000001"]


def test_save_is_idempotent_full_replace(store, make_referral):
    referral = make_referral()
    store.save(referral)
    store.save(referral)
    assert len(store.get_all()) == 1

    referral.status = "IN_REVIEW"
    store.save(referral)
    assert store.get_by_id(referral.id).status == "IN_REVIEW"
    assert len(store.get_all()) == 1


def test_get_unknown_or_blank_id_returns_none(store):
    assert store.get_by_id("TX-REF-2026-999999") is None
    assert store.get_by_id("") is None


def test_find_by_id_and_dob_is_exact(store, make_referral):
    referral = make_referral()
    store.save(referral)

    assert store.find_by_id_and_dob(referral.id, "1985-05-15") == referral
    assert store.find_by_id_and_dob(referral.id, "1985-5-15") is None
    assert store.find_by_id_and_dob(referral.id, "05/15/1985") is None
    assert store.find_by_id_and_dob("TX-REF-2026-999999", "1985-05-15") is None


def test_data_survives_reopen(tmp_path, make_referral):
    path = str(tmp_path / "referrals.sqlite")
    with SqliteReferralStore(path) as s:
        s.save(make_referral())
    with SqliteReferralStore(path) as s:
        assert s.get_by_id("TX-REF-2026-000001") is not None


def test_unopened_store_raises():
    s = SqliteReferralStore(":memory:")
    with pytest.raises(RuntimeError):
        s.get_all()


def test_permission_failure_degrades_list_to_empty(store):
    store._conn = _DeniedConnection()
    assert store.get_all() == []


def test_permission_failure_on_single_record_operations(store, make_referral):
    store._conn = _DeniedConnection()
    with pytest.raises(StorePermissionError) as exc:
        store.get_by_id("TX-REF-2026-000001")
    assert exc.value.operation == "get"
    assert exc.value.path == "referrals/TX-REF-2026-000001"

    with pytest.raises(StorePermissionError) as exc:
        store.save(make_referral())
    assert exc.value.operation == "update"


def test_other_database_errors_propagate(store):
    class _Broken(_DeniedConnection):
        def execute(self, *args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

    store._conn = _Broken()
    with pytest.raises(sqlite3.OperationalError):
        store.get_all()
