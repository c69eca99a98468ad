from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from referralweb.attachment_store import BlobStore, IncomingFile, LocalBlobStore
from referralweb.models import Referral, ReferralFields, StatusHistoryEntry
from referralweb.record_store import SqliteReferralStore

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n%%EOF\n"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64


class TickingClock:
    """Returns a strictly increasing UTC instant on every call."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.current = start or datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


class RecordingBlobStore(BlobStore):
    """In-memory blob store that can be told to fail on chosen names."""

    def __init__(self, fail_on=()):
        self.blobs: Dict[str, bytes] = {}
        self.puts: List[str] = []
        self.deleted: List[str] = []
        self.fail_on = set(fail_on)

    def put(self, key: str, data: bytes, content_type: str) -> str:
        self.puts.append(key)
        if key.rsplit("/", 1)[-1] in self.fail_on:
            raise OSError("simulated storage outage")
        self.blobs[key] = data
        return f"https://blobs.test/{key}"

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.blobs.pop(key, None)


def sample_form(**overrides):
    form = {
        "organizationName": "Memorial Hermann",
        "contactName": "Jane Smith",
        "phone": "713-555-0100",
        "email": "jane.smith@memorialhermann.org",
        "patientFullName": "John Doe",
        "patientDOB": "1985-05-15",
        "patientAddress": "123 Main St, Houston, TX",
        "patientZipCode": "77002",
        "pcpName": "Dr. Alan Grant",
        "pcpPhone": "713-555-0199",
        "surgeryDate": "2026-02-20",
        "covidStatus": "Negative",
        "primaryInsurance": "Medicare",
        "memberId": "MBR-998877",
        "insuranceType": "Medicare Part A",
        "planName": "Original Medicare",
        "planNumber": "",
        "groupNumber": "",
        "servicesNeeded": ["skilledNursing", "physicalTherapy"],
        "diagnosis": "Post-op right hip replacement. Wound care and gait training.",
    }
    form.update(overrides)
    return form


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(tmp_path):
    s = SqliteReferralStore(str(tmp_path / "referrals.sqlite"))
    s.open()
    yield s
    s.close()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "uploads"), "http://testserver")


@pytest.fixture
def recording_blob_store():
    return RecordingBlobStore()


@pytest.fixture
def form():
    return sample_form()


@pytest.fixture
def pdf_file():
    return IncomingFile(filename="referral.pdf", content_type="application/pdf", data=PDF_BYTES)


@pytest.fixture
def png_file():
    return IncomingFile(filename="progress-note.png", content_type="image/png", data=PNG_BYTES)


@pytest.fixture
def referral_fields():
    return ReferralFields(
        organization_name="Memorial Hermann",
        contact_name="Jane Smith",
        phone="713-555-0100",
        patient_full_name="John Doe",
        patient_dob="1985-05-15",
        patient_zip_code="77002",
        primary_insurance="Medicare",
        services_needed=["skilledNursing"],
        diagnosis="CHF exacerbation",
    )


@pytest.fixture
def make_referral(referral_fields):
    def _make(referral_id="TX-REF-2026-000001", created_at=None):
        created = created_at or datetime(2026, 3, 2, 15, 30, 0, 123456, tzinfo=timezone.utc)
        return Referral(
            **referral_fields.model_dump(),
            id=referral_id,
            status_history=[StatusHistoryEntry(status="RECEIVED", changed_at=created)],
            created_at=created,
            updated_at=created,
        )

    return _make
