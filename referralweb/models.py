from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    # timezone-aware UTC everywhere
    return datetime.now(timezone.utc)


# =========================
# Shared strict base model (Pydantic v2)
# =========================

class StrictBaseModel(BaseModel):
    """
    Strict, assignment-validating base model (Pydantic v2).
    - extra fields are forbidden (schema discipline)
    - assignment is validated (catches subtle runtime drift)
    - camelCase aliases on the wire, snake_case in Python
    """
    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =========================
# Vocabularies
# =========================

ReferralStatus = Literal["RECEIVED", "IN_REVIEW", "ACCEPTED", "REJECTED"]

REFERRAL_STATUSES = ("RECEIVED", "IN_REVIEW", "ACCEPTED", "REJECTED")
INITIAL_STATUS: ReferralStatus = "RECEIVED"

ServiceCode = Literal[
    "skilledNursing",
    "physicalTherapy",
    "occupationalTherapy",
    "speechTherapy",
    "homeHealthAide",
    "medicalSocialWorker",
    "providerAttendant",
    "other",
]

SERVICE_LABELS: Dict[str, str] = {
    "skilledNursing": "Skilled Nursing (SN)",
    "physicalTherapy": "Physical Therapy (PT)",
    "occupationalTherapy": "Occupational Therapy (OT)",
    "speechTherapy": "Speech Therapy (ST)",
    "homeHealthAide": "Home Health Aide (HHA)",
    "medicalSocialWorker": "Medical Social Worker (MSW)",
    "providerAttendant": "Provider Attendant Services (Medicaid)",
    "other": "Other",
}


def service_label(code: str) -> str:
    return SERVICE_LABELS.get(code, code)


def status_label(status: str) -> str:
    """RECEIVED -> 'received', IN_REVIEW -> 'in review'."""
    return (status or "").replace("_", " ").lower()


# =========================
# Attachments
# =========================

class Document(StrictBaseModel):
    """Attachment metadata recorded on a referral. Never edited in place."""
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    name: str
    url: str
    size: int = Field(ge=0)


# =========================
# Lifecycle logs
# =========================

class StatusHistoryEntry(StrictBaseModel):
    status: ReferralStatus
    changed_at: datetime
    notes: Optional[str] = None


class InternalNote(StrictBaseModel):
    id: str
    content: str
    author: str
    created_at: datetime


class AISummary(StrictBaseModel):
    """Advisory triage hint. Not authoritative."""
    suggested_categories: List[str] = Field(default_factory=list)
    reasoning: str = ""


# =========================
# Referral
# =========================

class ReferralFields(StrictBaseModel):
    """
    Normalized intake field bag, produced by the validator and consumed by the
    lifecycle manager and the summary generator.
    """
    # Referrer
    organization_name: str
    contact_name: str
    phone: str
    email: str = ""

    # Patient
    patient_full_name: str
    patient_dob: str = Field(alias="patientDOB")  # plain calendar-date string, matched verbatim
    patient_address: str = ""
    patient_zip_code: str
    pcp_name: str = ""
    pcp_phone: str = ""
    surgery_date: str = ""
    covid_status: str = ""

    # Insurance
    primary_insurance: str
    member_id: str = ""
    insurance_type: str = ""
    plan_name: str = ""
    plan_number: str = ""
    group_number: str = ""

    # Clinical
    services_needed: List[ServiceCode]
    diagnosis: str


class Referral(ReferralFields):
    id: str
    documents: List[Document] = Field(default_factory=list)
    status: ReferralStatus = INITIAL_STATUS
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    internal_notes: List[InternalNote] = Field(default_factory=list)
    ai_summary: Optional[AISummary] = None
    created_at: datetime
    updated_at: datetime

    def to_public(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True, mode="json")


class StatusCheckResult(StrictBaseModel):
    status: ReferralStatus
    updated_at: datetime
    note_added: bool = False
