from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from referralweb.attachment_store import ALLOWED_MIMES, IncomingFile, resolve_mime, sanitize_filename
from referralweb.models import SERVICE_LABELS, ReferralFields

MAX_TOTAL_ATTACHMENT_BYTES = int(os.getenv("REFERRAL_MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))

ATTACHMENT_FIELDS = ("referralDocuments", "progressNotes")
TOTAL_SIZE_ERROR_FIELD = "documents"
INVALID_FORM_MESSAGE = "Please correct the errors below."

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ZIP_CODE_LENGTH = 5


@dataclass
class ValidationOutcome:
    ok: bool
    message: str = ""
    errors: Dict[str, List[str]] = field(default_factory=dict)
    fields: Optional[ReferralFields] = None
    files: List[IncomingFile] = field(default_factory=list)


def _required(value: str, message: str) -> str:
    if not value:
        raise PydanticCustomError("required", message)
    return value


class ReferralForm(BaseModel):
    """
    Raw intake form contract. Every field defaults to "" so that a missing key
    and a blank value produce the same readable message.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        validate_default=True,
        extra="ignore",
    )

    organization_name: str = ""
    contact_name: str = ""
    phone: str = ""
    email: str = ""

    patient_full_name: str = ""
    patient_dob: str = ""
    patient_address: str = ""
    patient_zip_code: str = ""
    pcp_name: str = ""
    pcp_phone: str = ""
    surgery_date: str = ""
    covid_status: str = ""

    primary_insurance: str = ""
    member_id: str = ""
    insurance_type: str = ""
    plan_name: str = ""
    plan_number: str = ""
    group_number: str = ""

    services_needed: List[str] = []
    diagnosis: str = ""

    @field_validator("organization_name")
    @classmethod
    def _organization(cls, v: str) -> str:
        return _required(v, "Organization/Facility name is required.")

    @field_validator("contact_name")
    @classmethod
    def _contact(cls, v: str) -> str:
        return _required(v, "Contact name is required.")

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        return _required(v, "Phone number is required.")

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        if v and not EMAIL_RE.match(v):
            raise PydanticCustomError("email", "Enter a valid email address.")
        return v

    @field_validator("patient_full_name")
    @classmethod
    def _patient_name(cls, v: str) -> str:
        return _required(v, "Patient full name is required.")

    @field_validator("patient_dob")
    @classmethod
    def _patient_dob(cls, v: str) -> str:
        return _required(v, "Date of birth is required.")

    @field_validator("patient_zip_code")
    @classmethod
    def _zip(cls, v: str) -> str:
        _required(v, "ZIP code is required.")
        if len(v) != ZIP_CODE_LENGTH:
            raise PydanticCustomError("zip_code", "ZIP code must be exactly 5 characters.")
        return v

    @field_validator("primary_insurance")
    @classmethod
    def _insurance(cls, v: str) -> str:
        return _required(v, "Primary insurance is required.")

    @field_validator("diagnosis")
    @classmethod
    def _diagnosis(cls, v: str) -> str:
        return _required(v, "Diagnosis is required.")

    @field_validator("services_needed")
    @classmethod
    def _services(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for raw in v:
            code = (raw or "").strip()
            if code and code not in seen:
                seen.append(code)
        if not seen:
            raise PydanticCustomError("services", "Select at least one service.")
        unknown = [c for c in seen if c not in SERVICE_LABELS]
        if unknown:
            raise PydanticCustomError(
                "services",
                "Unknown service: {codes}",
                {"codes": ", ".join(unknown)},
            )
        return seen


# Form names whose to_camel spelling differs from the intake form's.
_FORM_KEY_OVERRIDES = {"patientDOB": "patientDob"}


def _normalize_form(form: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Multi-dict friendly: repeated values become lists for servicesNeeded and
    collapse to the last value for every other field.
    """
    out: Dict[str, Any] = {}
    for key, value in form.items():
        key = _FORM_KEY_OVERRIDES.get(key, key)
        if key == "servicesNeeded":
            if value is None:
                out[key] = []
            elif isinstance(value, (list, tuple)):
                out[key] = [str(v) for v in value if v is not None]
            else:
                out[key] = [str(value)]
            continue
        if isinstance(value, (list, tuple)):
            value = value[-1] if value else ""
        out[key] = "" if value is None else str(value)
    return out


_ERROR_KEYS = {alias: key for key, alias in _FORM_KEY_OVERRIDES.items()}


def _form_key(loc_name: str) -> str:
    # Defaulted (absent) fields report the attribute name, supplied ones the alias.
    info = ReferralForm.model_fields.get(loc_name)
    alias = (info.alias if info is not None else None) or loc_name
    return _ERROR_KEYS.get(alias, alias)


def _flatten_errors(exc: ValidationError) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = err.get("loc") or ("form",)
        name = _form_key(str(loc[0]))
        errors.setdefault(name, []).append(err.get("msg", "Invalid value."))
    return errors


def _validate_files(
    files: Mapping[str, List[IncomingFile]],
    max_total_bytes: int,
) -> tuple[Dict[str, List[str]], List[IncomingFile]]:
    errors: Dict[str, List[str]] = {}
    accepted: List[IncomingFile] = []
    total = 0

    for field_name, items in files.items():
        for f in items or []:
            if not f.data:
                continue
            total += f.size
            if resolve_mime(f) not in ALLOWED_MIMES:
                errors.setdefault(field_name, []).append(
                    f"{sanitize_filename(f.filename)}: only PDF, JPEG, and PNG files are accepted."
                )
                continue
            accepted.append(f)

    if total > max_total_bytes:
        limit_mb = max_total_bytes / (1024 * 1024)
        errors.setdefault(TOTAL_SIZE_ERROR_FIELD, []).append(
            f"Combined attachment size exceeds the {limit_mb:g}MB limit."
        )
    return errors, accepted


def validate_referral_submission(
    form: Mapping[str, Any],
    files: Optional[Mapping[str, List[IncomingFile]]] = None,
    max_total_bytes: Optional[int] = None,
) -> ValidationOutcome:
    """
    Validates a raw intake submission. Never raises for bad user input; the
    caller gets a field -> messages mapping instead.
    """
    limit = MAX_TOTAL_ATTACHMENT_BYTES if max_total_bytes is None else max_total_bytes
    errors: Dict[str, List[str]] = {}
    form_model: Optional[ReferralForm] = None

    try:
        form_model = ReferralForm.model_validate(_normalize_form(form))
    except ValidationError as exc:
        errors.update(_flatten_errors(exc))

    file_errors, accepted = _validate_files(files or {}, limit)
    for name, messages in file_errors.items():
        errors.setdefault(name, []).extend(messages)

    if errors or form_model is None:
        return ValidationOutcome(ok=False, message=INVALID_FORM_MESSAGE, errors=errors)

    fields = ReferralFields.model_validate(form_model.model_dump())
    return ValidationOutcome(ok=True, fields=fields, files=accepted)
