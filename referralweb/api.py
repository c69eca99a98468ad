from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from starlette.datastructures import UploadFile

from referralweb.attachment_store import BlobStore, IncomingFile
from referralweb.auth import StaffUser, require_staff
from referralweb.errors import (
    GENERIC_NOT_FOUND_MESSAGE,
    AttachmentUploadError,
    EmptyNoteError,
    InvalidStatusError,
    ReferralNotFound,
    ReferralSaveError,
    StorePermissionError,
    SummaryGenerationError,
)
from referralweb.intake import (
    ATTACHMENT_FAILURE_MESSAGE,
    SAVE_FAILURE_MESSAGE,
    SUMMARY_FAILURE_MESSAGE,
    submit_referral,
)
from referralweb.lifecycle import ReferralLifecycle
from referralweb.models import REFERRAL_STATUSES, SERVICE_LABELS, status_label
from referralweb.validation import ATTACHMENT_FIELDS

logger = logging.getLogger("referralweb.api")

router = APIRouter()

SUBMISSION_FAILURE_MESSAGE = "Something went wrong while submitting the referral. Please try again."


# =========================
# Payloads
# =========================

class StatusCheckPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    referral_id: str = Field(alias="referralId")
    patient_dob: str = Field(alias="patientDOB")
    optional_note: Optional[str] = Field(default=None, alias="optionalNote")


class StatusChangePayload(BaseModel):
    status: str = Field(validation_alias=AliasChoices("status", "newStatus"))
    notes: Optional[str] = None


class NotePayload(BaseModel):
    note: str = Field(default="", validation_alias=AliasChoices("note", "noteText"))


# =========================
# Dependencies
# =========================

def get_lifecycle(request: Request) -> ReferralLifecycle:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Referral store is not available.")
    return ReferralLifecycle(store)


def get_blob_store(request: Request) -> BlobStore:
    blob_store = getattr(request.app.state, "blob_store", None)
    if blob_store is None:
        raise HTTPException(status_code=503, detail="Document storage is not available.")
    return blob_store


def _permission_denied(e: StorePermissionError) -> HTTPException:
    return HTTPException(status_code=403, detail=e.to_dict())


async def _read_submission(request: Request) -> Tuple[Dict[str, Any], Dict[str, List[IncomingFile]]]:
    form = await request.form()
    fields: Dict[str, Any] = {}
    files: Dict[str, List[IncomingFile]] = {name: [] for name in ATTACHMENT_FIELDS}

    for key in set(form.keys()):
        values = form.getlist(key)
        if key in ATTACHMENT_FIELDS:
            for item in values:
                if not isinstance(item, UploadFile):
                    continue
                data = await item.read()
                files[key].append(
                    IncomingFile(
                        filename=item.filename or "upload",
                        content_type=(item.content_type or "").lower().strip(),
                        data=data,
                    )
                )
            continue
        text_values = [v for v in values if isinstance(v, str)]
        if key == "servicesNeeded":
            fields[key] = text_values
        elif text_values:
            fields[key] = text_values[-1]
    return fields, files


# =========================
# Public routes
# =========================

@router.get("/ping")
def ping():
    return {"status": "ok"}


@router.get("/services")
def list_services():
    return {
        "services": [{"code": code, "label": label} for code, label in SERVICE_LABELS.items()],
        "statuses": [{"code": s, "label": status_label(s)} for s in REFERRAL_STATUSES],
    }


@router.post("/referrals", status_code=201)
async def create_referral(
    request: Request,
    lifecycle: ReferralLifecycle = Depends(get_lifecycle),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """
    Multipart intake submission. Attachments arrive under referralDocuments
    and progressNotes; servicesNeeded may repeat.
    """
    form, files = await _read_submission(request)

    try:
        result = await run_in_threadpool(submit_referral, form, files, lifecycle, blob_store)
    except AttachmentUploadError as e:
        logger.error("Referral submission aborted: %s", e.message)
        raise HTTPException(status_code=503, detail=ATTACHMENT_FAILURE_MESSAGE)
    except SummaryGenerationError:
        raise HTTPException(status_code=502, detail=SUMMARY_FAILURE_MESSAGE)
    except StorePermissionError as e:
        raise _permission_denied(e)
    except ReferralSaveError:
        raise HTTPException(status_code=500, detail=SAVE_FAILURE_MESSAGE)
    except Exception:
        logger.exception("Referral submission failed")
        raise HTTPException(status_code=500, detail=SUBMISSION_FAILURE_MESSAGE)

    if not result.ok:
        return JSONResponse(status_code=422, content={"message": result.message, "errors": result.errors})

    return {"id": result.referral_id, "redirect": result.redirect, "message": result.message}


@router.post("/status-check")
def status_check(payload: StatusCheckPayload, lifecycle: ReferralLifecycle = Depends(get_lifecycle)):
    try:
        result = lifecycle.check_status(payload.referral_id, payload.patient_dob, payload.optional_note)
    except ReferralNotFound:
        raise HTTPException(status_code=404, detail=GENERIC_NOT_FOUND_MESSAGE)
    except StorePermissionError as e:
        # Public callers never learn whether the record exists.
        logger.error("Status check denied by store: %s", e.message)
        raise HTTPException(status_code=404, detail=GENERIC_NOT_FOUND_MESSAGE)
    return result.model_dump(by_alias=True, mode="json")


# =========================
# Staff routes
# =========================

@router.get("/referrals")
def list_referrals(
    lifecycle: ReferralLifecycle = Depends(get_lifecycle),
    user: StaffUser = Depends(require_staff),
):
    return {"referrals": [r.to_public() for r in lifecycle.list_referrals()]}


@router.get("/referrals/{referral_id}")
def get_referral(
    referral_id: str,
    lifecycle: ReferralLifecycle = Depends(get_lifecycle),
    user: StaffUser = Depends(require_staff),
):
    try:
        referral = lifecycle.get(referral_id)
    except ReferralNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StorePermissionError as e:
        raise _permission_denied(e)
    return {"referral": referral.to_public()}


@router.post("/referrals/{referral_id}/status")
def change_referral_status(
    referral_id: str,
    payload: StatusChangePayload,
    lifecycle: ReferralLifecycle = Depends(get_lifecycle),
    user: StaffUser = Depends(require_staff),
):
    try:
        referral = lifecycle.change_status(referral_id, payload.status, payload.notes)
    except InvalidStatusError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ReferralNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StorePermissionError as e:
        raise _permission_denied(e)
    return {"message": "Status updated.", "referral": referral.to_public()}


@router.post("/referrals/{referral_id}/notes")
def add_referral_note(
    referral_id: str,
    payload: NotePayload,
    lifecycle: ReferralLifecycle = Depends(get_lifecycle),
    user: StaffUser = Depends(require_staff),
):
    try:
        referral = lifecycle.add_note(referral_id, payload.note, author=user.username)
    except EmptyNoteError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ReferralNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StorePermissionError as e:
        raise _permission_denied(e)
    return {"message": "Note added successfully.", "referral": referral.to_public()}
