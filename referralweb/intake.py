from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from referralweb.attachment_store import (
    BlobStore,
    IncomingFile,
    discard_documents,
    resolve_mime,
    sanitize_filename,
    store_attachments,
    store_generated_pdf,
)
from referralweb.errors import (
    AttachmentUploadError,
    ReferralSaveError,
    StorePermissionError,
    SummaryGenerationError,
)
from referralweb.lifecycle import ReferralLifecycle
from referralweb.models import Document
from referralweb.pdf_render import parse_summary_blocks, render_summary_pdf
from referralweb.summary import categorize_referral, generate_referral_summary
from referralweb.validation import validate_referral_submission

logger = logging.getLogger("referralweb.intake")

SUCCESS_MESSAGE = "Referral submitted."
ATTACHMENT_FAILURE_MESSAGE = "An error occurred while uploading your documents. Please try again."
SUMMARY_FAILURE_MESSAGE = "We could not generate the referral summary. Please try again."
SAVE_FAILURE_MESSAGE = "Database error: Failed to save referral."


@dataclass
class SubmissionResult:
    ok: bool
    message: str
    referral_id: Optional[str] = None
    errors: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def redirect(self) -> Optional[str]:
        if not self.referral_id:
            return None
        return success_path(self.referral_id)


def success_path(referral_id: str) -> str:
    return f"/refer/success/{referral_id}"


def summary_pdf_name(referral_id: str) -> str:
    return f"Referral-Summary-{referral_id}.pdf"


def submit_referral(
    form: Mapping[str, Any],
    files: Optional[Mapping[str, List[IncomingFile]]],
    lifecycle: ReferralLifecycle,
    blob_store: BlobStore,
) -> SubmissionResult:
    """
    Validate, upload, summarize, categorize, persist.

    Validation failures come back as a result with field errors and nothing
    leaves the process. AttachmentUploadError, SummaryGenerationError (also
    raised for a summary with nothing to render or a PDF that fails to build),
    StorePermissionError and ReferralSaveError propagate to the caller after
    any blobs written for this submission have been removed.
    """
    outcome = validate_referral_submission(form, files)
    if not outcome.ok:
        logger.info("Referral rejected by validation fields=%s", sorted(outcome.errors))
        return SubmissionResult(ok=False, message=outcome.message, errors=outcome.errors)

    fields = outcome.fields
    uploaded: List[Document] = store_attachments(outcome.files, blob_store)

    referral_id = lifecycle.reserve_id()
    try:
        summary_text = generate_referral_summary(fields)
        if not parse_summary_blocks(summary_text):
            raise SummaryGenerationError("summary has no renderable content")
        pdf_bytes = render_summary_pdf(summary_text)
        pdf_doc = store_generated_pdf(summary_pdf_name(referral_id), pdf_bytes, blob_store)
    except (SummaryGenerationError, AttachmentUploadError):
        logger.error("Referral aborted id=%s; removing %s uploaded document(s)", referral_id, len(uploaded))
        discard_documents(uploaded, blob_store)
        raise
    except Exception as e:
        logger.exception("Summary PDF failed id=%s; removing %s uploaded document(s)", referral_id, len(uploaded))
        discard_documents(uploaded, blob_store)
        raise SummaryGenerationError("summary PDF rendering failed") from e

    documents = [*uploaded, pdf_doc]

    ai_summary = categorize_referral(
        fields.patient_full_name,
        fields.organization_name,
        [(sanitize_filename(f.filename), resolve_mime(f), f.data) for f in outcome.files],
    )

    try:
        referral = lifecycle.create(fields, documents, ai_summary=ai_summary, referral_id=referral_id)
    except StorePermissionError:
        logger.error("Referral save denied id=%s", referral_id)
        discard_documents(documents, blob_store)
        raise
    except Exception as e:
        logger.exception("Referral save failed id=%s", referral_id)
        discard_documents(documents, blob_store)
        raise ReferralSaveError(SAVE_FAILURE_MESSAGE) from e

    return SubmissionResult(ok=True, message=SUCCESS_MESSAGE, referral_id=referral.id)
