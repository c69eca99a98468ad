from __future__ import annotations

import base64
import io
import json
import logging
import os
import re
from threading import Lock as ThreadLock
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import OpenAI
from PIL import Image
from pydantic import ValidationError

from referralweb.attachment_store import PDF_MIME
from referralweb.errors import SummaryGenerationError
from referralweb.models import AISummary, ReferralFields, service_label
from referralweb.prompts import CATEGORY_SYSTEM, CATEGORY_USER, SUMMARY_SYSTEM, SUMMARY_USER

logger = logging.getLogger("referralweb.summary")

SUMMARY_MODEL = os.getenv("REFERRAL_SUMMARY_MODEL", "gpt-4o-mini")
CATEGORY_MODEL = os.getenv("REFERRAL_CATEGORY_MODEL", "gpt-4o-mini")
AI_TIMEOUT = float(os.getenv("REFERRAL_AI_TIMEOUT", "60"))
AI_CATEGORIZATION_ENABLED = os.getenv("REFERRAL_AI_CATEGORIZATION", "1").strip() == "1"
MAX_IMAGE_BYTES_FOR_MODEL = int(os.getenv("REFERRAL_MAX_IMAGE_BYTES_FOR_MODEL", str(1_500_000)))
SUMMARY_MAX_TOKENS = int(os.getenv("REFERRAL_SUMMARY_MAX_TOKENS", "1500"))

_client: Optional[OpenAI] = None
_client_lock = ThreadLock()

# (document name, mime, bytes)
DocumentPayload = Tuple[str, str, bytes]

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def _get_client() -> OpenAI:
    # Created on first use; importing the module must not require OPENAI_API_KEY.
    global _client
    with _client_lock:
        if _client is None:
            _client = OpenAI(api_key=os.getenv("OPENAI_API_KEY"), timeout=AI_TIMEOUT)
        return _client


def _strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", (text or "").strip()).strip()


def _message_text(resp: Any) -> str:
    try:
        return resp.choices[0].message.content or ""
    except (AttributeError, IndexError, TypeError):
        return ""


# =========================
# Summary text (fail-hard)
# =========================

_SUMMARY_ROWS: Sequence[Tuple[str, str]] = (
    ("ORGANIZATION", "organization_name"),
    ("CONTACT NAME", "contact_name"),
    ("PHONE", "phone"),
    ("EMAIL", "email"),
    ("PATIENT NAME", "patient_full_name"),
    ("DOB", "patient_dob"),
    ("ADDRESS", "patient_address"),
    ("ZIP CODE", "patient_zip_code"),
    ("PCP NAME", "pcp_name"),
    ("PCP PHONE", "pcp_phone"),
    ("SURGERY DATE", "surgery_date"),
    ("COVID STATUS", "covid_status"),
    ("PRIMARY INSURANCE", "primary_insurance"),
    ("MEM ID#", "member_id"),
    ("INSURANCE TYPE", "insurance_type"),
    ("PLAN NAME", "plan_name"),
    ("PLAN #", "plan_number"),
    ("GROUP #", "group_number"),
)


def build_summary_prompt(fields: ReferralFields) -> str:
    lines: List[str] = []
    for label, attr in _SUMMARY_ROWS:
        lines.append(f"- {label}: {getattr(fields, attr) or ''}")
    services = ", ".join(service_label(code) for code in fields.services_needed)
    lines.append(f"- SERVICES NEEDED: {services}")
    lines.append(f"- DIAGNOSIS: {fields.diagnosis}")
    return SUMMARY_USER.format(data="\n".join(lines))


def generate_referral_summary(fields: ReferralFields) -> str:
    """
    Produces the structured summary text that render_summary_pdf lays out.
    One attempt; empty output or any client failure raises SummaryGenerationError.
    """
    try:
        resp = _get_client().chat.completions.create(
            model=SUMMARY_MODEL,
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM},
                {"role": "user", "content": build_summary_prompt(fields)},
            ],
            temperature=0.2,
            max_tokens=SUMMARY_MAX_TOKENS,
        )
    except Exception as e:
        logger.error("summary.generate model=%s ok=False error=%s", SUMMARY_MODEL, type(e).__name__)
        raise SummaryGenerationError() from e

    text = _strip_code_fences(_message_text(resp))
    if not text:
        logger.error("summary.generate model=%s ok=False error=empty_output", SUMMARY_MODEL)
        raise SummaryGenerationError()

    logger.info("summary.generate model=%s ok=True chars=%s", SUMMARY_MODEL, len(text))
    return text


# =========================
# Categorization (fail-soft)
# =========================

def downscale_image(data: bytes, mime: str) -> Tuple[bytes, str]:
    """
    Re-encodes an oversized image as JPEG so it is safe to pass to a model.
    Returns the original bytes when the image is already small or cannot be decoded.
    """
    if not data or len(data) <= MAX_IMAGE_BYTES_FOR_MODEL:
        return data, mime

    try:
        im = Image.open(io.BytesIO(data))
        im.load()
    except (OSError, Image.DecompressionBombError) as e:
        logger.warning("Could not decode image for categorization: %s", e)
        return data, mime

    if im.mode not in ("RGB", "L"):
        im = im.convert("RGB")

    max_side = 1400
    w, h = im.size
    scale = min(1.0, max_side / max(w, h))
    if scale < 1.0:
        im = im.resize((max(1, int(w * scale)), max(1, int(h * scale))))

    out = io.BytesIO()
    im.save(out, format="JPEG", quality=75, optimize=True)
    out_bytes = out.getvalue()

    tries = 0
    while len(out_bytes) > MAX_IMAGE_BYTES_FOR_MODEL and tries < 3:
        tries += 1
        w2, h2 = im.size
        im = im.resize((max(1, int(w2 * 0.8)), max(1, int(h2 * 0.8))))
        out = io.BytesIO()
        im.save(out, format="JPEG", quality=max(55, 75 - tries * 10), optimize=True)
        out_bytes = out.getvalue()

    return out_bytes, "image/jpeg"


def to_data_uri(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def _document_part(name: str, mime: str, data: bytes) -> Optional[Dict[str, Any]]:
    if mime == PDF_MIME:
        return {"type": "file", "file": {"filename": name, "file_data": to_data_uri(data, mime)}}
    if mime.startswith("image/"):
        blob, mime2 = downscale_image(data, mime)
        return {"type": "image_url", "image_url": {"url": to_data_uri(blob, mime2)}}
    return None


def _category_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "suggestedCategories": {"type": "array", "items": {"type": "string"}},
            "reasoning": {"type": "string"},
        },
        "required": ["suggestedCategories", "reasoning"],
    }


def parse_category_output(raw: str) -> AISummary:
    data = json.loads(_strip_code_fences(raw))
    summary = AISummary.model_validate(data)
    cleaned = [c.strip() for c in summary.suggested_categories if c and c.strip()]
    return AISummary(suggested_categories=cleaned, reasoning=summary.reasoning.strip())


def categorize_referral(
    patient_name: str,
    referrer_name: str,
    documents: Sequence[DocumentPayload],
) -> Optional[AISummary]:
    """
    Advisory triage from the submitted documents. Never raises: failures are
    logged and None is returned so the submission proceeds without a hint.
    """
    if not AI_CATEGORIZATION_ENABLED:
        return None
    if not documents:
        return None

    prompt = CATEGORY_USER.format(
        patient_name=patient_name,
        referrer_name=referrer_name,
        document_names=", ".join(name for name, _, _ in documents),
    )
    parts: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
    for name, mime, data in documents:
        part = _document_part(name, mime, data)
        if part is not None:
            parts.append(part)

    try:
        resp = _get_client().chat.completions.create(
            model=CATEGORY_MODEL,
            messages=[
                {"role": "system", "content": CATEGORY_SYSTEM},
                {"role": "user", "content": parts},
            ],
            temperature=0.2,
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": "referral_categories",
                    "schema": _category_schema(),
                    "strict": True,
                },
            },
        )
        result = parse_category_output(_message_text(resp))
    except (ValueError, ValidationError) as e:
        logger.warning("summary.categorize model=%s ok=False error=unparsable_output (%s)", CATEGORY_MODEL, type(e).__name__)
        return None
    except Exception as e:
        logger.warning("summary.categorize model=%s ok=False error=%s", CATEGORY_MODEL, type(e).__name__)
        return None

    logger.info(
        "summary.categorize model=%s ok=True documents=%s categories=%s",
        CATEGORY_MODEL,
        len(documents),
        len(result.suggested_categories),
    )
    return result
