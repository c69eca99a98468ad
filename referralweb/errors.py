"""
Referral-specific exceptions.

These are raised by the store, lifecycle, attachment and summary layers and
are translated to HTTP responses in api.py. Field-level validation failures
are not exceptions; see validation.ValidationOutcome.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


GENERIC_NOT_FOUND_MESSAGE = "No matching referral found. Please check the ID and date of birth."


class ReferralError(Exception):
    """Base exception for all referral errors."""
    pass


class ReferralNotFound(ReferralError):
    """
    No referral matches the id (or the id + DOB pair).
    Unknown id and wrong DOB share one message.
    """
    def __init__(self, message: str = GENERIC_NOT_FOUND_MESSAGE):
        self.message = message
        super().__init__(message)


class EmptyNoteError(ReferralError, ValueError):
    def __init__(self, message: str = "Note cannot be empty."):
        self.message = message
        super().__init__(message)


class InvalidStatusError(ReferralError, ValueError):
    def __init__(self, status: Any):
        self.status = status
        self.message = f"Invalid status: {status!r}"
        super().__init__(self.message)


class AttachmentUploadError(ReferralError):
    """Transient blob-storage failure. The whole submission is aborted."""
    retryable = True

    def __init__(self, filename: str, message: str = "Attachment upload failed"):
        self.filename = filename
        self.message = f"{message}: {filename}"
        super().__init__(self.message)


class SummaryGenerationError(ReferralError):
    """The text-generation service returned empty or failed output."""
    def __init__(self, message: str = "summary generation failed"):
        self.message = message
        super().__init__(message)


class StorePermissionError(ReferralError):
    """
    The backing store rejected the operation (authorization / read-only).
    Kept distinct from ReferralNotFound so staff tooling can tell
    "doesn't exist" apart from "not allowed".
    """
    def __init__(self, operation: str, path: str, detail: Optional[str] = None):
        self.operation = operation
        self.path = path
        self.detail = detail or ""
        self.message = (
            f"Store permission denied: operation '{operation}' on '{path}' was rejected."
        )
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "operation": self.operation,
            "path": self.path,
        }


class ReferralSaveError(ReferralError):
    """The record store failed to persist a new referral."""
    def __init__(self, message: str = "Database error: Failed to save referral."):
        self.message = message
        super().__init__(message)
