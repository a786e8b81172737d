"""Error taxonomy for the credit-metered generation pipeline."""

from __future__ import annotations

from typing import Any, Dict, Optional


GENERIC_GENERATION_MESSAGE = (
    "Failed to generate content. Please check your connection or try a different theme."
)


class CaptionServiceError(Exception):
    """Base error carrying the HTTP status and a client-safe message."""

    status_code = 500
    code = "internal_error"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class AuthRequired(CaptionServiceError):
    status_code = 401
    code = "auth_required"
    default_message = "Sign in to generate captions."


class InsufficientCredits(CaptionServiceError):
    status_code = 402
    code = "insufficient_credits"
    default_message = "Insufficient credits. Top up credits to continue."

    def __init__(self, required: int = 1, available: Optional[int] = None, message: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["required"] = self.required
        payload["available"] = self.available
        payload["top_up"] = True
        return payload


class ProfileUnavailable(CaptionServiceError):
    status_code = 503
    code = "profile_unavailable"
    default_message = "Your profile is temporarily unavailable. Please try again."


class GenerationFailed(CaptionServiceError):
    """Wraps any provider failure; ``cause`` is for logs only."""

    status_code = 502
    code = "generation_failed"
    default_message = GENERIC_GENERATION_MESSAGE

    def __init__(self, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.cause = cause
        super().__init__(message)


class CheckoutCreationFailed(CaptionServiceError):
    status_code = 502
    code = "checkout_creation_failed"
    default_message = "Could not start checkout. Please try again."

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class SignatureInvalid(CaptionServiceError):
    status_code = 400
    code = "signature_invalid"
    default_message = "Webhook signature verification failed."


class CommitFailed(CaptionServiceError):
    status_code = 500
    code = "commit_failed"
    default_message = "Your caption was generated but could not be saved."

    def __init__(self, result: Any = None, message: Optional[str] = None):
        self.result = result
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.result is not None and hasattr(self.result, "to_dict"):
            payload["result"] = self.result.to_dict()
        return payload


class InvalidAmount(CaptionServiceError):
    status_code = 422
    code = "invalid_amount"
    default_message = "Credit amount must be greater than 0."


class GenerationInProgress(CaptionServiceError):
    status_code = 409
    code = "generation_in_progress"
    default_message = "A generation is already running. Please wait for it to finish."


class ScopeMismatch(CaptionServiceError):
    status_code = 403
    code = "scope_mismatch"
    default_message = "user_id does not match authenticated session."
