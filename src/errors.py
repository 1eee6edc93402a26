"""Structured error taxonomy for the safeops core.

Every failure that leaves the core is one of these types, so callers branch on
``code`` (or the exception class) and never on provider SDK exceptions.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    VALIDATION_BLOCKED = "VALIDATION_BLOCKED"
    AUTH_FAILED = "AUTH_FAILED"
    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"
    BILLING_DISABLED = "BILLING_DISABLED"
    ACTION_BLOCKED = "ACTION_BLOCKED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    INTENT_NOT_FOUND = "INTENT_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"


class SafeOpsError(Exception):
    """
    Base exception with a stable error code.

    Attributes:
        code: ErrorCode enum value
        message: Human-readable error message (never contains credential material)
        details: Optional dictionary with additional context
        retryable: Whether retrying the same request may succeed
    """

    code: ErrorCode = ErrorCode.PROVIDER_UNAVAILABLE
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class ValidationBlocked(SafeOpsError):
    """Policy rejected the intent; the user must rephrase."""

    code = ErrorCode.VALIDATION_BLOCKED


class CloudError(SafeOpsError):
    """Base for failures reported by a cloud adapter."""

    def __init__(self, message: str, provider: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        self.provider = provider
        merged = dict(details or {})
        if provider:
            merged.setdefault("provider", provider)
        super().__init__(message, merged)


class AuthFailed(CloudError):
    """Credentials were rejected; the user must reconnect the provider."""

    code = ErrorCode.AUTH_FAILED


class CredentialExpired(CloudError):
    code = ErrorCode.CREDENTIAL_EXPIRED


class BillingDisabled(CloudError):
    code = ErrorCode.BILLING_DISABLED


class ActionBlocked(CloudError):
    """Read-only gate tripped or the action cannot be issued as requested."""

    code = ErrorCode.ACTION_BLOCKED


class ProviderUnavailable(CloudError):
    code = ErrorCode.PROVIDER_UNAVAILABLE
    retryable = True


class PersistenceFailure(SafeOpsError):
    code = ErrorCode.PERSISTENCE_FAILURE
    retryable = True


class IntentNotFound(SafeOpsError):
    code = ErrorCode.INTENT_NOT_FOUND


class InvalidTransition(SafeOpsError):
    code = ErrorCode.INVALID_TRANSITION


__all__ = [
    "ErrorCode",
    "SafeOpsError",
    "ValidationBlocked",
    "CloudError",
    "AuthFailed",
    "CredentialExpired",
    "BillingDisabled",
    "ActionBlocked",
    "ProviderUnavailable",
    "PersistenceFailure",
    "IntentNotFound",
    "InvalidTransition",
]
