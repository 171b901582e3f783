"""
Failure description — structured error information for the failure track.

Every failure carries an ErrorCode, a human-readable message, the exception
that caused it (when there is one) and the moment it was recorded.

The codes are split in two groups:
  - fiscal codes, one per kind of failure the audit trail can produce
    (integrity, signing, credentials, submission, retention policy)
  - generic infrastructure codes (validation, database, configuration, ...)

Each code knows whether retrying the same operation can help. Callers use
`code.retryable` to decide between backoff-and-retry and operator escalation.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique


@unique
class ErrorCode(Enum):
    """Structured error codes for the failure track."""

    # --- Fiscal audit trail ---
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    """Hash chain or HMAC mismatch. Surfaced to operators, never auto-corrected."""

    SIGNING_UNAVAILABLE = "SIGNING_UNAVAILABLE"
    """Certificate or private key temporarily unavailable (retryable)."""

    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    """Malformed key material. Fatal for that certificate."""

    KEY_ACCESS_DENIED = "KEY_ACCESS_DENIED"
    """The certificate store refused to export the key. Fatal for that certificate."""

    SUBMISSION_FAILURE = "SUBMISSION_FAILURE"
    """External fiscal authority unreachable or failing. Envelope kept for resubmission."""

    POLICY_VIOLATION = "POLICY_VIOLATION"
    """Retention configuration that would destroy fiscal records."""

    # --- Generic ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def retryable(self) -> bool:
        """True when the same operation may succeed if attempted again later."""
        return self in _RETRYABLE


_RETRYABLE = frozenset(
    {
        ErrorCode.SIGNING_UNAVAILABLE,
        ErrorCode.SUBMISSION_FAILURE,
        ErrorCode.DATABASE_ERROR,
        ErrorCode.TIMEOUT_ERROR,
    }
)


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor.

    >>> desc = FailureDescription(ErrorCode.POLICY_VIOLATION, "fiscal logs cannot be deleted")
    >>> desc.code.retryable
    False
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def create(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> FailureDescription:
        return FailureDescription(code=code, message=message, exception=exception)

    @staticmethod
    def from_exception(
        exception: BaseException,
        default_code: ErrorCode,
        default_message: str,
    ) -> FailureDescription:
        """
        Describe an exception, honouring the code it declares for itself.

        Exceptions that expose an `error_code` attribute holding an ErrorCode
        keep that code and their own message; anything else falls back to the
        caller's default code and message.
        """
        declared = getattr(exception, "error_code", None)
        if isinstance(declared, ErrorCode):
            return FailureDescription(code=declared, message=str(exception), exception=exception)
        return FailureDescription(
            code=default_code,
            message=f"{default_message}: {exception}",
            exception=exception,
        )

    @property
    def retryable(self) -> bool:
        """The exception's own verdict when it gives one, otherwise the code's."""
        declared = getattr(self.exception, "retryable", None)
        if isinstance(declared, bool):
            return declared
        return self.code.retryable

    def full_stack_trace(self) -> str:
        """The message followed by the formatted exception chain, if any."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(
                type(self.exception), self.exception, self.exception.__traceback__
            )
        )
        return f"{self.message}\n{tb}"
