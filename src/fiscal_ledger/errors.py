"""
Domain errors — the failure taxonomy of the fiscal core.

The domain core raises these exceptions. Each one declares the
railway ErrorCode it belongs to, so Result.from_computation() keeps the
failure kind intact when an exception crosses into the Result-returning
edges (pipeline, authority client, regime adapters):

    SigningUnavailable  ──from_computation──▶  Failure(SIGNING_UNAVAILABLE)

Nothing here is ever reclassified on the way out.
"""

from __future__ import annotations

from enum import StrEnum
from uuid import UUID

from railway import ErrorCode


class FiscalError(Exception):
    """Base class for every error raised by the fiscal core."""

    error_code: ErrorCode = ErrorCode.TECHNICAL_ERROR

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable


class ViolationKind(StrEnum):
    """Which integrity check failed."""

    HASH_MISMATCH = "hash_mismatch"
    LINK_MISMATCH = "link_mismatch"
    GENESIS_MISMATCH = "genesis_mismatch"
    SIGNATURE_MISMATCH = "signature_mismatch"


class IntegrityViolation(FiscalError):
    """
    A chain link, entry hash or HMAC signature does not verify.

    Carries the exact position of the break so audit tooling can point at
    the first untrustworthy entry.
    """

    error_code = ErrorCode.INTEGRITY_VIOLATION

    def __init__(
        self,
        message: str,
        index: int | None = None,
        entry_id: UUID | None = None,
        kind: ViolationKind | None = None,
    ) -> None:
        super().__init__(message)
        self.index = index
        self.entry_id = entry_id
        self.kind = kind


class SigningUnavailable(FiscalError):
    """Certificate, private key or store temporarily unavailable."""

    error_code = ErrorCode.SIGNING_UNAVAILABLE


class InvalidCredential(FiscalError):
    """Key material is malformed or does not match the requested certificate."""

    error_code = ErrorCode.INVALID_CREDENTIAL


class KeyAccessDenied(FiscalError):
    """The certificate store refused to export the private key."""

    error_code = ErrorCode.KEY_ACCESS_DENIED


class SubmissionFailure(FiscalError):
    """
    The fiscal authority could not be reached or refused the request.

    `retryable` is True for network errors, timeouts and 5xx responses,
    False for 4xx responses that will fail again unchanged.
    """

    error_code = ErrorCode.SUBMISSION_FAILURE

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self._retryable = retryable
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self._retryable


class PolicyViolation(FiscalError):
    """A retention configuration that would destroy fiscal records."""

    error_code = ErrorCode.POLICY_VIOLATION


class CertificateSelectionError(FiscalError):
    """No usable certificate, or more than one without an explicit pin."""

    error_code = ErrorCode.CONFIGURATION_ERROR


class ChainConflict(FiscalError):
    """Another writer appended to the tenant chain between tail read and write."""

    error_code = ErrorCode.DATABASE_ERROR

    def __init__(self, tenant_id: str, expected_previous: str) -> None:
        super().__init__(
            f"Chain tail for tenant {tenant_id!r} moved: "
            f"expected previous hash {expected_previous[:16]}"
        )
        self.tenant_id = tenant_id
        self.expected_previous = expected_previous
