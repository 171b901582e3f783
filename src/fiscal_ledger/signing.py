"""
Signing — the two independent signature paths of the fiscal core.

  IntegritySigner    HMAC-SHA256 over "hash|timestamp|tenant_id" with a
                     server-held secret. Internal tamper detection.
  CertificateSigner  RSA-SHA256 (PKCS#1 v1.5) with a private key exported
                     transiently from the OS certificate store. Externally
                     verifiable proof for fiscal authorities.

The two paths are never interchangeable: an HMAC is not accepted where a
certificate signature is expected and vice versa.
"""

from __future__ import annotations

import hashlib
import hmac
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime

import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from fiscal_ledger.domain.models import CertificateSignature, FiscalLogEntry
from fiscal_ledger.domain.ports import CertificateStore
from fiscal_ledger.errors import (
    FiscalError,
    IntegrityViolation,
    InvalidCredential,
    SigningUnavailable,
    ViolationKind,
)
from fiscal_ledger.hashing import format_timestamp

log = structlog.get_logger()

MIN_SECRET_BYTES = 32


# ─────────────────────── Integrity signature (HMAC) ───────────────────────


class IntegritySigner:
    """
    HMAC-SHA256 integrity signatures for ledger entries.

    The secret is injected at construction so tests and tenants of a test
    suite can run with distinct secrets; it is never logged or exposed.
    """

    def __init__(self, secret: bytes) -> None:
        if len(secret) < MIN_SECRET_BYTES:
            raise ValueError(
                f"HMAC secret must be at least {MIN_SECRET_BYTES} bytes, got {len(secret)}"
            )
        self._secret = secret

    def __repr__(self) -> str:
        return "IntegritySigner(secret=***)"

    @staticmethod
    def message(entry_hash: str, timestamp: datetime, tenant_id: str) -> bytes:
        return f"{entry_hash}|{format_timestamp(timestamp)}|{tenant_id}".encode()

    def sign(self, entry_hash: str, timestamp: datetime, tenant_id: str) -> str:
        return hmac.new(
            self._secret, self.message(entry_hash, timestamp, tenant_id), hashlib.sha256
        ).hexdigest()

    def verify(self, entry_hash: str, timestamp: datetime, tenant_id: str, signature: str) -> bool:
        expected = self.sign(entry_hash, timestamp, tenant_id)
        return hmac.compare_digest(expected, signature)

    def verify_entry(self, entry: FiscalLogEntry) -> bool:
        return self.verify(entry.hash, entry.timestamp, entry.tenant_id, entry.signature)

    def ensure_valid(self, entry: FiscalLogEntry) -> None:
        """Raise IntegrityViolation when the entry's signature does not verify."""
        if not self.verify_entry(entry):
            log.error(
                "integrity.signature_mismatch",
                tenant_id=entry.tenant_id,
                entry_id=str(entry.id),
                hash_prefix=entry.hash[:16],
            )
            raise IntegrityViolation(
                f"Integrity signature mismatch for entry {entry.id}",
                entry_id=entry.id,
                kind=ViolationKind.SIGNATURE_MISMATCH,
            )


# ─────────────────────── Certificate signature (RSA) ───────────────────────


def sign_rsa_sha256(data: bytes, key: PrivateKeyTypes) -> bytes:
    """RSA-SHA256 with PKCS#1 v1.5 padding, the scheme fiscal XML signatures use."""
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidCredential(
            f"Fiscal signing requires an RSA key, got {type(key).__name__}"
        )
    try:
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    except ValueError as e:
        raise InvalidCredential(f"RSA signing failed: {e}") from e


def verify_rsa_sha256(data: bytes, signature: bytes, certificate: x509.Certificate) -> bool:
    public_key = certificate.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False
    try:
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


class CertificateSigner:
    """
    Produce certificate signatures through the OS store, with a time bound.

    The store export runs on a worker thread; if export plus signature has
    not finished within `timeout` seconds the call fails with
    SigningUnavailable. The private key never leaves the store's
    export_and_use call.
    """

    def __init__(self, store: CertificateStore, timeout: float = 15.0) -> None:
        self._store = store
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="cert-signer")

    def sign(self, thumbprint: str, data: bytes) -> CertificateSignature:
        if not self._store.is_available():
            raise SigningUnavailable("Certificate store is not available on this host")

        def _operation(key: PrivateKeyTypes, certificate: x509.Certificate) -> CertificateSignature:
            return CertificateSignature(
                value=sign_rsa_sha256(data, key),
                certificate_der=certificate.public_bytes(serialization.Encoding.DER),
                thumbprint=thumbprint.upper(),
            )

        future = self._executor.submit(self._store.export_and_use, thumbprint, _operation)
        try:
            signature = future.result(timeout=self._timeout)
        except FutureTimeout as e:
            future.cancel()
            log.warning(
                "signing.timeout",
                thumbprint=thumbprint[:8],
                timeout_seconds=self._timeout,
            )
            raise SigningUnavailable(
                f"Certificate signing did not complete within {self._timeout}s"
            ) from e
        except FiscalError:
            raise
        except Exception as e:
            raise SigningUnavailable(f"Certificate signing failed: {e}") from e

        log.info("signing.completed", thumbprint=thumbprint[:8], size_bytes=len(data))
        return signature

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
