"""
Regime adapters — shared flow for building and submitting signed envelopes.

Every regime follows the same steps; subclasses supply the regime-specific
pieces (identifier, signing payload, QR payload, XML wire format, response
reading):

  entry (already chained) ──▶ select certificate for the regime usage
                          ──▶ identifier + canonical signing payload
                          ──▶ RSA-SHA256 signature via the OS store
                          ──▶ verification code + QR payload
                          ──▶ XML envelope
  envelope ──▶ POST to the authority ──▶ SubmissionReceipt

Adapters are stateless: they never create ledger entries and keep no
chain state. prepare() and submit() return Results; a signing failure
keeps its own error code (SIGNING_UNAVAILABLE, KEY_ACCESS_DENIED, ...).
"""

from __future__ import annotations

import base64
import hashlib
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import ClassVar

import structlog
from railway import ErrorCode
from railway.result import Result

from fiscal_ledger.certificates import CertificateRegistry
from fiscal_ledger.domain.models import (
    CertificateRecord,
    CertificateSignature,
    CertificateUsage,
    FiscalLogEntry,
    Regime,
    RegimeEnvelope,
    SubmissionReceipt,
    TaxpayerProfile,
)
from fiscal_ledger.domain.ports import AuthorityTransport
from fiscal_ledger.errors import CertificateSelectionError, IntegrityViolation, ViolationKind
from fiscal_ledger.hashing import verify_entry
from fiscal_ledger.signing import CertificateSigner

log = structlog.get_logger()

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
ET.register_namespace("ds", DS_NS)

_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
_SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
_PAYLOAD_ID = "signing-payload"


@dataclass(frozen=True, slots=True)
class RegimeEndpoint:
    """Where and as whom a regime adapter talks to its authority."""

    submit_url: str
    query_url: str | None = None
    cancel_url: str | None = None
    verification_base_url: str | None = None
    software_name: str = "fiscal-ledger"
    software_version: str = "0.1.0"


# ─────────────────────── XML helpers ───────────────────────


def sub(parent: ET.Element, tag: str, text: str | None = None, **attrib: str) -> ET.Element:
    element = ET.SubElement(parent, tag, attrib)
    if text is not None:
        element.text = text
    return element


def iter_local(root: ET.Element, name: str) -> Iterator[ET.Element]:
    """Elements named `name` in any namespace."""
    for element in root.iter():
        if element.tag == name or element.tag.endswith(f"}}{name}"):
            yield element


def local_text(root: ET.Element, name: str) -> str | None:
    element = next(iter_local(root, name), None)
    if element is None or element.text is None:
        return None
    return element.text.strip()


def append_signature(
    parent: ET.Element,
    signing_payload: str,
    signature: CertificateSignature,
) -> ET.Element:
    """
    Attach a ds:Signature over the canonical signing payload.

    The payload travels inside ds:Object so the receiver can recompute the
    digest and check SignatureValue against X509Certificate.
    """
    sig = ET.SubElement(parent, f"{{{DS_NS}}}Signature")
    signed_info = ET.SubElement(sig, f"{{{DS_NS}}}SignedInfo")
    ET.SubElement(signed_info, f"{{{DS_NS}}}CanonicalizationMethod", Algorithm=_C14N)
    ET.SubElement(signed_info, f"{{{DS_NS}}}SignatureMethod", Algorithm=_RSA_SHA256)
    reference = ET.SubElement(signed_info, f"{{{DS_NS}}}Reference", URI=f"#{_PAYLOAD_ID}")
    ET.SubElement(reference, f"{{{DS_NS}}}DigestMethod", Algorithm=_SHA256)
    sub(
        reference,
        f"{{{DS_NS}}}DigestValue",
        base64.b64encode(hashlib.sha256(signing_payload.encode()).digest()).decode(),
    )
    sub(sig, f"{{{DS_NS}}}SignatureValue", base64.b64encode(signature.value).decode())
    key_info = ET.SubElement(sig, f"{{{DS_NS}}}KeyInfo")
    x509_data = ET.SubElement(key_info, f"{{{DS_NS}}}X509Data")
    sub(x509_data, f"{{{DS_NS}}}X509Certificate", base64.b64encode(signature.certificate_der).decode())
    sub(sig, f"{{{DS_NS}}}Object", signing_payload, Id=_PAYLOAD_ID)
    return sig


def to_xml(root: ET.Element) -> str:
    return ET.tostring(root, encoding="unicode", xml_declaration=True)


def format_date(moment: datetime) -> str:
    """dd-mm-yyyy, the date format both authorities use."""
    return moment.astimezone(UTC).strftime("%d-%m-%Y")


# ─────────────────────── Adapter base ───────────────────────


class RegimeAdapter(ABC):
    """Template for a fiscal-authority protocol adapter."""

    regime: ClassVar[Regime]
    code_prefix: ClassVar[str]

    def __init__(
        self,
        registry: CertificateRegistry,
        signer: CertificateSigner,
        transport: AuthorityTransport,
        endpoint: RegimeEndpoint,
        profiles: Mapping[str, TaxpayerProfile],
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._registry = registry
        self._signer = signer
        self._transport = transport
        self._endpoint = endpoint
        self._profiles = profiles
        self._clock = clock

    # ──────────────────────── Public API ────────────────────────

    def enabled_for(self, tenant_id: str) -> bool:
        profile = self._profiles.get(tenant_id)
        return profile is not None and self.regime in profile.regimes

    def prepare(self, entry: FiscalLogEntry) -> Result[RegimeEnvelope]:
        """Build the signed envelope for a chained entry."""
        return Result.from_computation(
            lambda: self.build_envelope(entry),
            ErrorCode.TECHNICAL_ERROR,
            f"Building {self.regime.value} envelope failed",
        )

    def submit(self, envelope: RegimeEnvelope) -> Result[SubmissionReceipt]:
        """Send a prepared envelope. Safe to call again with the same envelope."""
        if envelope.regime != self.regime:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"{self.regime.value} adapter cannot submit a {envelope.regime.value} envelope",
            )
        return (
            self._transport.post_xml(
                self._endpoint.submit_url, envelope.xml, self.submission_headers()
            )
            .flat_map(
                lambda body: Result.from_computation(
                    lambda: self.parse_response(envelope, body),
                    ErrorCode.SUBMISSION_FAILURE,
                    f"Unreadable {self.regime.value} authority response",
                )
            )
            .peek(self._log_receipt)
        )

    def build_envelope(self, entry: FiscalLogEntry) -> RegimeEnvelope:
        _ensure_chained(entry)
        profile = self.profile(entry.tenant_id)
        certificate = self.select_certificate(profile)

        identifier = self.build_identifier(entry, profile)
        payload = self.signing_payload(entry, profile, identifier)
        signature = self._signer.sign(certificate.thumbprint, payload.encode("utf-8"))
        code = self.verification_code(signature.value)

        envelope = RegimeEnvelope(
            regime=self.regime,
            identifier=identifier,
            entry_id=entry.id,
            entry_hash=entry.hash,
            tenant_id=entry.tenant_id,
            signing_payload=payload,
            signature=base64.b64encode(signature.value).decode(),
            certificate_thumbprint=certificate.thumbprint,
            certificate_der=base64.b64encode(signature.certificate_der).decode(),
            verification_code=code,
            qr_payload=self.qr_payload(entry, profile, identifier, code),
            verification_url=self.verification_url(entry, profile),
            xml=self.serialize(entry, profile, identifier, payload, signature),
            created_at=self._clock(),
        )
        log.info(
            "envelope.built",
            regime=self.regime.value,
            identifier=identifier,
            entry_id=str(entry.id),
            thumbprint=certificate.short_thumbprint,
        )
        return envelope

    def profile(self, tenant_id: str) -> TaxpayerProfile:
        profile = self._profiles.get(tenant_id)
        if profile is None:
            raise CertificateSelectionError(f"No taxpayer profile for tenant {tenant_id!r}")
        if self.regime not in profile.regimes:
            raise CertificateSelectionError(
                f"Regime {self.regime.value} is not enabled for tenant {tenant_id!r}"
            )
        return profile

    def select_certificate(self, profile: TaxpayerProfile) -> CertificateRecord:
        return self._registry.select(
            CertificateUsage.for_regime(self.regime),
            pinned=profile.pinned_certificate(self.regime),
        )

    def verification_code(self, signature: bytes) -> str:
        encoded = base64.urlsafe_b64encode(signature).decode().rstrip("=")
        return f"{self.code_prefix}-{encoded[:16]}"

    def verification_url(self, entry: FiscalLogEntry, profile: TaxpayerProfile) -> str | None:
        return None

    def submission_headers(self) -> dict[str, str]:
        return {}

    # ──────────────────────── Regime-specific ────────────────────────

    @abstractmethod
    def build_identifier(self, entry: FiscalLogEntry, profile: TaxpayerProfile) -> str: ...

    @abstractmethod
    def signing_payload(
        self, entry: FiscalLogEntry, profile: TaxpayerProfile, identifier: str
    ) -> str: ...

    @abstractmethod
    def qr_payload(
        self, entry: FiscalLogEntry, profile: TaxpayerProfile, identifier: str, code: str
    ) -> str: ...

    @abstractmethod
    def serialize(
        self,
        entry: FiscalLogEntry,
        profile: TaxpayerProfile,
        identifier: str,
        payload: str,
        signature: CertificateSignature,
    ) -> str: ...

    @abstractmethod
    def parse_response(self, envelope: RegimeEnvelope, body: str) -> SubmissionReceipt: ...

    # ──────────────────────── Internals ────────────────────────

    def _log_receipt(self, receipt: SubmissionReceipt) -> None:
        if receipt.accepted:
            log.info(
                "submission.accepted",
                regime=self.regime.value,
                identifier=receipt.envelope_identifier,
                reference=receipt.authority_reference,
            )
        else:
            log.warning(
                "submission.rejected",
                regime=self.regime.value,
                identifier=receipt.envelope_identifier,
                status=receipt.status,
                errors=receipt.errors,
            )


def _ensure_chained(entry: FiscalLogEntry) -> None:
    if not entry.hash or not entry.previous_hash or not verify_entry(entry):
        raise IntegrityViolation(
            f"Entry {entry.id} is not a chained ledger entry; no envelope can be built",
            entry_id=entry.id,
            kind=ViolationKind.HASH_MISMATCH,
        )
