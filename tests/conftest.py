"""
Shared test fixtures and helpers for the fiscal-ledger test suite.

Provides:
  - a controllable clock (all ledger timestamps are deterministic)
  - RSA test certificates with Spanish-style subjects, generated on the fly
  - FakeStoreRunner: stands in for PowerShell and the Windows certificate
    store, exporting real PKCS#12 containers protected by the passphrase
    the adapter hands it
  - ready-made ledger, registry and taxpayer profile fixtures
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID

from fiscal_ledger.adapters.certificate_store import ScriptOutput, WindowsCertificateStore
from fiscal_ledger.adapters.memory_store import InMemoryLedgerStore, InMemoryOperationalLogStore
from fiscal_ledger.adapters.x509_parser import name_attributes, sha1_thumbprint
from fiscal_ledger.certificates import CertificateRegistry
from fiscal_ledger.domain.models import (
    CertificateUsage,
    DocumentType,
    FiscalDocument,
    Regime,
    StoreLocation,
    TaxpayerProfile,
)
from fiscal_ledger.ledger import FiscalChainLedger
from fiscal_ledger.signing import CertificateSigner, IntegritySigner

TEST_SECRET = b"test-secret-for-hmac-integrity-0123456789"
TENANT = "acme"
TAX_ID = "B12345678"
START = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


# ─────────────────────── Clock ───────────────────────


class FixedClock:
    """Returns the same instant until told to move."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


# ─────────────────────── Documents & ledger ───────────────────────


def make_document(
    total: str = "121.00",
    number: str = "0001",
    tenant_id: str = TENANT,
    document_type: DocumentType = DocumentType.INVOICE,
    series: str = "A",
) -> FiscalDocument:
    amount = Decimal(total)
    taxable = (amount / Decimal("1.21")).quantize(Decimal("0.01"))
    return FiscalDocument(
        tenant_id=tenant_id,
        document_type=document_type,
        document_number=number,
        series=series,
        taxable_amount=taxable,
        tax_amount=amount - taxable,
        total=amount,
    )


@pytest.fixture()
def integrity_signer() -> IntegritySigner:
    return IntegritySigner(TEST_SECRET)


@pytest.fixture()
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture()
def log_store() -> InMemoryOperationalLogStore:
    return InMemoryOperationalLogStore()


@pytest.fixture()
def ledger(
    ledger_store: InMemoryLedgerStore,
    integrity_signer: IntegritySigner,
    clock: FixedClock,
) -> FiscalChainLedger:
    return FiscalChainLedger(store=ledger_store, signer=integrity_signer, clock=clock)


# ─────────────────────── Certificates ───────────────────────


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """One RSA key for the whole session; generating keys is slow."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_certificate(
    key: rsa.RSAPrivateKey,
    common_name: str = "EMPRESA DEMO SL - B12345678",
    serial_number: str | None = "IDCES-B12345678",
    organization: str | None = "EMPRESA DEMO SL",
    not_before: datetime = START - timedelta(days=30),
    not_after: datetime = START + timedelta(days=365),
) -> x509.Certificate:
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if serial_number is not None:
        attributes.append(x509.NameAttribute(NameOID.SERIAL_NUMBER, serial_number))
    if organization is not None:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    attributes.append(x509.NameAttribute(NameOID.COUNTRY_NAME, "ES"))
    subject = x509.Name(attributes)
    issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "AC FNMT Usuarios"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "FNMT-RCM"),
            x509.NameAttribute(NameOID.COUNTRY_NAME, "ES"),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )


def windows_dn(name: x509.Name) -> str:
    """A DN string the way the Windows store prints it (most specific first)."""
    parts = []
    for key, value in name_attributes(name).items():
        if "," in value or "+" in value:
            value = f'"{value}"'
        parts.append(f"{key}={value}")
    return ", ".join(parts)


@dataclass
class StoredCertificate:
    certificate: x509.Certificate
    key: rsa.RSAPrivateKey | None
    location: StoreLocation = StoreLocation.CURRENT_USER
    exportable: bool = True

    @property
    def thumbprint(self) -> str:
        return sha1_thumbprint(self.certificate)


@dataclass
class FakeStoreRunner:
    """
    ScriptRunner that plays the Windows store.

    Listing returns the JSON the listing script would print; exporting
    writes a real PKCS#12 file encrypted with the passphrase received in
    the environment. Every passphrase seen is recorded.
    """

    certificates: list[StoredCertificate] = field(default_factory=list)
    is_up: bool = True
    passphrases: list[str] = field(default_factory=list)
    export_paths: list[str] = field(default_factory=list)
    listings: int = 0
    substitute: x509.Certificate | None = None

    def available(self) -> bool:
        return self.is_up

    def run(self, script: str, env: Mapping[str, str], timeout: float) -> ScriptOutput:
        if "FISCAL_EXPORT_PATH" in env:
            return self._export(env)
        self.listings += 1
        return ScriptOutput(0, json.dumps([self._listing(c) for c in self.certificates]), "")

    def add(self, stored: StoredCertificate) -> StoredCertificate:
        self.certificates.append(stored)
        return stored

    def _listing(self, stored: StoredCertificate) -> dict[str, object]:
        cert = stored.certificate
        return {
            "Thumbprint": stored.thumbprint,
            "SerialNumber": format(cert.serial_number, "X"),
            "Subject": windows_dn(cert.subject),
            "Issuer": windows_dn(cert.issuer),
            "NotBefore": cert.not_valid_before_utc.isoformat(),
            "NotAfter": cert.not_valid_after_utc.isoformat(),
            "HasPrivateKey": stored.key is not None,
            "FriendlyName": "",
            "StoreLocation": stored.location.value,
            "RawData": "",
        }

    def _export(self, env: Mapping[str, str]) -> ScriptOutput:
        passphrase = env["FISCAL_EXPORT_PASSPHRASE"]
        path = env["FISCAL_EXPORT_PATH"]
        self.passphrases.append(passphrase)
        self.export_paths.append(path)

        stored = next(
            (c for c in self.certificates if c.thumbprint == env["FISCAL_CERT_THUMBPRINT"]),
            None,
        )
        if stored is None:
            return ScriptOutput(2, "", "not found")
        if stored.key is None:
            return ScriptOutput(4, "", "no private key")
        if not stored.exportable:
            return ScriptOutput(3, "", "key not exportable")

        certificate = self.substitute or stored.certificate
        container = pkcs12.serialize_key_and_certificates(
            name=b"fiscal",
            key=stored.key,
            cert=certificate,
            cas=None,
            encryption_algorithm=BestAvailableEncryption(passphrase.encode()),
        )
        Path(path).write_bytes(container)
        return ScriptOutput(0, "", "")


@pytest.fixture()
def signing_certificate(rsa_key: rsa.RSAPrivateKey) -> StoredCertificate:
    return StoredCertificate(make_certificate(rsa_key), rsa_key)


@pytest.fixture()
def store_runner(signing_certificate: StoredCertificate) -> FakeStoreRunner:
    return FakeStoreRunner(certificates=[signing_certificate])


@pytest.fixture()
def certificate_store(store_runner: FakeStoreRunner) -> WindowsCertificateStore:
    return WindowsCertificateStore(runner=store_runner)


@pytest.fixture()
def registry(
    certificate_store: WindowsCertificateStore,
    signing_certificate: StoredCertificate,
    clock: FixedClock,
) -> CertificateRegistry:
    return CertificateRegistry(
        certificate_store,
        {signing_certificate.thumbprint: [CertificateUsage.ALL]},
        clock=clock,
    )


@pytest.fixture()
def certificate_signer(
    certificate_store: WindowsCertificateStore,
) -> Iterator[CertificateSigner]:
    signer = CertificateSigner(certificate_store, timeout=10.0)
    yield signer
    signer.close()


@pytest.fixture()
def profiles() -> dict[str, TaxpayerProfile]:
    return {
        TENANT: TaxpayerProfile(
            tenant_id=TENANT,
            tax_id=TAX_ID,
            legal_name="EMPRESA DEMO SL",
            regimes=frozenset({Regime.TICKETBAI, Regime.VERIFACTU}),
        )
    }
