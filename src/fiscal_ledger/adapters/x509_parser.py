"""
X.509 metadata extraction — distinguished names, holders and fingerprints.

Adapter layer — turns certificates into CertificateRecord metadata using:
  - cryptography (PyCA): typed access to subject/issuer attributes,
    validity window and fingerprints of DER certificates
  - a small DN string parser for the subject/issuer strings the Windows
    store reports ("CN=..., SERIALNUMBER=IDCES-12345678Z, O=\"ACME, S.L.\"")

Spanish qualified certificates carry the holder's tax id (NIF/NIE/CIF) in
serialNumber (2.5.4.5), organizationIdentifier (2.5.4.97) or UID, usually
behind a semantics prefix (IDCES-, VATES-). Older certificates only embed
it in the common name ("GARCIA LOPEZ JUAN - 12345678Z"), so the common
name is scanned as a fallback.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from fiscal_ledger.domain.models import CertificateHolder, CertificateRecord, StoreLocation

log = structlog.get_logger()

# ─────────────────────── Tax identifier patterns ───────────────────────
# NIF (8 digits + letter), NIE (X/Y/Z + 7 digits + letter),
# CIF (entity letter + 7 digits + control digit or letter).

_TAX_ID_PATTERN = re.compile(
    r"\b([0-9]{8}[A-Z]|[XYZ][0-9]{7}[A-Z]|[ABCDEFGHJNPQRSUVW][0-9]{7}[0-9A-J])\b"
)
_SEMANTICS_PREFIX = re.compile(r"^(?:IDC|PAS|VAT|NTR)[A-Z]{2}-")
_CN_TAX_SUFFIX = re.compile(r"\s*-\s*(?:(?:NIF|NIE|CIF)\s*:?\s*)?[0-9XYZA-W][0-9]{7}[0-9A-Z]\s*$")

_ATTRIBUTE_ALIASES = {
    "OID.2.5.4.5": "SERIALNUMBER",
    "2.5.4.5": "SERIALNUMBER",
    "OID.2.5.4.97": "ORGANIZATIONIDENTIFIER",
    "2.5.4.97": "ORGANIZATIONIDENTIFIER",
    "OID.0.9.2342.19200300.100.1.1": "UID",
    "0.9.2342.19200300.100.1.1": "UID",
    "GIVENNAME": "G",
    "GN": "G",
    "SURNAME": "SN",
    "S": "ST",
}

_OID_KEYS = {
    NameOID.COMMON_NAME: "CN",
    NameOID.SERIAL_NUMBER: "SERIALNUMBER",
    NameOID.ORGANIZATION_IDENTIFIER: "ORGANIZATIONIDENTIFIER",
    NameOID.USER_ID: "UID",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.GIVEN_NAME: "G",
    NameOID.SURNAME: "SN",
    NameOID.COUNTRY_NAME: "C",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.LOCALITY_NAME: "L",
    NameOID.EMAIL_ADDRESS: "E",
}


# ─────────────────────── Distinguished names ───────────────────────


def parse_distinguished_name(dn: str) -> dict[str, str]:
    """
    Parse a DN string into {ATTRIBUTE: value}.

    Handles quoted values containing commas, backslash escapes and
    multi-valued RDNs joined with '+'. Attribute names are upper-cased and
    dotted OIDs are mapped to their usual names. When an attribute repeats,
    the first occurrence wins.
    """
    attributes: dict[str, str] = {}
    for component in _split_components(dn):
        key, sep, value = component.partition("=")
        if not sep:
            continue
        name = key.strip().upper()
        name = _ATTRIBUTE_ALIASES.get(name, name)
        attributes.setdefault(name, _unquote(value.strip()))
    return attributes


def _split_components(dn: str) -> list[str]:
    components: list[str] = []
    current: list[str] = []
    in_quotes = False
    escaped = False
    for char in dn:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            current.append(char)
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
            current.append(char)
        elif char in ",+;" and not in_quotes:
            components.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    if current:
        components.append("".join(current).strip())
    return [c for c in components if c]


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        value = value[1:-1].replace('""', '"')
    return re.sub(r"\\(.)", r"\1", value)


def name_attributes(name: x509.Name) -> dict[str, str]:
    """The same {ATTRIBUTE: value} view as parse_distinguished_name, from an x509.Name."""
    attributes: dict[str, str] = {}
    for attribute in name:
        key = _OID_KEYS.get(attribute.oid, attribute.oid.dotted_string)
        value = attribute.value
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        attributes.setdefault(key, value)
    return attributes


# ─────────────────────── Holder extraction ───────────────────────


def normalize_tax_id(raw: str) -> str | None:
    """
    Strip semantics prefixes from a tax identifier.

        >>> normalize_tax_id("IDCES-12345678Z")
        '12345678Z'
        >>> normalize_tax_id("VATES-B12345678")
        'B12345678'
    """
    value = raw.strip().upper()
    value = _SEMANTICS_PREFIX.sub("", value)
    if "-" in value:
        value = value.rsplit("-", 1)[-1]
    if value.startswith("ES") and _TAX_ID_PATTERN.fullmatch(value[2:]):
        value = value[2:]
    return value or None


def find_tax_id(text: str) -> str | None:
    match = _TAX_ID_PATTERN.search(text.upper())
    return match.group(1) if match else None


def extract_holder(subject: Mapping[str, str]) -> CertificateHolder:
    """Holder name, tax id and organization from parsed subject attributes."""
    raw_tax_id = (
        subject.get("SERIALNUMBER")
        or subject.get("ORGANIZATIONIDENTIFIER")
        or subject.get("UID")
    )
    tax_id = normalize_tax_id(raw_tax_id) if raw_tax_id else None

    common_name = subject.get("CN")
    if not tax_id and common_name:
        tax_id = find_tax_id(common_name)

    return CertificateHolder(
        name=_holder_name(subject),
        tax_id=tax_id,
        organization=subject.get("O"),
    )


def _holder_name(subject: Mapping[str, str]) -> str | None:
    common_name = subject.get("CN")
    if common_name:
        return _CN_TAX_SUFFIX.sub("", common_name).strip() or common_name
    parts = [subject.get("G"), subject.get("SN")]
    joined = " ".join(p for p in parts if p)
    return joined or None


# ─────────────────────── Certificates ───────────────────────


def sha1_thumbprint(certificate: x509.Certificate) -> str:
    """The Windows-style thumbprint: upper-case hex SHA-1 of the DER encoding."""
    return certificate.fingerprint(hashes.SHA1()).hex().upper()  # noqa: S303


def describe_certificate(
    certificate: x509.Certificate,
    store_location: StoreLocation = StoreLocation.CURRENT_USER,
    has_private_key: bool = False,
    friendly_name: str | None = None,
) -> CertificateRecord:
    """
    Build a CertificateRecord from a parsed certificate.

    Never touches key material: `has_private_key` is whatever the caller
    (the store listing) reports.
    """
    subject = name_attributes(certificate.subject)
    issuer = name_attributes(certificate.issuer)
    holder = extract_holder(subject)

    if holder.tax_id is None:
        log.warning(
            "certificate.missing_tax_id",
            subject=certificate.subject.rfc4514_string(),
        )

    return CertificateRecord(
        thumbprint=sha1_thumbprint(certificate),
        serial_number=format(certificate.serial_number, "X"),
        subject=certificate.subject.rfc4514_string(),
        issuer=certificate.issuer.rfc4514_string(),
        holder=holder,
        issuer_name=issuer.get("CN"),
        issuer_organization=issuer.get("O"),
        not_before=certificate.not_valid_before_utc,
        not_after=certificate.not_valid_after_utc,
        store_location=store_location,
        has_private_key=has_private_key,
        friendly_name=friendly_name,
        sha256_fingerprint=certificate.fingerprint(hashes.SHA256()).hex().upper(),
    )
