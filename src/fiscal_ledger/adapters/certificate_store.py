"""
OS certificate store adapters — enumerate certificates, export-use-discard keys.

Adapter layer — implements the CertificateStore port.

  WindowsCertificateStore      Windows certificate store through PowerShell.
                               Lists Cert:\\CurrentUser\\<store> and
                               Cert:\\LocalMachine\\<store>, exports one
                               certificate plus private key at a time into a
                               PKCS#12 container protected by a fresh random
                               passphrase.
  UnavailableCertificateStore  Hosts without an OS store (Linux containers,
                               headless CI). Reports itself unavailable.

Export-use-discard, per call:
  1. generate a new passphrase (secrets.token_urlsafe), hand it to the
     export script through the child's environment, never on the command line
  2. export into a private temporary directory, read the bytes, delete the file
  3. decrypt with cryptography's pkcs12 loader, check the thumbprint matches
  4. run the caller's operation with the key, then drop every reference

Exit codes of the export script:
  0 exported, 2 certificate not found, 3 export refused, 4 no private key
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import re
import secrets
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar
from uuid import uuid4

import structlog
from cryptography.hazmat.primitives.serialization import pkcs12

from fiscal_ledger.adapters.x509_parser import (
    describe_certificate,
    extract_holder,
    parse_distinguished_name,
)
from fiscal_ledger.domain.models import CertificateRecord, StoreLocation
from fiscal_ledger.domain.ports import KeyOperation
from fiscal_ledger.errors import (
    InvalidCredential,
    KeyAccessDenied,
    SigningUnavailable,
)

log = structlog.get_logger()

T = TypeVar("T")

_THUMBPRINT = re.compile(r"^[0-9A-F]{40}$")

_ENV_STORE = "FISCAL_STORE_NAME"
_ENV_THUMBPRINT = "FISCAL_CERT_THUMBPRINT"
_ENV_PASSPHRASE = "FISCAL_EXPORT_PASSPHRASE"
_ENV_PATH = "FISCAL_EXPORT_PATH"

EXIT_NOT_FOUND = 2
EXIT_EXPORT_DENIED = 3
EXIT_NO_PRIVATE_KEY = 4

_LIST_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$items = @()
foreach ($location in @('CurrentUser', 'LocalMachine')) {
    $path = "Cert:\$location\$env:FISCAL_STORE_NAME"
    if (-not (Test-Path $path)) { continue }
    foreach ($cert in Get-ChildItem -Path $path) {
        $items += [pscustomobject]@{
            Thumbprint    = $cert.Thumbprint
            SerialNumber  = $cert.SerialNumber
            Subject       = $cert.Subject
            Issuer        = $cert.Issuer
            NotBefore     = $cert.NotBefore.ToUniversalTime().ToString('o')
            NotAfter      = $cert.NotAfter.ToUniversalTime().ToString('o')
            HasPrivateKey = $cert.HasPrivateKey
            FriendlyName  = $cert.FriendlyName
            StoreLocation = $location
            RawData       = [Convert]::ToBase64String($cert.RawData)
        }
    }
}
ConvertTo-Json -InputObject @($items) -Depth 3 -Compress
"""

_EXPORT_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$paths = @(
    "Cert:\CurrentUser\$env:FISCAL_STORE_NAME",
    "Cert:\LocalMachine\$env:FISCAL_STORE_NAME"
) | Where-Object { Test-Path $_ }
$cert = Get-ChildItem -Path $paths |
    Where-Object { $_.Thumbprint -eq $env:FISCAL_CERT_THUMBPRINT } |
    Select-Object -First 1
if (-not $cert) { exit 2 }
if (-not $cert.HasPrivateKey) { exit 4 }
$secure = ConvertTo-SecureString -String $env:FISCAL_EXPORT_PASSPHRASE -Force -AsPlainText
try {
    Export-PfxCertificate -Cert $cert -FilePath $env:FISCAL_EXPORT_PATH -Password $secure | Out-Null
} catch {
    exit 3
}
exit 0
"""


# ─────────────────────── Script execution ───────────────────────


@dataclass(frozen=True, slots=True)
class ScriptOutput:
    returncode: int
    stdout: str
    stderr: str


class ScriptRunner(Protocol):
    """Runs a PowerShell script. Injected so tests can stand in for the OS store."""

    def available(self) -> bool: ...

    def run(self, script: str, env: Mapping[str, str], timeout: float) -> ScriptOutput: ...


class PowerShellRunner:
    """Run scripts with a local PowerShell executable."""

    def __init__(self, executable: str = "powershell.exe") -> None:
        self._executable = executable

    def available(self) -> bool:
        return sys.platform == "win32" and shutil.which(self._executable) is not None

    def run(self, script: str, env: Mapping[str, str], timeout: float) -> ScriptOutput:
        completed = subprocess.run(  # noqa: S603
            [
                self._executable,
                "-NoProfile",
                "-NonInteractive",
                "-ExecutionPolicy",
                "Bypass",
                "-Command",
                script,
            ],
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **env},
            check=False,
        )
        return ScriptOutput(completed.returncode, completed.stdout, completed.stderr)


# ─────────────────────── Windows store ───────────────────────


class WindowsCertificateStore:
    """
    CertificateStore backed by the Windows certificate store.

    Implements the CertificateStore port. Private keys only ever live inside
    export_and_use; nothing about them is cached between calls.
    """

    def __init__(
        self,
        runner: ScriptRunner | None = None,
        store_name: str = "MY",
        export_timeout: float = 10.0,
    ) -> None:
        self._runner = runner or PowerShellRunner()
        self._store_name = store_name
        self._export_timeout = export_timeout

    def is_available(self) -> bool:
        return self._runner.available()

    def list(self, store_name: str | None = None) -> list[CertificateRecord]:
        """
        Certificates with a private key in the current-user and local-machine scopes.

        A certificate present in both scopes is returned once, with the
        current-user location.
        """
        if not self.is_available():
            log.info("certificate_store.unavailable", operation="list")
            return []

        name = store_name or self._store_name
        output = self._run(_LIST_SCRIPT, {_ENV_STORE: name})
        if output.returncode != 0:
            raise SigningUnavailable(
                f"Listing certificate store {name!r} failed "
                f"(exit {output.returncode}): {output.stderr.strip()[:200]}"
            )

        items = _parse_listing(output.stdout)
        records: dict[str, CertificateRecord] = {}
        for item in items:
            if not item.get("HasPrivateKey"):
                continue
            record = record_from_listing(item)
            records.setdefault(record.thumbprint, record)

        log.info(
            "certificate_store.listed",
            store_name=name,
            reported=len(items),
            with_private_key=len(records),
        )
        return list(records.values())

    def export_and_use(self, thumbprint: str, operation: KeyOperation[T]) -> T:
        """
        Export one certificate with its key, run `operation`, discard everything.

        Raises:
            SigningUnavailable: store absent, certificate missing, no private
                key, or the export did not finish within the timeout.
            KeyAccessDenied: the store refused the export (non-exportable key,
                permissions).
            InvalidCredential: the exported container is unreadable or holds
                a different certificate.
        """
        normalized = _normalize_thumbprint(thumbprint)
        if not self.is_available():
            raise SigningUnavailable("Certificate store is not available on this host")

        container, passphrase = self._export(normalized)
        key, certificate = _open_container(container, passphrase, normalized)
        del container, passphrase

        try:
            result = operation(key, certificate)
        finally:
            del key, certificate

        log.info("certificate_store.key_used", thumbprint=normalized[:8])
        return result

    def _export(self, thumbprint: str) -> tuple[bytes, str]:
        passphrase = secrets.token_urlsafe(32)
        with tempfile.TemporaryDirectory(prefix="fiscal-export-") as workdir:
            path = Path(workdir) / f"{uuid4().hex}.pfx"
            output = self._run(
                _EXPORT_SCRIPT,
                {
                    _ENV_STORE: self._store_name,
                    _ENV_THUMBPRINT: thumbprint,
                    _ENV_PASSPHRASE: passphrase,
                    _ENV_PATH: str(path),
                },
            )
            _raise_for_export_status(output, thumbprint)
            try:
                container = path.read_bytes()
            except OSError as e:
                raise SigningUnavailable(
                    f"Exported container for {thumbprint[:8]} could not be read"
                ) from e
            finally:
                path.unlink(missing_ok=True)

        log.debug("certificate_store.exported", thumbprint=thumbprint[:8])
        return container, passphrase

    def _run(self, script: str, env: Mapping[str, str]) -> ScriptOutput:
        try:
            return self._runner.run(script, env, self._export_timeout)
        except subprocess.TimeoutExpired as e:
            raise SigningUnavailable(
                f"Certificate store did not answer within {self._export_timeout}s"
            ) from e
        except OSError as e:
            raise SigningUnavailable(f"Certificate store could not be reached: {e}") from e


class UnavailableCertificateStore:
    """CertificateStore for hosts without an OS store. Never fails hard on listing."""

    def is_available(self) -> bool:
        return False

    def list(self, store_name: str | None = None) -> list[CertificateRecord]:
        return []

    def export_and_use(self, thumbprint: str, operation: KeyOperation[T]) -> T:
        raise SigningUnavailable("No certificate store is available on this host")


# ─────────────────────── Helpers ───────────────────────


def _normalize_thumbprint(thumbprint: str) -> str:
    normalized = thumbprint.replace(" ", "").replace(":", "").upper()
    if not _THUMBPRINT.match(normalized):
        raise InvalidCredential(f"Not a SHA-1 thumbprint: {thumbprint[:8]!r}...")
    return normalized


def _raise_for_export_status(output: ScriptOutput, thumbprint: str) -> None:
    short = thumbprint[:8]
    match output.returncode:
        case 0:
            return
        case 2:
            raise SigningUnavailable(f"Certificate {short} not found in the store")
        case 3:
            log.error("certificate_store.export_denied", thumbprint=short)
            raise KeyAccessDenied(f"The store refused to export the key of certificate {short}")
        case 4:
            raise SigningUnavailable(f"Certificate {short} has no private key available")
        case code:
            raise SigningUnavailable(
                f"Export of certificate {short} failed (exit {code}): {output.stderr.strip()[:200]}"
            )


def _open_container(container: bytes, passphrase: str, thumbprint: str) -> tuple[Any, Any]:
    try:
        key, certificate, _ = pkcs12.load_key_and_certificates(container, passphrase.encode())
    except ValueError as e:
        raise InvalidCredential(
            f"Exported container for {thumbprint[:8]} is malformed or undecryptable"
        ) from e
    if certificate is None:
        raise InvalidCredential(f"Exported container for {thumbprint[:8]} holds no certificate")
    if key is None:
        raise SigningUnavailable(f"Exported container for {thumbprint[:8]} holds no private key")
    exported = describe_certificate(certificate, has_private_key=True)
    if exported.thumbprint != thumbprint:
        raise InvalidCredential(
            f"Exported container holds certificate {exported.short_thumbprint} "
            f"of {exported.holder.name or 'an unnamed holder'}, expected {thumbprint[:8]}"
        )
    return key, certificate


def _parse_listing(stdout: str) -> list[dict[str, Any]]:
    text = stdout.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SigningUnavailable(f"Certificate store listing is not valid JSON: {e}") from e
    if isinstance(data, dict):
        return [data]
    return list(data)


def _parse_store_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def record_from_listing(item: Mapping[str, Any]) -> CertificateRecord:
    """CertificateRecord from one entry of the store listing."""
    subject = parse_distinguished_name(item.get("Subject") or "")
    issuer = parse_distinguished_name(item.get("Issuer") or "")
    raw = item.get("RawData")
    return CertificateRecord(
        thumbprint=str(item["Thumbprint"]).upper(),
        serial_number=str(item.get("SerialNumber") or "").upper(),
        subject=item.get("Subject") or "",
        issuer=item.get("Issuer") or "",
        holder=extract_holder(subject),
        issuer_name=issuer.get("CN"),
        issuer_organization=issuer.get("O"),
        not_before=_parse_store_time(item["NotBefore"]),
        not_after=_parse_store_time(item["NotAfter"]),
        store_location=StoreLocation(item.get("StoreLocation") or StoreLocation.CURRENT_USER),
        has_private_key=bool(item.get("HasPrivateKey")),
        friendly_name=item.get("FriendlyName") or None,
        sha256_fingerprint=(
            hashlib.sha256(base64.b64decode(raw)).hexdigest().upper() if raw else None
        ),
    )
