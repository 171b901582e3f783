"""
TicketBAI adapter — Basque regional invoice reporting.

Identifier:  TBAI-{tax id}-{ddmmyy}-{first 13 chars of the entry hash}-{CRC-8}
             The CRC-8 (polynomial 0x07) covers everything before it,
             trailing dash included, rendered as three decimal digits.
Payload:     identifier|tax id|series|document number
QR payload:  TBAI:{identifier}:{tax id}:{verification code}:{total}:{dd-mm-yyyy}
Response:    Estado "00" means accepted; IdentificadorTBAI is the reference.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET

from fiscal_ledger.domain.models import (
    GENESIS,
    CertificateSignature,
    DocumentType,
    FiscalLogEntry,
    Regime,
    RegimeEnvelope,
    SubmissionReceipt,
    TaxpayerProfile,
)
from fiscal_ledger.hashing import format_amount
from fiscal_ledger.regimes.base import (
    RegimeAdapter,
    append_signature,
    format_date,
    iter_local,
    local_text,
    sub,
    to_xml,
)

TBAI_NS = "urn:ticketbai:emision"
ET.register_namespace("T", TBAI_NS)

VERSION = "1.2"
ACCEPTED = "00"

_RECTIFYING = {
    DocumentType.CREDIT_NOTE: "R1",
    DocumentType.REFUND: "R5",
}


def crc8(data: bytes) -> int:
    """CRC-8 with polynomial 0x07, initial value 0, no reflection."""
    crc = 0
    for byte in data:
        crc ^= byte
        for _ in range(8):
            crc = ((crc << 1) ^ 0x07) & 0xFF if crc & 0x80 else (crc << 1) & 0xFF
    return crc


class TicketBaiAdapter(RegimeAdapter):
    regime = Regime.TICKETBAI
    code_prefix = "TBAI"

    def build_identifier(self, entry: FiscalLogEntry, profile: TaxpayerProfile) -> str:
        stem = (
            f"TBAI-{profile.tax_id}-{entry.timestamp.strftime('%d%m%y')}-"
            f"{entry.hash[:13].upper()}-"
        )
        return f"{stem}{crc8(stem.encode('ascii')):03d}"

    def signing_payload(
        self, entry: FiscalLogEntry, profile: TaxpayerProfile, identifier: str
    ) -> str:
        return "|".join([identifier, profile.tax_id, entry.series, entry.document_number])

    def qr_payload(
        self, entry: FiscalLogEntry, profile: TaxpayerProfile, identifier: str, code: str
    ) -> str:
        return (
            f"TBAI:{identifier}:{profile.tax_id}:{code}:"
            f"{format_amount(entry.total)}:{format_date(entry.timestamp)}"
        )

    def serialize(
        self,
        entry: FiscalLogEntry,
        profile: TaxpayerProfile,
        identifier: str,
        payload: str,
        signature: CertificateSignature,
    ) -> str:
        root = ET.Element(f"{{{TBAI_NS}}}TicketBai")
        sub(sub(root, "Cabecera"), "IDVersionTBAI", VERSION)

        emisor = sub(sub(root, "Sujetos"), "Emisor")
        sub(emisor, "NIF", profile.tax_id)
        sub(emisor, "ApellidosNombreRazonSocial", profile.legal_name)

        factura = sub(root, "Factura")
        cabecera = sub(factura, "CabeceraFactura")
        sub(cabecera, "SerieFactura", entry.series)
        sub(cabecera, "NumFactura", entry.document_number)
        sub(cabecera, "FechaExpedicionFactura", format_date(entry.timestamp))
        sub(cabecera, "HoraExpedicionFactura", entry.timestamp.strftime("%H:%M:%S"))
        if entry.document_type == DocumentType.TICKET:
            sub(cabecera, "FacturaSimplificada", "S")
        if entry.document_type in _RECTIFYING:
            rectificativa = sub(cabecera, "FacturaRectificativa")
            sub(rectificativa, "Codigo", _RECTIFYING[entry.document_type])
            sub(rectificativa, "Tipo", "I")

        datos = sub(factura, "DatosFactura")
        sub(datos, "DescripcionFactura", entry.document_type.value)
        sub(datos, "ImporteTotalFactura", format_amount(entry.total))

        detalle = sub(
            sub(
                sub(sub(sub(sub(factura, "TipoDesglose"), "DesgloseFactura"), "Sujeta"), "NoExenta"),
                "DetalleNoExenta",
            ),
            "DesgloseIVA",
        )
        detalle_iva = sub(detalle, "DetalleIVA")
        sub(detalle_iva, "BaseImponible", format_amount(entry.taxable_amount))
        sub(detalle_iva, "CuotaImpuesto", format_amount(entry.tax_amount))

        huella = sub(root, "HuellaTBAI")
        sub(huella, "IdentificadorTBAI", identifier)
        sub(huella, "HuellaRegistro", entry.hash)
        sub(huella, "HuellaAnterior", "" if entry.previous_hash == GENESIS else entry.previous_hash)
        software = sub(huella, "Software")
        sub(software, "Nombre", self._endpoint.software_name)
        sub(software, "Version", self._endpoint.software_version)

        append_signature(root, payload, signature)
        return to_xml(root)

    def parse_response(self, envelope: RegimeEnvelope, body: str) -> SubmissionReceipt:
        root = ET.fromstring(body)
        status = local_text(root, "Estado") or "unknown"
        errors = [
            f"{local_text(result, 'Codigo')}: {local_text(result, 'Descripcion')}"
            for result in iter_local(root, "ResultadoValidacion")
            if local_text(result, "Codigo")
        ]
        return SubmissionReceipt(
            regime=self.regime,
            envelope_identifier=envelope.identifier,
            accepted=status == ACCEPTED,
            status=status,
            authority_reference=local_text(root, "IdentificadorTBAI"),
            errors=errors,
            raw_response=body,
            submitted_at=self._clock(),
        )
