"""
VeriFactu adapter — AEAT invoice reporting over SOAP.

Identifier:  VERIFACTU-{tax id}-{series}-{document number}-{yyyymmdd}
Payload:     identifier|tax id|dd-mm-yyyy|total|document number
QR payload:  VERIFACTU:{entry id}:{tax id}:{verification code}:{total}:{dd-mm-yyyy}:{hash[:32]}
Envelope:    soapenv:Envelope / SuministroLRFacturasEmitidas (TipoComunicacion A0)
             with the ledger hash chain carried in DatosVerifactu
             (Huella, HuellaAnterior).
Response:    EstadoEnvio Correcto or AceptadoConErrores, or a CSV, means
             accepted; per-line errors come from RespuestaLinea.

Also: signed cancellation (BajaLRFacturasEmitidas, TipoComunicacion A1),
status query (ConsultaLRFacturasEmitidas), endpoint connectivity check and
the public verification URL printed in the QR code.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from urllib.parse import urlencode

import structlog
from railway import ErrorCode
from railway.result import Result

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
from fiscal_ledger.hashing import format_amount, format_timestamp
from fiscal_ledger.regimes.base import (
    RegimeAdapter,
    append_signature,
    format_date,
    iter_local,
    local_text,
    sub,
    to_xml,
)

log = structlog.get_logger()

SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
VF_NS = (
    "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/"
    "aplicaciones/es/aeat/tike/cont/ws/RegistroFacturacion.xsd"
)
ET.register_namespace("soapenv", SOAP_NS)
ET.register_namespace("vf", VF_NS)

VERSION = "1.1"
ACCEPTED_STATES = frozenset({"Correcto", "AceptadoConErrores"})

INVOICE_TYPES = {
    DocumentType.INVOICE: "F1",
    DocumentType.TICKET: "F2",
    DocumentType.CREDIT_NOTE: "R1",
    DocumentType.REFUND: "R5",
}


def _vf(name: str) -> str:
    return f"{{{VF_NS}}}{name}"


def num_serie(entry: FiscalLogEntry) -> str:
    """The invoice number as the authority knows it: series and number joined."""
    return f"{entry.series}-{entry.document_number}" if entry.series else entry.document_number


class VerifactuAdapter(RegimeAdapter):
    regime = Regime.VERIFACTU
    code_prefix = "VF"

    def build_identifier(self, entry: FiscalLogEntry, profile: TaxpayerProfile) -> str:
        return (
            f"VERIFACTU-{profile.tax_id}-{entry.series}-{entry.document_number}-"
            f"{entry.timestamp.strftime('%Y%m%d')}"
        )

    def signing_payload(
        self, entry: FiscalLogEntry, profile: TaxpayerProfile, identifier: str
    ) -> str:
        return "|".join(
            [
                identifier,
                profile.tax_id,
                format_date(entry.timestamp),
                format_amount(entry.total),
                entry.document_number,
            ]
        )

    def qr_payload(
        self, entry: FiscalLogEntry, profile: TaxpayerProfile, identifier: str, code: str
    ) -> str:
        return (
            f"VERIFACTU:{entry.id}:{profile.tax_id}:{code}:{format_amount(entry.total)}:"
            f"{format_date(entry.timestamp)}:{entry.hash[:32]}"
        )

    def verification_url(self, entry: FiscalLogEntry, profile: TaxpayerProfile) -> str | None:
        base_url = self._endpoint.verification_base_url
        if not base_url:
            return None
        params = urlencode(
            {
                "nif": profile.tax_id,
                "numserie": num_serie(entry),
                "fecha": format_date(entry.timestamp),
                "importe": format_amount(entry.total),
            }
        )
        return f"{base_url}?{params}"

    def submission_headers(self) -> dict[str, str]:
        return {"SOAPAction": '"SuministroLRFacturasEmitidas"'}

    # ──────────────────────── Wire format ────────────────────────

    def serialize(
        self,
        entry: FiscalLogEntry,
        profile: TaxpayerProfile,
        identifier: str,
        payload: str,
        signature: CertificateSignature,
    ) -> str:
        envelope, body = _soap_envelope()
        suministro = sub(body, _vf("SuministroLRFacturasEmitidas"))

        cabecera = sub(suministro, _vf("Cabecera"))
        sub(cabecera, _vf("IDVersionSii"), VERSION)
        _titular(cabecera, profile)
        sub(cabecera, _vf("TipoComunicacion"), "A0")

        registro = sub(suministro, _vf("RegistroLRFacturasEmitidas"))
        _periodo(registro, entry)

        id_factura = sub(registro, _vf("IDFactura"))
        sub(sub(id_factura, _vf("IDEmisorFactura")), _vf("NIF"), profile.tax_id)
        sub(id_factura, _vf("NumSerieFacturaEmisor"), num_serie(entry))
        sub(id_factura, _vf("FechaExpedicionFacturaEmisor"), format_date(entry.timestamp))

        expedida = sub(registro, _vf("FacturaExpedida"))
        sub(expedida, _vf("TipoFactura"), INVOICE_TYPES[entry.document_type])
        if entry.document_type in (DocumentType.CREDIT_NOTE, DocumentType.REFUND):
            sub(expedida, _vf("TipoRectificativa"), "I")
        sub(expedida, _vf("ClaveRegimenEspecialOTrascendencia"), "01")
        sub(expedida, _vf("DescripcionOperacion"), entry.document_type.value)
        sub(expedida, _vf("ImporteTotal"), format_amount(entry.total))

        no_exenta = sub(
            sub(sub(sub(expedida, _vf("TipoDesglose")), _vf("DesgloseFactura")), _vf("Sujeta")),
            _vf("NoExenta"),
        )
        sub(no_exenta, _vf("TipoNoExenta"), "S1")
        detalle = sub(sub(no_exenta, _vf("DesgloseIVA")), _vf("DetalleIVA"))
        sub(detalle, _vf("BaseImponible"), format_amount(entry.taxable_amount))
        sub(detalle, _vf("CuotaRepercutida"), format_amount(entry.tax_amount))

        datos = sub(expedida, _vf("DatosVerifactu"))
        sub(datos, _vf("IdentificadorRegistro"), identifier)
        sub(datos, _vf("Huella"), entry.hash)
        sub(datos, _vf("HuellaAnterior"), "" if entry.previous_hash == GENESIS else entry.previous_hash)
        sub(datos, _vf("FechaHoraHusoGenRegistro"), format_timestamp(entry.timestamp))
        sub(datos, _vf("NombreRazonSistemaInformatico"), self._endpoint.software_name)
        sub(datos, _vf("VersionSistemaInformatico"), self._endpoint.software_version)
        sub(datos, _vf("TipoSistemaInformatico"), "COMPLETO")

        append_signature(suministro, payload, signature)
        return to_xml(envelope)

    def parse_response(self, envelope: RegimeEnvelope, body: str) -> SubmissionReceipt:
        root = ET.fromstring(body)
        fault = local_text(root, "faultstring")
        if fault is not None:
            return self._receipt(envelope, body, accepted=False, status="Fault", errors=[fault])

        status = local_text(root, "EstadoEnvio") or local_text(root, "EstadoRegistro")
        csv = local_text(root, "CSV")
        accepted = status in ACCEPTED_STATES or (status is None and csv is not None)
        return self._receipt(
            envelope,
            body,
            accepted=accepted,
            status=status or ("Correcto" if csv else "unknown"),
            reference=csv,
            errors=_line_errors(root),
        )

    # ──────────────────────── Cancellation ────────────────────────

    def cancel(self, envelope: RegimeEnvelope, reason: str) -> Result[SubmissionReceipt]:
        """
        Ask the authority to cancel (dar de baja) a submitted invoice.

        The request is signed with a certificate selected the same way as for
        the original submission, and the reason travels in the signed payload.
        The ledger is not touched: a cancellation is an authority-side record,
        the chained entry stays as issued.
        """
        cancel_url = self._endpoint.cancel_url
        if not cancel_url:
            return Result.failure(
                ErrorCode.CONFIGURATION_ERROR, "No VeriFactu cancellation endpoint configured"
            )
        if envelope.regime != self.regime:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"{self.regime.value} adapter cannot cancel a {envelope.regime.value} envelope",
            )
        if not reason.strip():
            return Result.failure(ErrorCode.VALIDATION_ERROR, "A cancellation reason is required")
        return (
            Result.from_computation(
                lambda: self._build_cancellation(envelope, reason.strip()),
                ErrorCode.VALIDATION_ERROR,
                "Envelope cannot be turned into a cancellation",
            )
            .flat_map(
                lambda xml: self._transport.post_xml(
                    cancel_url, xml, {"SOAPAction": '"BajaLRFacturasEmitidas"'}
                )
            )
            .flat_map(
                lambda body: Result.from_computation(
                    lambda: self.parse_response(envelope, body),
                    ErrorCode.SUBMISSION_FAILURE,
                    "Unreadable VeriFactu cancellation response",
                )
            )
            .peek(self._log_receipt)
        )

    def _build_cancellation(self, envelope: RegimeEnvelope, reason: str) -> str:
        sent = ET.fromstring(envelope.xml)
        profile = self.profile(envelope.tenant_id)
        number = _required(sent, "NumSerieFacturaEmisor")
        issued_on = _required(sent, "FechaExpedicionFacturaEmisor")

        certificate = self.select_certificate(profile)
        payload = "|".join([envelope.identifier, profile.tax_id, number, issued_on, "A1", reason])
        signature = self._signer.sign(certificate.thumbprint, payload.encode("utf-8"))

        soap, body = _soap_envelope()
        baja = sub(body, _vf("BajaLRFacturasEmitidas"))
        cabecera = sub(baja, _vf("Cabecera"))
        sub(cabecera, _vf("IDVersionSii"), VERSION)
        _titular(cabecera, profile)
        sub(cabecera, _vf("TipoComunicacion"), "A1")

        registro = sub(baja, _vf("RegistroLRBajaExpedidas"))
        periodo = sub(registro, _vf("PeriodoLiquidacion"))
        sub(periodo, _vf("Ejercicio"), _required(sent, "Ejercicio"))
        sub(periodo, _vf("Periodo"), _required(sent, "Periodo"))
        id_factura = sub(registro, _vf("IDFactura"))
        sub(sub(id_factura, _vf("IDEmisorFactura")), _vf("NIF"), profile.tax_id)
        sub(id_factura, _vf("NumSerieFacturaEmisor"), number)
        sub(id_factura, _vf("FechaExpedicionFacturaEmisor"), issued_on)

        append_signature(baja, payload, signature)
        log.info(
            "cancellation.built",
            identifier=envelope.identifier,
            entry_id=str(envelope.entry_id),
            thumbprint=certificate.short_thumbprint,
        )
        return to_xml(soap)

    # ──────────────────────── Query & connectivity ────────────────────────

    def query(self, envelope: RegimeEnvelope) -> Result[SubmissionReceipt]:
        """Ask the authority for the registered status of a submitted envelope."""
        query_url = self._endpoint.query_url
        if not query_url:
            return Result.failure(
                ErrorCode.CONFIGURATION_ERROR, "No VeriFactu query endpoint configured"
            )
        return (
            Result.from_computation(
                lambda: self._build_query(envelope),
                ErrorCode.VALIDATION_ERROR,
                "Envelope cannot be turned into a status query",
            )
            .flat_map(
                lambda xml: self._transport.post_xml(
                    query_url, xml, {"SOAPAction": '"ConsultaLRFacturasEmitidas"'}
                )
            )
            .flat_map(
                lambda body: Result.from_computation(
                    lambda: self.parse_response(envelope, body),
                    ErrorCode.SUBMISSION_FAILURE,
                    "Unreadable VeriFactu query response",
                )
            )
        )

    def check_connectivity(self) -> Result[bool]:
        return self._transport.ping(self._endpoint.submit_url).map(lambda _status: True)

    def _build_query(self, envelope: RegimeEnvelope) -> str:
        sent = ET.fromstring(envelope.xml)
        profile = self.profile(envelope.tenant_id)

        soap, body = _soap_envelope()
        consulta = sub(body, _vf("ConsultaLRFacturasEmitidas"))
        cabecera = sub(consulta, _vf("Cabecera"))
        sub(cabecera, _vf("IDVersionSii"), VERSION)
        _titular(cabecera, profile)

        filtro = sub(consulta, _vf("FiltroConsulta"))
        periodo = sub(filtro, _vf("PeriodoLiquidacion"))
        sub(periodo, _vf("Ejercicio"), _required(sent, "Ejercicio"))
        sub(periodo, _vf("Periodo"), _required(sent, "Periodo"))
        id_factura = sub(filtro, _vf("IDFactura"))
        sub(id_factura, _vf("NumSerieFacturaEmisor"), _required(sent, "NumSerieFacturaEmisor"))
        sub(
            id_factura,
            _vf("FechaExpedicionFacturaEmisor"),
            _required(sent, "FechaExpedicionFacturaEmisor"),
        )
        return to_xml(soap)

    def _receipt(
        self,
        envelope: RegimeEnvelope,
        body: str,
        accepted: bool,
        status: str,
        reference: str | None = None,
        errors: list[str] | None = None,
    ) -> SubmissionReceipt:
        return SubmissionReceipt(
            regime=self.regime,
            envelope_identifier=envelope.identifier,
            accepted=accepted,
            status=status,
            authority_reference=reference,
            errors=errors or [],
            raw_response=body,
            submitted_at=self._clock(),
        )


def _soap_envelope() -> tuple[ET.Element, ET.Element]:
    envelope = ET.Element(f"{{{SOAP_NS}}}Envelope")
    ET.SubElement(envelope, f"{{{SOAP_NS}}}Header")
    body = ET.SubElement(envelope, f"{{{SOAP_NS}}}Body")
    return envelope, body


def _titular(cabecera: ET.Element, profile: TaxpayerProfile) -> None:
    titular = sub(cabecera, _vf("Titular"))
    sub(titular, _vf("NombreRazon"), profile.legal_name)
    sub(titular, _vf("NIF"), profile.tax_id)


def _periodo(parent: ET.Element, entry: FiscalLogEntry) -> None:
    periodo = sub(parent, _vf("PeriodoLiquidacion"))
    sub(periodo, _vf("Ejercicio"), entry.timestamp.strftime("%Y"))
    sub(periodo, _vf("Periodo"), entry.timestamp.strftime("%m"))


def _required(root: ET.Element, name: str) -> str:
    value = local_text(root, name)
    if value is None:
        raise ValueError(f"Envelope has no {name}")
    return value


def _line_errors(root: ET.Element) -> list[str]:
    return [
        f"{local_text(line, 'CodigoErrorRegistro')}: {local_text(line, 'DescripcionErrorRegistro')}"
        for line in iter_local(root, "RespuestaLinea")
        if local_text(line, "CodigoErrorRegistro")
    ]
