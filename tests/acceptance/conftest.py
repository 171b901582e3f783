"""
Acceptance test fixtures — a fully wired fiscal core.

Everything is real except the outside world: the OS certificate store is
played by FakeStoreRunner (real PKCS#12 exports) and the fiscal
authorities are mocked with respx in each test.
"""

from __future__ import annotations

import pytest

from fiscal_ledger.adapters.http_client import FiscalAuthorityClient
from fiscal_ledger.certificates import CertificateRegistry
from fiscal_ledger.domain.models import TaxpayerProfile
from fiscal_ledger.regimes.base import RegimeAdapter, RegimeEndpoint
from fiscal_ledger.regimes.ticketbai import TicketBaiAdapter
from fiscal_ledger.regimes.verifactu import VerifactuAdapter
from fiscal_ledger.signing import CertificateSigner
from tests.conftest import FixedClock

TBAI_URL = "https://tbai.acceptance.eus/sarrerak/alta"
VF_URL = "https://vf.acceptance.es/ws/SuministroFactEmitidas"
VF_QR_URL = "https://vf.acceptance.es/ValidarQR"

_SOAP = (
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/">'
    "<soapenv:Body>{}</soapenv:Body></soapenv:Envelope>"
)
TBAI_ACCEPTED = (
    "<TicketBaiResponse><Salida>"
    "<IdentificadorTBAI>TBAI-REF-1</IdentificadorTBAI><Estado>00</Estado>"
    "</Salida></TicketBaiResponse>"
)
VF_ACCEPTED = _SOAP.format(
    "<RespuestaLRFEmitidas><CSV>A-ACCEPT01</CSV><EstadoEnvio>Correcto</EstadoEnvio>"
    "</RespuestaLRFEmitidas>"
)


@pytest.fixture()
def adapters(
    registry: CertificateRegistry,
    certificate_signer: CertificateSigner,
    profiles: dict[str, TaxpayerProfile],
    clock: FixedClock,
) -> list[RegimeAdapter]:
    """TicketBAI first, then VeriFactu, both over the same certificate."""
    transport = FiscalAuthorityClient(timeout=5)
    return [
        TicketBaiAdapter(
            registry,
            certificate_signer,
            transport,
            RegimeEndpoint(submit_url=TBAI_URL),
            profiles,
            clock,
        ),
        VerifactuAdapter(
            registry,
            certificate_signer,
            transport,
            RegimeEndpoint(submit_url=VF_URL, verification_base_url=VF_QR_URL),
            profiles,
            clock,
        ),
    ]
