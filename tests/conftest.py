"""
Fixtures compartilhadas

Certificado A1 de teste gerado na hora, stores em memoria e um transporte
falso com respostas roteirizadas por modo de envio.
"""
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509.oid import NameOID

from nfe_server.core.config import Settings
from nfe_server.core.security import encrypt_certificate_password
from nfe_server.models import Company
from nfe_server.repositories import MemoryStores
from nfe_server.schemas.nfe import LineItem, OrderData, Recipient
from nfe_server.services.certificate import CertificateBundle
from nfe_server.services.constants import SendMode
from nfe_server.services.factory import NFeServices
from nfe_server.services.responses import (
    AuthorizationResult,
    EventResult,
    InvalidationResult,
    ProtocolResult,
    ServiceStatus,
    StatusResult,
)

CNPJ = "12345678000195"
CERT_PASSWORD = "senha123"
PROTOCOL_NUMBER = "142240000000001"
RECEIPT_NUMBER = "421000000000001"


# =====================================================
# CERTIFICADO
# =====================================================

def make_certificate(key, cnpj=CNPJ, not_before=None, not_after=None, extensions=()):
    now = datetime.now(timezone.utc)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "BR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        x509.NameAttribute(NameOID.COMMON_NAME, f"EMPRESA TESTE LTDA:{cnpj}" if cnpj else "EMPRESA TESTE LTDA"),
    ])
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
    )
    for extension in extensions:
        builder = builder.add_extension(extension, critical=False)
    return builder.sign(key, hashes.SHA256())


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(rsa_key):
    return make_certificate(rsa_key)


@pytest.fixture(scope="session")
def bundle(rsa_key, certificate):
    return CertificateBundle(
        private_key_pem=rsa_key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()),
        certificate_pem=certificate.public_bytes(Encoding.PEM),
    )


@pytest.fixture
def pfx_path(tmp_path, rsa_key, certificate):
    data = pkcs12.serialize_key_and_certificates(
        b"teste", rsa_key, certificate, None, BestAvailableEncryption(CERT_PASSWORD.encode())
    )
    path = tmp_path / "certificado.pfx"
    path.write_bytes(data)
    return path


# =====================================================
# DADOS
# =====================================================

@pytest.fixture
def company(pfx_path):
    return Company(
        id="empresa-1",
        cnpj=CNPJ,
        legal_name="EMPRESA TESTE LTDA",
        trade_name="TESTE",
        state_registration="255123456",
        tax_regime=1,
        street="RUA DAS FLORES",
        number="100",
        district="CENTRO",
        municipality_code="4205407",
        municipality="FLORIANOPOLIS",
        uf="SC",
        zip_code="88010000",
        certificate_path=str(pfx_path),
        certificate_password_encrypted=encrypt_certificate_password(CERT_PASSWORD),
        environment="2",
    )


@pytest.fixture
def order():
    return OrderData(
        order_id="PED-1",
        series=1,
        number=1,
        recipient=Recipient(cpf="12345678909", name="CLIENTE TESTE"),
        items=[
            LineItem(code="P1", description="PRODUTO TESTE", quantity=Decimal("2"), unit_price=Decimal("10.50")),
        ],
    )


@pytest.fixture
def config(tmp_path):
    return Settings(
        NFE_HEALTH_CHECK_BEFORE_SEND=False,
        NFE_RECEIPT_POLL_ATTEMPTS=3,
        NFE_RECEIPT_POLL_INITIAL_DELAY=1.0,
        NFE_FALLBACK_ENABLED=True,
        NFE_FALLBACK_MODE=None,
        NFE_QUEUE_MAX_ATTEMPTS=50,
        NFE_XSD_DIR=str(tmp_path / "xsd"),
    )


# =====================================================
# TRANSPORTE FALSO
# =====================================================

def key_of(xml: str) -> str:
    match = re.search(r'Id="NFe(\d{44})"', xml)
    return match.group(1) if match else "0" * 44


def protocol_xml(access_key: str, status_code: int, message: str, protocol_number=PROTOCOL_NUMBER) -> str:
    return (
        '<protNFe xmlns="http://www.portalfiscal.inf.br/nfe" versao="4.00"><infProt>'
        '<tpAmb>2</tpAmb><verAplic>SVRS202401</verAplic>'
        f'<chNFe>{access_key}</chNFe><dhRecbto>2024-03-05T10:00:00-03:00</dhRecbto>'
        f'<nProt>{protocol_number}</nProt><digVal>c2VtLWRpZ2VzdA==</digVal>'
        f'<cStat>{status_code}</cStat><xMotivo>{message}</xMotivo>'
        '</infProt></protNFe>'
    )


def protocol(access_key: str, status_code: int, message: str) -> ProtocolResult:
    return ProtocolResult(
        status_code=status_code,
        status_message=message,
        access_key=access_key,
        protocol_number=PROTOCOL_NUMBER,
        received_at="2024-03-05T10:00:00-03:00",
        xml=protocol_xml(access_key, status_code, message),
    )


def authorization(outcome, signed_xml: str) -> AuthorizationResult:
    if isinstance(outcome, Exception):
        raise outcome
    if isinstance(outcome, AuthorizationResult):
        return outcome

    key = key_of(signed_xml)
    if outcome == "authorized":
        return AuthorizationResult(104, "Lote processado", protocol=protocol(key, 100, "Autorizado o uso da NF-e"))
    if outcome == "rejected":
        return AuthorizationResult(104, "Lote processado", protocol=protocol(key, 539, "Rejeicao: Duplicidade de NF-e"))
    if outcome == "denied":
        return AuthorizationResult(104, "Lote processado", protocol=protocol(key, 302, "Uso Denegado: Irregularidade fiscal do destinatario"))
    if outcome == "received":
        return AuthorizationResult(103, "Lote recebido com sucesso", receipt_number=RECEIPT_NUMBER)
    if outcome == "processing":
        return AuthorizationResult(105, "Lote em processamento", receipt_number=RECEIPT_NUMBER)
    if outcome == "batch_rejected":
        return AuthorizationResult(225, "Rejeicao: Falha no Schema XML do lote de NFe")
    raise AssertionError(f"resultado desconhecido: {outcome}")


class FakeTransport:
    def __init__(self, script, send_mode: SendMode):
        self.script = script
        self.send_mode = send_mode
        self.last_signed = ""

    def _record(self, operation, *args):
        self.script.calls.append((operation, self.send_mode.value) + args)

    def _next(self, outcomes):
        if len(outcomes) > 1:
            return outcomes.pop(0)
        return outcomes[0]

    def authorize(self, signed_xml, batch_id=None):
        self._record("authorize", signed_xml)
        self.last_signed = signed_xml
        outcomes = self.script.authorize.setdefault(self.send_mode, ["authorized"])
        return authorization(self._next(outcomes), signed_xml)

    def poll_receipt(self, receipt_number):
        self._record("poll_receipt", receipt_number)
        return authorization(self._next(self.script.poll), self.last_signed)

    def health_check(self):
        self._record("health_check")
        status = self.script.health.get(self.send_mode, ServiceStatus(107, "Servico em Operacao"))
        if isinstance(status, Exception):
            raise status
        return status

    def query_status(self, access_key):
        self._record("query_status", access_key)
        status = self.script.status
        if isinstance(status, Exception):
            raise status
        if status == "authorized":
            return StatusResult(100, "Autorizado o uso da NF-e", access_key,
                                protocol=protocol(access_key, 100, "Autorizado o uso da NF-e"))
        if status == "cancelled":
            return StatusResult(101, "Cancelamento de NF-e homologado", access_key,
                                cancel_protocol_number="142240000000555")
        return StatusResult(217, "Rejeicao: NF-e nao consta na base de dados da SEFAZ", access_key)

    def _event(self):
        result = self.script.event
        if isinstance(result, Exception):
            raise result
        return result

    def cancel(self, access_key, justification, protocol_number):
        self._record("cancel", access_key, justification, protocol_number)
        return self._event()

    def correct(self, access_key, correction, sequence=1):
        self._record("correct", access_key, correction, sequence)
        return self._event()

    def recipient_manifestation(self, access_key, event_type, justification=None):
        self._record("recipient_manifestation", access_key, event_type, justification)
        return self._event()

    def invalidate_range(self, series, number_from, number_to, justification, model=None, year=None):
        self._record("invalidate_range", series, number_from, number_to, justification)
        return self.script.invalidation

    def close(self):
        self.script.closed += 1


class TransportScript:
    """Respostas roteirizadas; o ultimo resultado de cada lista se repete"""

    def __init__(self):
        self.authorize = {}
        self.poll = ["authorized"]
        self.health = {}
        self.status = None
        self.event = EventResult(
            128, "Lote de Evento Processado", 135, "Evento registrado e vinculado a NF-e",
            "142240000000099", "2024-03-05T11:00:00-03:00",
        )
        self.invalidation = InvalidationResult(102, "Inutilizacao de numero homologado", "142240000000777")
        self.calls = []
        self.closed = 0

    def set_authorize(self, send_mode, *outcomes):
        self.authorize[SendMode(send_mode)] = list(outcomes)

    def factory(self, company, credentials, environment, send_mode):
        return FakeTransport(self, SendMode(send_mode))

    def operations(self, name):
        return [call for call in self.calls if call[0] == name]


class Notifier:
    def __init__(self):
        self.calls = []

    def __call__(self, error_type, error_message, **context):
        self.calls.append((error_type, error_message, context))

    @property
    def types(self):
        return [call[0] for call in self.calls]


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def script():
    return TransportScript()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
async def stores(company):
    stores = MemoryStores()
    await stores.companies.add(company)
    return stores


@pytest.fixture
def services(stores, script, bundle, config, sleeper, notifier):
    return NFeServices(
        stores,
        transport_factory=script.factory,
        credentials_loader=lambda company: bundle,
        config=config,
        sleep=sleeper,
        notifier=notifier,
    )
