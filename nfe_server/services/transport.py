"""
Cliente SOAP da SEFAZ com TLS mutuo

Um cliente por (empresa, ambiente, modo de envio). O certificado A1 da
empresa autentica a conexao e assina os eventos.

Politica de erros:
- Falha de rede, timeout, HTTP 5xx, SOAP Fault do servidor, resposta
  ilegivel e servico paralisado (108/109): TransportError(retryable=True)
- Falha de TLS e HTTP 4xx: TransportError(retryable=False)
- cStat de negocio (rejeicao, denegacao): resultado tipado, sem excecao
"""
import logging
import os
import tempfile
from typing import Dict, Optional

import requests
from lxml import etree

from nfe_server.core.config import Settings, settings as default_settings
from nfe_server.core.exceptions import TransportError
from nfe_server.services.certificate import CertificateBundle
from nfe_server.services.constants import (
    NFE_NAMESPACE,
    NSMAP,
    NFE_VERSION,
    CODIGO_UF,
    SOAP11_NAMESPACE,
    SOAP12_NAMESPACE,
    WSDL_NAMESPACE,
    SOAP_OPERATIONS,
    SEFAZ_URLS,
    CSTAT_SERVICO_PARALISADO,
    Environment,
    SendMode,
    Service,
)
from nfe_server.services import events
from nfe_server.services.responses import (
    AuthorizationResult,
    EventResult,
    InvalidationResult,
    ServiceStatus,
    StatusResult,
    parse_authorization,
    parse_event,
    parse_invalidation,
    parse_receipt,
    parse_service_status,
    parse_status,
)
from nfe_server.services.signature import SignatureService
from nfe_server.utils.formatting import brazil_now, only_digits

logger = logging.getLogger(__name__)

# Autorizador de cada UF no modo NORMAL. UFs com SEFAZ propria usam
# a tabela SVRS ate que NFE_SERVICE_URLS aponte o endereco correto.
NORMAL_AUTHORIZER = 'SVRS'
NATIONAL_AUTHORIZER = 'AN'


def _tag(name: str) -> str:
    return '{%s}%s' % (NFE_NAMESPACE, name)


def _sub(parent, name: str, text=None):
    element = etree.SubElement(parent, _tag(name))
    if text is not None:
        element.text = str(text)
    return element


class TransportClient:
    """
    Operacoes dos web services NF-e 4.00.

    Uso:
        with TransportClient(bundle, "SC", "12345678000199") as client:
            result = client.authorize(signed_xml)
    """

    def __init__(
        self,
        credentials: CertificateBundle,
        uf: str,
        tax_id: str,
        environment: Environment = Environment.HOMOLOGATION,
        send_mode: SendMode = SendMode.NORMAL,
        config: Optional[Settings] = None,
        signer: Optional[SignatureService] = None,
        session: Optional[requests.Session] = None,
        endpoints: Optional[Dict[str, str]] = None,
    ):
        self.credentials = credentials
        self.uf = uf.upper()
        self.tax_id = only_digits(tax_id)
        self.environment = Environment(environment)
        self.send_mode = SendMode(send_mode)
        self.config = config or default_settings
        self.signer = signer or SignatureService()
        self.endpoints = dict(endpoints or {})
        self._cert_file = None
        self._key_file = None

        self.session = session or requests.Session()
        self._setup_certificate()

    # -------------------------------------------------
    # Certificado / sessao
    # -------------------------------------------------

    def _setup_certificate(self):
        """requests so aceita certificado cliente por arquivo"""
        self._cert_file = tempfile.NamedTemporaryFile(mode='wb', suffix='.pem', delete=False)
        self._key_file = tempfile.NamedTemporaryFile(mode='wb', suffix='.pem', delete=False)
        try:
            self._cert_file.write(self.credentials.certificate_pem)
            self._cert_file.close()
            self._key_file.write(self.credentials.private_key_pem)
            self._key_file.close()
            os.chmod(self._key_file.name, 0o600)
        except OSError:
            self.close()
            raise

        self.session.cert = (self._cert_file.name, self._key_file.name)
        self.session.verify = self.config.NFE_CA_BUNDLE or self.config.NFE_VERIFY_SSL

    def close(self):
        """Remove os PEM temporarios e encerra a sessao"""
        for handle in (self._cert_file, self._key_file):
            if handle is None:
                continue
            try:
                os.unlink(handle.name)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[NFE-TRANSPORT] Falha ao remover arquivo temporario: {e}")
        self._cert_file = None
        self._key_file = None
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # -------------------------------------------------
    # Endpoints e envelope
    # -------------------------------------------------

    def resolve_url(self, service: Service, national: bool = False) -> str:
        name = Service(service).value

        if national:
            url = self.endpoints.get(NATIONAL_AUTHORIZER) or \
                SEFAZ_URLS[NATIONAL_AUTHORIZER][self.environment].get(name)
        elif self.send_mode.is_contingency:
            overrides = self.config.svc_overrides.get(self.send_mode.value, {})
            url = self.endpoints.get(name) or overrides.get(name) or \
                SEFAZ_URLS[self.send_mode.value][self.environment].get(name)
        else:
            url = self.endpoints.get(name) or self.config.NFE_SERVICE_URLS.get(name) or \
                SEFAZ_URLS[NORMAL_AUTHORIZER][self.environment].get(name)

        if not url:
            raise TransportError(
                f"Servico {name} indisponivel no modo {self.send_mode.value}",
                retryable=False,
            )
        return url

    @property
    def soap12(self) -> bool:
        return str(self.config.NFE_SOAP_VERSION) == '1.2'

    def build_envelope(self, service: Service, payload: str) -> bytes:
        wsdl, _operation = SOAP_OPERATIONS[service]
        soap_ns = SOAP12_NAMESPACE if self.soap12 else SOAP11_NAMESPACE

        envelope = etree.Element('{%s}Envelope' % soap_ns, nsmap={'soap': soap_ns})
        body = etree.SubElement(envelope, '{%s}Body' % soap_ns)
        message = etree.SubElement(
            body,
            '{%s%s}nfeDadosMsg' % (WSDL_NAMESPACE, wsdl),
            nsmap={None: WSDL_NAMESPACE + wsdl},
        )
        message.append(etree.fromstring(payload.encode('utf-8')))

        return etree.tostring(envelope, xml_declaration=True, encoding='utf-8')

    def _headers(self, service: Service) -> dict:
        wsdl, operation = SOAP_OPERATIONS[service]
        action = f"{WSDL_NAMESPACE}{wsdl}/{operation}"
        if self.soap12:
            return {'Content-Type': f'application/soap+xml; charset=utf-8; action="{action}"'}
        return {'Content-Type': 'text/xml; charset=utf-8', 'SOAPAction': f'"{action}"'}

    def _post(
        self, service: Service, payload: str, timeout: Optional[float] = None, national: bool = False
    ) -> bytes:
        url = self.resolve_url(service, national)
        timeout = timeout or self.config.NFE_SOAP_TIMEOUT

        logger.info(f"[NFE-TRANSPORT] {service.value} ({self.send_mode.value}) -> {url}")
        try:
            response = self.session.post(
                url,
                data=self.build_envelope(service, payload),
                headers=self._headers(service),
                timeout=timeout,
            )
        except requests.exceptions.SSLError as e:
            logger.error(f"[NFE-TRANSPORT] Falha TLS em {service.value}: {e}")
            raise TransportError(f"Falha na negociacao TLS: {e}", retryable=False) from e
        except requests.exceptions.Timeout as e:
            logger.warning(f"[NFE-TRANSPORT] Timeout em {service.value} apos {timeout}s")
            raise TransportError(f"Timeout na comunicacao com a SEFAZ ({timeout}s)") from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"[NFE-TRANSPORT] Falha de conexao em {service.value}: {e}")
            raise TransportError(f"Falha de conexao com a SEFAZ: {e}") from e

        if response.status_code >= 400:
            retryable = response.status_code >= 500
            logger.warning(f"[NFE-TRANSPORT] HTTP {response.status_code} em {service.value}")
            raise TransportError(
                f"Erro HTTP {response.status_code}: {response.text[:200]}",
                retryable=retryable,
                status_code=response.status_code,
            )

        return response.content

    @staticmethod
    def _check_available(status_code: Optional[int], message: Optional[str]):
        if status_code in CSTAT_SERVICO_PARALISADO:
            raise TransportError(f"Servico paralisado ({status_code}): {message}", retryable=True)

    def _sign_event(self, event_xml: str, node_tag: str) -> str:
        return self.signer.sign(
            event_xml,
            self.credentials.private_key_pem,
            self.credentials.certificate_pem,
            node_tag=node_tag,
        )

    # -------------------------------------------------
    # Autorizacao
    # -------------------------------------------------

    def authorize(self, signed_xml: str, batch_id: Optional[str] = None) -> AuthorizationResult:
        """Envia lote com uma NF-e assinada (enviNFe)"""
        envi = etree.Element(_tag('enviNFe'), nsmap=NSMAP)
        envi.set('versao', NFE_VERSION)
        _sub(envi, 'idLote', batch_id or brazil_now().strftime('%Y%m%d%H%M%S'))
        _sub(envi, 'indSinc', '1' if self.config.NFE_SYNC_AUTHORIZATION else '0')
        envi.append(etree.fromstring(signed_xml.encode('utf-8')))

        content = self._post(
            Service.AUTORIZACAO,
            etree.tostring(envi, encoding='unicode'),
            timeout=self.config.NFE_AUTHORIZATION_TIMEOUT,
        )
        result = parse_authorization(content)
        self._check_available(result.status_code, result.status_message)
        logger.info(f"[NFE-TRANSPORT] Lote: cStat={result.status_code} {result.status_message}")
        return result

    def poll_receipt(self, receipt_number: str) -> AuthorizationResult:
        """Consulta o processamento de um lote assincrono (consReciNFe)"""
        cons = etree.Element(_tag('consReciNFe'), nsmap=NSMAP)
        cons.set('versao', NFE_VERSION)
        _sub(cons, 'tpAmb', self.environment.value)
        _sub(cons, 'nRec', receipt_number)

        result = parse_receipt(self._post(Service.RET_AUTORIZACAO, etree.tostring(cons, encoding='unicode')))
        self._check_available(result.status_code, result.status_message)
        return result

    def query_status(self, access_key: str) -> StatusResult:
        """Situacao atual da NF-e pela chave (consSitNFe)"""
        cons = etree.Element(_tag('consSitNFe'), nsmap=NSMAP)
        cons.set('versao', NFE_VERSION)
        _sub(cons, 'tpAmb', self.environment.value)
        _sub(cons, 'xServ', 'CONSULTAR')
        _sub(cons, 'chNFe', access_key)

        result = parse_status(self._post(Service.CONSULTA_PROTOCOLO, etree.tostring(cons, encoding='unicode')))
        self._check_available(result.status_code, result.status_message)
        return result

    def health_check(self) -> ServiceStatus:
        """Status do servico de autorizacao (consStatServ). Nao lanca para 108/109."""
        cons = etree.Element(_tag('consStatServ'), nsmap=NSMAP)
        cons.set('versao', NFE_VERSION)
        _sub(cons, 'tpAmb', self.environment.value)
        _sub(cons, 'cUF', CODIGO_UF.get(self.uf, self.uf))
        _sub(cons, 'xServ', 'STATUS')

        status = parse_service_status(self._post(Service.STATUS_SERVICO, etree.tostring(cons, encoding='unicode')))
        logger.info(f"[NFE-TRANSPORT] Status {self.send_mode.value}: {status.status_code} {status.status_message}")
        return status

    # -------------------------------------------------
    # Eventos
    # -------------------------------------------------

    def _send_event(self, event_xml: str, national: bool = False) -> EventResult:
        signed = self._sign_event(event_xml, 'infEvento')
        payload = events.wrap_event_batch(signed)
        result = parse_event(self._post(Service.RECEPCAO_EVENTO, payload, national=national))
        self._check_available(result.status_code, result.status_message)
        return result

    def cancel(self, access_key: str, justification: str, protocol_number: str) -> EventResult:
        xml = events.build_cancellation_event(
            access_key, protocol_number, justification, self.tax_id, self.environment
        )
        return self._send_event(xml)

    def correct(self, access_key: str, correction: str, sequence: int = 1) -> EventResult:
        xml = events.build_correction_event(
            access_key, correction, self.tax_id, self.environment, sequence
        )
        return self._send_event(xml)

    def recipient_manifestation(
        self, access_key: str, event_type: str, justification: Optional[str] = None
    ) -> EventResult:
        """Manifestacao do destinatario: evento enviado ao Ambiente Nacional"""
        xml = events.build_manifestation_event(
            access_key, event_type, self.tax_id, self.environment, justification
        )
        return self._send_event(xml, national=True)

    def invalidate_range(
        self,
        series: int,
        number_from: int,
        number_to: int,
        justification: str,
        model: Optional[str] = None,
        year: Optional[int] = None,
    ) -> InvalidationResult:
        xml = events.build_invalidation(
            self.uf, self.tax_id, model or self.config.NFE_MODEL, series,
            number_from, number_to, justification, self.environment, year,
        )
        signed = self._sign_event(xml, 'infInut')
        result = parse_invalidation(self._post(Service.INUTILIZACAO, signed))
        self._check_available(result.status_code, result.status_message)
        return result


def create_transport(company, credentials: CertificateBundle, environment, send_mode) -> TransportClient:
    """Fabrica padrao usada pelo orquestrador, pelo worker e pelos eventos"""
    return TransportClient(
        credentials,
        uf=company.uf,
        tax_id=company.cnpj,
        environment=environment,
        send_mode=send_mode,
    )
