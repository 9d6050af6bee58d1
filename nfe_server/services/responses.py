"""
Leitura das respostas da SEFAZ

Converte o envelope SOAP em resultados tipados. Erros de envelope (XML
ilegivel, SOAP Fault) viram TransportError; cStat de negocio nunca gera
excecao aqui, quem decide e o chamador.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from lxml import etree

from nfe_server.core.exceptions import TransportError
from nfe_server.services.constants import (
    NFE_NAMESPACE,
    SOAP11_NAMESPACE,
    SOAP12_NAMESPACE,
    CSTAT_AUTORIZACAO_OK,
    CSTAT_DENEGADO,
    CSTAT_LOTE_RECEBIDO,
    CSTAT_LOTE_PROCESSADO,
    CSTAT_LOTE_EM_PROCESSAMENTO,
    CSTAT_SERVICO_EM_OPERACAO,
    CSTAT_EVENTO_LOTE_PROCESSADO,
    CSTAT_EVENTO_OK,
    CSTAT_INUTILIZADO,
    CSTAT_CANCELADO,
)

logger = logging.getLogger(__name__)


def _tag(name: str) -> str:
    return '{%s}%s' % (NFE_NAMESPACE, name)


def _text(element, name: str) -> Optional[str]:
    if element is None:
        return None
    value = element.findtext(_tag(name))
    return value.strip() if value else None


def _int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


# =====================================================
# RESULTADOS
# =====================================================

@dataclass
class ProtocolResult:
    """protNFe/infProt"""
    status_code: Optional[int]
    status_message: Optional[str]
    access_key: Optional[str] = None
    protocol_number: Optional[str] = None
    received_at: Optional[str] = None
    digest_value: Optional[str] = None
    xml: Optional[str] = None

    @property
    def authorized(self) -> bool:
        return self.status_code in CSTAT_AUTORIZACAO_OK

    @property
    def denied(self) -> bool:
        return self.status_code in CSTAT_DENEGADO


@dataclass
class AuthorizationResult:
    """retEnviNFe (envio do lote) e retConsReciNFe (consulta do recibo)"""
    status_code: Optional[int]
    status_message: Optional[str]
    receipt_number: Optional[str] = None
    protocol: Optional[ProtocolResult] = None
    average_time_seconds: Optional[int] = None

    @property
    def received(self) -> bool:
        """Lote aceito para processamento assincrono"""
        return self.status_code == CSTAT_LOTE_RECEBIDO and self.protocol is None

    @property
    def processing(self) -> bool:
        return self.status_code == CSTAT_LOTE_EM_PROCESSAMENTO

    @property
    def success(self) -> bool:
        return self.protocol is not None and self.protocol.authorized


@dataclass
class StatusResult:
    """retConsSitNFe: situacao atual da nota"""
    status_code: Optional[int]
    status_message: Optional[str]
    access_key: Optional[str] = None
    protocol: Optional[ProtocolResult] = None
    cancel_protocol_number: Optional[str] = None

    @property
    def authorized(self) -> bool:
        return self.status_code in CSTAT_AUTORIZACAO_OK

    @property
    def cancelled(self) -> bool:
        return self.status_code == CSTAT_CANCELADO or self.cancel_protocol_number is not None

    @property
    def success(self) -> bool:
        return self.protocol is not None


@dataclass
class ServiceStatus:
    """retConsStatServ"""
    status_code: Optional[int]
    status_message: Optional[str]
    average_time_seconds: Optional[int] = None
    checked_at: Optional[str] = None

    @property
    def online(self) -> bool:
        return self.status_code == CSTAT_SERVICO_EM_OPERACAO

    success = online


@dataclass
class EventResult:
    """retEnvEvento: status do lote e do evento"""
    status_code: Optional[int]
    status_message: Optional[str]
    event_status_code: Optional[int] = None
    event_status_message: Optional[str] = None
    protocol_number: Optional[str] = None
    registered_at: Optional[str] = None
    xml: Optional[str] = None

    @property
    def success(self) -> bool:
        return (
            self.status_code == CSTAT_EVENTO_LOTE_PROCESSADO
            and self.event_status_code in CSTAT_EVENTO_OK
        )

    @property
    def error(self) -> Optional[str]:
        if self.success:
            return None
        if self.event_status_code is not None:
            return f"{self.event_status_code}: {self.event_status_message}"
        return f"{self.status_code}: {self.status_message}"


@dataclass
class InvalidationResult:
    """retInutNFe/infInut"""
    status_code: Optional[int]
    status_message: Optional[str]
    protocol_number: Optional[str] = None
    received_at: Optional[str] = None
    xml: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status_code == CSTAT_INUTILIZADO


# =====================================================
# ENVELOPE SOAP
# =====================================================

def extract_body(response_text: Union[str, bytes], expected: str):
    """
    Localiza o retorno `expected` (ex: retEnviNFe) dentro do envelope.

    Raises:
        TransportError: XML ilegivel, SOAP Fault ou retorno ausente
    """
    try:
        data = response_text.encode('utf-8') if isinstance(response_text, str) else response_text
        root = etree.fromstring(data)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise TransportError(f"Resposta da SEFAZ ilegivel: {e}", retryable=True) from e

    for soap_ns in (SOAP12_NAMESPACE, SOAP11_NAMESPACE):
        fault = root.find('.//{%s}Fault' % soap_ns)
        if fault is not None:
            raise _fault_error(fault, soap_ns)

    if etree.QName(root).localname == expected:
        return root
    element = root.find('.//' + _tag(expected))
    if element is None:
        raise TransportError(f"Resposta da SEFAZ sem o elemento {expected}", retryable=True)
    return element


def _fault_error(fault, soap_ns: str) -> TransportError:
    if soap_ns == SOAP12_NAMESPACE:
        code = fault.findtext('.//{%s}Code/{%s}Value' % (soap_ns, soap_ns)) or ''
        reason = fault.findtext('.//{%s}Reason/{%s}Text' % (soap_ns, soap_ns)) or ''
    else:
        code = fault.findtext('faultcode') or ''
        reason = fault.findtext('faultstring') or ''

    # Falha do cliente (envelope/acao errada) nao melhora com reenvio
    retryable = not code.split(':')[-1].startswith(('Client', 'Sender'))
    logger.warning(f"[NFE-TRANSPORT] SOAP Fault {code}: {reason}")
    return TransportError(f"SOAP Fault {code}: {reason}".strip(), retryable=retryable)


# =====================================================
# PARSERS
# =====================================================

def parse_protocol(prot) -> ProtocolResult:
    """Le protNFe (elemento ou XML)"""
    if isinstance(prot, (str, bytes)):
        prot = etree.fromstring(prot.encode('utf-8') if isinstance(prot, str) else prot)
    inf = prot.find(_tag('infProt'))
    return ProtocolResult(
        status_code=_int(_text(inf, 'cStat')),
        status_message=_text(inf, 'xMotivo'),
        access_key=_text(inf, 'chNFe'),
        protocol_number=_text(inf, 'nProt'),
        received_at=_text(inf, 'dhRecbto'),
        digest_value=_text(inf, 'digVal'),
        xml=etree.tostring(prot, encoding='unicode'),
    )


def _first_protocol(element) -> Optional[ProtocolResult]:
    prot = element.find(_tag('protNFe'))
    return parse_protocol(prot) if prot is not None else None


def parse_authorization(response_text) -> AuthorizationResult:
    ret = extract_body(response_text, 'retEnviNFe')
    status = _int(_text(ret, 'cStat'))
    return AuthorizationResult(
        status_code=status,
        status_message=_text(ret, 'xMotivo'),
        receipt_number=_text(ret.find(_tag('infRec')), 'nRec'),
        protocol=_first_protocol(ret) if status == CSTAT_LOTE_PROCESSADO else None,
        average_time_seconds=_int(_text(ret.find(_tag('infRec')), 'tMed')),
    )


def parse_receipt(response_text) -> AuthorizationResult:
    ret = extract_body(response_text, 'retConsReciNFe')
    status = _int(_text(ret, 'cStat'))
    return AuthorizationResult(
        status_code=status,
        status_message=_text(ret, 'xMotivo'),
        receipt_number=_text(ret, 'nRec'),
        protocol=_first_protocol(ret) if status == CSTAT_LOTE_PROCESSADO else None,
    )


def parse_status(response_text) -> StatusResult:
    ret = extract_body(response_text, 'retConsSitNFe')
    cancel_protocol = None
    for event in ret.iter(_tag('infEvento')):
        if _text(event, 'tpEvento') == '110111' and _int(_text(event, 'cStat')) in CSTAT_EVENTO_OK:
            cancel_protocol = _text(event, 'nProt')

    return StatusResult(
        status_code=_int(_text(ret, 'cStat')),
        status_message=_text(ret, 'xMotivo'),
        access_key=_text(ret, 'chNFe'),
        protocol=_first_protocol(ret),
        cancel_protocol_number=cancel_protocol,
    )


def parse_service_status(response_text) -> ServiceStatus:
    ret = extract_body(response_text, 'retConsStatServ')
    return ServiceStatus(
        status_code=_int(_text(ret, 'cStat')),
        status_message=_text(ret, 'xMotivo'),
        average_time_seconds=_int(_text(ret, 'tMed')),
        checked_at=_text(ret, 'dhRecbto'),
    )


def parse_event(response_text) -> EventResult:
    ret = extract_body(response_text, 'retEnvEvento')
    ret_evento = ret.find(_tag('retEvento'))
    inf = ret_evento.find(_tag('infEvento')) if ret_evento is not None else None
    return EventResult(
        status_code=_int(_text(ret, 'cStat')),
        status_message=_text(ret, 'xMotivo'),
        event_status_code=_int(_text(inf, 'cStat')),
        event_status_message=_text(inf, 'xMotivo'),
        protocol_number=_text(inf, 'nProt'),
        registered_at=_text(inf, 'dhRegEvento'),
        xml=etree.tostring(ret_evento, encoding='unicode') if ret_evento is not None else None,
    )


def parse_invalidation(response_text) -> InvalidationResult:
    ret = extract_body(response_text, 'retInutNFe')
    inf = ret.find(_tag('infInut'))
    return InvalidationResult(
        status_code=_int(_text(inf, 'cStat')),
        status_message=_text(inf, 'xMotivo'),
        protocol_number=_text(inf, 'nProt'),
        received_at=_text(inf, 'dhRecbto'),
        xml=etree.tostring(ret, encoding='unicode'),
    )
