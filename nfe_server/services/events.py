"""
XML dos eventos da NF-e e do pedido de inutilizacao

Todas as regras de tamanho e obrigatoriedade sao conferidas aqui, antes
de qualquer chamada a SEFAZ. Os builders devolvem o XML sem assinatura:
`evento` (assinado no infEvento) ou `inutNFe` (assinado no infInut).
"""
import re
from datetime import datetime
from typing import Optional

from lxml import etree

from nfe_server.core.exceptions import ValidationError
from nfe_server.services.constants import (
    NFE_NAMESPACE,
    NSMAP,
    NFE_VERSION,
    EVENT_VERSION,
    CODIGO_UF,
    CODIGO_AMBIENTE_NACIONAL,
    Environment,
    EVENTO_CANCELAMENTO,
    EVENTO_CARTA_CORRECAO,
    EVENTO_OPERACAO_NAO_REALIZADA,
    EVENTOS_MANIFESTACAO,
    DESCRICAO_EVENTOS,
    JUSTIFICATIVA_MIN,
    JUSTIFICATIVA_MAX,
    CORRECAO_MIN,
    CORRECAO_MAX,
    CORRECAO_SEQUENCIA_MAX,
    CONDICAO_USO_CCE,
)
from nfe_server.utils.access_key import validate_access_key
from nfe_server.utils.formatting import brazil_now, format_datetime_tz, only_digits


def _tag(name: str) -> str:
    return '{%s}%s' % (NFE_NAMESPACE, name)


def _sub(parent, name: str, text=None):
    element = etree.SubElement(parent, _tag(name))
    if text is not None:
        element.text = str(text)
    return element


def clean_text(value: Optional[str]) -> str:
    """Remove quebras de linha e espacos repetidos (rejeitados pela SEFAZ)"""
    return re.sub(r"\s+", " ", value or "").strip()


def _check_length(value: str, label: str, minimum: int, maximum: int) -> str:
    text = clean_text(value)
    if len(text) < minimum:
        raise ValidationError(f"{label} deve ter no minimo {minimum} caracteres")
    if len(text) > maximum:
        raise ValidationError(f"{label} deve ter no maximo {maximum} caracteres")
    return text


def _check_key(access_key: str):
    check = validate_access_key(access_key)
    if not check.valid:
        raise ValidationError(f"Chave de acesso invalida: {check.error}")


def _author_tag(tax_id: str) -> str:
    digits = only_digits(tax_id)
    if len(digits) == 14:
        return 'CNPJ'
    if len(digits) == 11:
        return 'CPF'
    raise ValidationError(f"CNPJ/CPF do autor do evento invalido: {tax_id}")


def build_event(
    access_key: str,
    event_type: str,
    author_tax_id: str,
    environment: Environment,
    details: dict,
    sequence: int = 1,
    organ: Optional[str] = None,
    event_at: Optional[datetime] = None,
) -> str:
    """
    Monta o elemento `evento` generico.

    Args:
        access_key: Chave da NF-e (44 digitos)
        event_type: tpEvento (110111, 110110, 2102x0)
        author_tax_id: CNPJ/CPF do autor (emitente ou destinatario)
        environment: tpAmb
        details: Campos de detEvento, na ordem do leiaute
        sequence: nSeqEvento
        organ: cOrgao (padrao: UF da chave)
        event_at: dhEvento (padrao: agora)
    """
    _check_key(access_key)
    environment = Environment(environment)
    digits = only_digits(author_tax_id)
    author_tag = _author_tag(digits)

    evento = etree.Element(_tag('evento'), nsmap=NSMAP)
    evento.set('versao', EVENT_VERSION)
    inf = _sub(evento, 'infEvento')
    inf.set('Id', f"ID{event_type}{access_key}{str(sequence).zfill(2)}")
    _sub(inf, 'cOrgao', organ or access_key[:2])
    _sub(inf, 'tpAmb', environment.value)
    _sub(inf, author_tag, digits)
    _sub(inf, 'chNFe', access_key)
    _sub(inf, 'dhEvento', format_datetime_tz(event_at or brazil_now()))
    _sub(inf, 'tpEvento', event_type)
    _sub(inf, 'nSeqEvento', sequence)
    _sub(inf, 'verEvento', EVENT_VERSION)

    det = _sub(inf, 'detEvento')
    det.set('versao', EVENT_VERSION)
    _sub(det, 'descEvento', DESCRICAO_EVENTOS[event_type])
    for name, value in details.items():
        if value is not None:
            _sub(det, name, value)

    return etree.tostring(evento, encoding='unicode')


def build_cancellation_event(
    access_key: str,
    protocol_number: str,
    justification: str,
    issuer_tax_id: str,
    environment: Environment,
    event_at: Optional[datetime] = None,
) -> str:
    """Evento 110111. Exige o protocolo de autorizacao da nota."""
    protocol = only_digits(protocol_number)
    if not protocol:
        raise ValidationError("Protocolo de autorizacao e obrigatorio para o cancelamento")
    justification = _check_length(justification, "Justificativa", JUSTIFICATIVA_MIN, JUSTIFICATIVA_MAX)

    return build_event(
        access_key, EVENTO_CANCELAMENTO, issuer_tax_id, environment,
        {'nProt': protocol, 'xJust': justification},
        sequence=1, event_at=event_at,
    )


def build_correction_event(
    access_key: str,
    correction: str,
    issuer_tax_id: str,
    environment: Environment,
    sequence: int = 1,
    event_at: Optional[datetime] = None,
) -> str:
    """Evento 110110 (CC-e). Cada nova carta substitui a anterior."""
    if not 1 <= int(sequence) <= CORRECAO_SEQUENCIA_MAX:
        raise ValidationError(f"Sequencia da carta de correcao deve estar entre 1 e {CORRECAO_SEQUENCIA_MAX}")
    correction = _check_length(correction, "Texto da correcao", CORRECAO_MIN, CORRECAO_MAX)

    return build_event(
        access_key, EVENTO_CARTA_CORRECAO, issuer_tax_id, environment,
        {'xCorrecao': correction, 'xCondUso': CONDICAO_USO_CCE},
        sequence=int(sequence), event_at=event_at,
    )


def build_manifestation_event(
    access_key: str,
    event_type: str,
    recipient_tax_id: str,
    environment: Environment,
    justification: Optional[str] = None,
    event_at: Optional[datetime] = None,
) -> str:
    """
    Manifestacao do destinatario, registrada no Ambiente Nacional (cOrgao 91).

    Operacao nao Realizada (210240) exige justificativa de 15 a 255 caracteres.
    """
    event_type = str(event_type)
    if event_type not in EVENTOS_MANIFESTACAO:
        raise ValidationError(f"Tipo de manifestacao invalido: {event_type}")

    details = {}
    if event_type == EVENTO_OPERACAO_NAO_REALIZADA:
        details['xJust'] = _check_length(justification, "Justificativa", JUSTIFICATIVA_MIN, JUSTIFICATIVA_MAX)
    elif justification:
        raise ValidationError("Justificativa so e aceita para Operacao nao Realizada (210240)")

    return build_event(
        access_key, event_type, recipient_tax_id, environment, details,
        sequence=1, organ=CODIGO_AMBIENTE_NACIONAL, event_at=event_at,
    )


def wrap_event_batch(signed_event: str, batch_id: Optional[str] = None) -> str:
    """envEvento com um unico evento assinado"""
    env = etree.Element(_tag('envEvento'), nsmap=NSMAP)
    env.set('versao', EVENT_VERSION)
    _sub(env, 'idLote', batch_id or brazil_now().strftime('%Y%m%d%H%M%S'))
    env.append(etree.fromstring(signed_event.encode('utf-8')))
    return etree.tostring(env, encoding='unicode')


def build_invalidation(
    uf: str,
    issuer_tax_id: str,
    model: str,
    series: int,
    number_from: int,
    number_to: int,
    justification: str,
    environment: Environment,
    year: Optional[int] = None,
) -> str:
    """
    Pedido de inutilizacao de faixa de numeracao (inutNFe).

    Id = "ID" + cUF + ano(2) + CNPJ + mod + serie(3) + nNFIni(9) + nNFFin(9)
    """
    environment = Environment(environment)
    cuf = CODIGO_UF.get(str(uf).upper(), str(uf))
    if cuf not in CODIGO_UF.values():
        raise ValidationError(f"UF invalida: {uf}")

    cnpj = only_digits(issuer_tax_id)
    if len(cnpj) != 14:
        raise ValidationError(f"CNPJ do emitente deve ter 14 digitos (informado: {issuer_tax_id})")
    if not 0 <= int(series) <= 999:
        raise ValidationError("Serie deve estar entre 0 e 999")
    if not 1 <= int(number_from) <= int(number_to) <= 999999999:
        raise ValidationError("Faixa de numeracao invalida: inicial deve ser menor ou igual a final")
    justification = _check_length(justification, "Justificativa", JUSTIFICATIVA_MIN, JUSTIFICATIVA_MAX)

    ano = str(year if year is not None else brazil_now().year)[-2:]
    serie = str(int(series)).zfill(3)
    inicio = str(int(number_from)).zfill(9)
    fim = str(int(number_to)).zfill(9)

    inut = etree.Element(_tag('inutNFe'), nsmap=NSMAP)
    inut.set('versao', NFE_VERSION)
    inf = _sub(inut, 'infInut')
    inf.set('Id', f"ID{cuf}{ano}{cnpj}{model}{serie}{inicio}{fim}")
    _sub(inf, 'tpAmb', environment.value)
    _sub(inf, 'xServ', 'INUTILIZAR')
    _sub(inf, 'cUF', cuf)
    _sub(inf, 'ano', ano)
    _sub(inf, 'CNPJ', cnpj)
    _sub(inf, 'mod', model)
    _sub(inf, 'serie', int(series))
    _sub(inf, 'nNFIni', int(number_from))
    _sub(inf, 'nNFFin', int(number_to))
    _sub(inf, 'xJust', justification)

    return etree.tostring(inut, encoding='unicode')
