"""
Chave de acesso da NF-e (44 digitos)

Formato: cUF(2) + AAMM(4) + CNPJ(14) + mod(2) + serie(3) + nNF(9)
         + tpEmis(1) + cNF(8) + cDV(1)

Funcoes puras, sem estado: podem ser chamadas concorrentemente.
"""
from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Optional, Union

from nfe_server.core.exceptions import ValidationError
from nfe_server.services.constants import CODIGO_UF

ACCESS_KEY_LENGTH = 44

# (campo, inicio, fim)
_LAYOUT = (
    ("uf", 0, 2),
    ("year_month", 2, 6),
    ("issuer_tax_id", 6, 20),
    ("model", 20, 22),
    ("series", 22, 25),
    ("number", 25, 34),
    ("emission_mode", 34, 35),
    ("random_code", 35, 43),
    ("check_digit", 43, 44),
)


@dataclass(frozen=True)
class AccessKeyParts:
    uf: str
    year_month: str
    issuer_tax_id: str
    model: str
    series: str
    number: str
    emission_mode: str
    random_code: str
    check_digit: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AccessKeyValidation:
    valid: bool
    error: Optional[str] = None


def compute_check_digit(digits: str) -> str:
    """
    Digito verificador modulo 11.

    Pesos de 2 a 9 aplicados da direita para a esquerda (ciclicos);
    resto < 2 resulta em digito 0, caso contrario 11 - resto.

    Toda troca de um unico digito altera o resto, mas como os restos 0 e
    1 geram o mesmo digito 0, a troca que leva o resto de 0 para 1 (ou de
    1 para 0) nao e detectada.
    """
    peso = 2
    soma = 0

    for digito in reversed(digits):
        soma += int(digito) * peso
        peso += 1
        if peso > 9:
            peso = 2

    resto = soma % 11
    if resto < 2:
        return '0'
    return str(11 - resto)


def _fixed(value, width: int, field: str) -> str:
    text = str(value).strip()
    if not text.isdigit():
        raise ValidationError(f"Campo {field} da chave de acesso deve ser numerico: {value!r}")
    text = text.zfill(width)
    if len(text) != width:
        raise ValidationError(f"Campo {field} da chave de acesso excede {width} digitos: {value!r}")
    return text


def generate_access_key(
    uf: str,
    issuer_tax_id: str,
    model: Union[str, int],
    series: Union[str, int],
    number: Union[str, int],
    emission_mode: Union[str, int],
    random_code: Union[str, int],
    issued_at: Optional[Union[datetime, date]] = None,
) -> str:
    """
    Gera a chave de acesso.

    Args:
        uf: Codigo IBGE da UF ("42") ou sigla ("SC")
        issuer_tax_id: CNPJ do emitente
        model: 55=NF-e, 65=NFC-e
        series: Serie (ate 3 digitos)
        number: Numero da nota (ate 9 digitos)
        emission_mode: tpEmis (1=Normal, 6=SVC-AN, 7=SVC-RS)
        random_code: cNF (8 digitos)
        issued_at: Data de emissao; define o AAMM (padrao: agora)

    Returns:
        Chave de acesso com 44 digitos
    """
    cuf = CODIGO_UF.get(str(uf).upper(), str(uf))
    aamm = (issued_at or datetime.now()).strftime('%y%m')

    chave_sem_dv = (
        _fixed(cuf, 2, "cUF")
        + aamm
        + _fixed(issuer_tax_id, 14, "CNPJ")
        + _fixed(model, 2, "mod")
        + _fixed(series, 3, "serie")
        + _fixed(number, 9, "nNF")
        + _fixed(emission_mode, 1, "tpEmis")
        + _fixed(random_code, 8, "cNF")
    )
    return chave_sem_dv + compute_check_digit(chave_sem_dv)


def validate_access_key(key: str) -> AccessKeyValidation:
    if key is None or len(key) != ACCESS_KEY_LENGTH:
        size = 0 if key is None else len(key)
        return AccessKeyValidation(False, f"Chave de acesso deve ter 44 digitos (informado: {size})")

    if not key.isdigit():
        return AccessKeyValidation(False, "Chave de acesso deve conter apenas digitos")

    esperado = compute_check_digit(key[:43])
    informado = key[43]
    if esperado != informado:
        return AccessKeyValidation(
            False,
            f"Digito verificador invalido. Esperado: {esperado}, Informado: {informado}"
        )

    return AccessKeyValidation(True)


def parse_access_key(key: str) -> AccessKeyParts:
    """Decompoe a chave pelos offsets fixos do leiaute"""
    if key is None or len(key) != ACCESS_KEY_LENGTH:
        raise ValidationError("Chave de acesso deve ter 44 digitos")
    return AccessKeyParts(**{name: key[start:end] for name, start, end in _LAYOUT})
