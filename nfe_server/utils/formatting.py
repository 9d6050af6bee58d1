"""
Formatacao de valores no padrao do leiaute da NF-e

Valores monetarios e quantidades sao gerados com Decimal e ponto
decimal fixo: a SEFAZ confere alguns totais por comparacao exata
da string.
"""
import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from zoneinfo import ZoneInfo

# Fuso horario padrao do Brasil (UTC-3)
BRAZIL_TZ = ZoneInfo("America/Sao_Paulo")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # float passa por str para nao herdar o erro binario
    return Decimal(str(value))


def quantize(value: Optional[Number], places: int = 2) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def format_decimal(value: Optional[Number], places: int = 2) -> str:
    """Decimal com casas fixas, sem separador de milhar (ex: 1234.50)"""
    return f"{quantize(value, places):.{places}f}"


def only_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def utcnow() -> datetime:
    """UTC sem tzinfo, formato gravado no banco"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def brazil_now() -> datetime:
    return datetime.now(BRAZIL_TZ)


def format_datetime_tz(value: Optional[datetime] = None) -> str:
    """Data/hora no formato UTC do leiaute: AAAA-MM-DDThh:mm:ss-03:00"""
    value = value or brazil_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=BRAZIL_TZ)
    return value.astimezone(BRAZIL_TZ).isoformat(timespec="seconds")
