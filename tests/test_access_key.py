"""
Testes da chave de acesso (geracao, digito verificador, decomposicao)
"""
from datetime import datetime

import pytest

from nfe_server.core.exceptions import ValidationError
from nfe_server.utils.access_key import (
    compute_check_digit,
    generate_access_key,
    parse_access_key,
    validate_access_key,
)

CNPJ = "12345678000195"


def _key(**overrides):
    params = dict(
        uf="SC",
        issuer_tax_id=CNPJ,
        model="55",
        series=1,
        number=123,
        emission_mode="1",
        random_code="12345678",
        issued_at=datetime(2024, 3, 5, 10, 0),
    )
    params.update(overrides)
    return generate_access_key(**params)


@pytest.mark.parametrize("digits, expected", [
    ("1", "9"),        # 1*2 = 2 -> 11 - 2
    ("11", "6"),       # 1*2 + 1*3 = 5 -> 11 - 5
    ("0" * 43, "0"),   # resto 0 -> 0
    ("5", "1"),        # 5*2 = 10 -> 11 - 10
])
def test_check_digit_known_values(digits, expected):
    assert compute_check_digit(digits) == expected


def test_check_digit_remainder_one_gives_zero():
    # 6*2 = 12 -> resto 1 -> digito 0
    assert compute_check_digit("6") == "0"


def test_generated_key_layout():
    key = _key()

    assert len(key) == 44
    assert key.isdigit()
    assert key[:2] == "42"
    assert key[2:6] == "2403"
    assert key[6:20] == CNPJ
    assert key[20:22] == "55"
    assert key[22:25] == "001"
    assert key[25:34] == "000000123"
    assert key[34] == "1"
    assert key[35:43] == "12345678"
    assert key[43] == compute_check_digit(key[:43])


def test_generated_key_accepts_ibge_code():
    assert _key(uf="42") == _key(uf="SC")


def test_generated_key_is_valid():
    assert validate_access_key(_key()).valid is True


def test_contingency_key_differs_only_in_mode_and_check_digit():
    normal = _key()
    svc = _key(emission_mode="6")

    assert svc[34] == "6"
    assert svc[:34] == normal[:34]
    assert svc[35:43] == normal[35:43]


def test_any_changed_check_digit_is_invalid():
    key = _key()
    for digit in "0123456789":
        if digit == key[-1]:
            continue
        result = validate_access_key(key[:43] + digit)
        assert result.valid is False
        assert "Digito verificador" in result.error


def _remainder(body):
    weights = [2 + (i % 8) for i in range(len(body))]
    return sum(int(d) * w for d, w in zip(reversed(body), weights)) % 11


def _mutations(key):
    for position in range(43):
        for digit in "0123456789":
            if digit != key[position]:
                yield key[:position] + digit + key[position + 1:]


def test_changed_body_digit_is_detected():
    key = _key()
    if _remainder(key[:43]) in (0, 1):
        key = _key(random_code="12345679")
    assert _remainder(key[:43]) not in (0, 1)

    for mutated in _mutations(key):
        assert validate_access_key(mutated).valid is False, mutated


def test_body_change_between_remainders_zero_and_one_is_undetected():
    key = next(
        k for k in (_key(random_code=f"{n:08d}") for n in range(100))
        if _remainder(k[:43]) == 0
    )
    assert key[43] == "0"

    undetected = [m for m in _mutations(key) if validate_access_key(m).valid]

    assert undetected
    assert all(_remainder(m[:43]) == 1 for m in undetected)


@pytest.mark.parametrize("key", ["", "123", "4" * 45])
def test_wrong_length_is_invalid(key):
    result = validate_access_key(key)
    assert result.valid is False
    assert "44 digitos" in result.error


def test_non_digit_key_is_invalid():
    key = _key()
    result = validate_access_key("A" + key[1:])
    assert result.valid is False
    assert "apenas digitos" in result.error


def test_none_key_is_invalid():
    assert validate_access_key(None).valid is False


def test_oversized_field_raises():
    with pytest.raises(ValidationError):
        _key(number=1234567890)


def test_non_numeric_field_raises():
    with pytest.raises(ValidationError):
        _key(series="A1")


def test_parse_round_trip():
    key = _key(series=12, number=98765)
    parts = parse_access_key(key)

    assert parts.uf == "42"
    assert parts.year_month == "2403"
    assert parts.issuer_tax_id == CNPJ
    assert parts.model == "55"
    assert parts.series == "012"
    assert parts.number == "000098765"
    assert parts.emission_mode == "1"
    assert parts.random_code == "12345678"
    assert parts.check_digit == key[-1]
    assert "".join(parts.to_dict().values()) == key


def test_parse_rejects_wrong_length():
    with pytest.raises(ValidationError):
        parse_access_key("123")
