from __future__ import annotations

from datetime import datetime

import pytest

from emissor_nfe.utils.access_key import (
    build_access_key,
    generate_numeric_code,
    mod11_check_digit,
    parse_access_key,
)


def test_build_layout():
    key = build_access_key(
        uf="SP",
        emitted_at=datetime(2026, 10, 19, 10, 0),
        cnpj="11222333000181",
        modelo="65",
        serie=2,
        numero=42,
        numeric_code="12345678",
    )
    assert len(key) == 44
    parts = parse_access_key(key)
    assert parts == {
        "cUF": "35",
        "AAMM": "2610",
        "CNPJ": "11222333000181",
        "mod": "65",
        "serie": "002",
        "nNF": "000000042",
        "tpEmis": "1",
        "cNF": "12345678",
        "cDV": mod11_check_digit(key[:43]),
    }


def test_mod11_known_values():
    # Weights 2..9 from the right; remainders 0 and 1 map to 0
    assert mod11_check_digit("1") == "9"
    assert mod11_check_digit("0") == "0"
    assert mod11_check_digit("6") == "0"


def test_unknown_uf():
    with pytest.raises(ValueError, match="UF"):
        build_access_key("XX", datetime(2026, 1, 1), "11222333000181", "55", 1, 1, "00000001")


def test_numeric_code_differs_from_number():
    for number in (0, 1, 12345678):
        code = generate_numeric_code(number)
        assert len(code) == 8
        assert code.isdigit()
        assert int(code) != number


def test_parse_rejects_bad_key():
    with pytest.raises(ValueError):
        parse_access_key("123")
