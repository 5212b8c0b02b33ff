from __future__ import annotations

import random
from datetime import datetime

# IBGE state codes (cUF)
CODIGO_UF = {
    "AC": "12", "AL": "27", "AP": "16", "AM": "13", "BA": "29", "CE": "23",
    "DF": "53", "ES": "32", "GO": "52", "MA": "21", "MT": "51", "MS": "50",
    "MG": "31", "PA": "15", "PB": "25", "PR": "41", "PE": "26", "PI": "22",
    "RJ": "33", "RN": "24", "RS": "43", "RO": "11", "RR": "14", "SC": "42",
    "SP": "35", "SE": "28", "TO": "17",
}


def mod11_check_digit(digits: str) -> str:
    """Modulo-11 check digit with weights 2..9 from the right (0 when result >= 10)."""
    weight = 2
    total = 0
    for d in reversed(digits):
        total += int(d) * weight
        weight = 2 if weight == 9 else weight + 1
    dv = 11 - (total % 11)
    return "0" if dv >= 10 else str(dv)


def generate_numeric_code(number: int) -> str:
    """Random 8-digit cNF; must differ from the document number."""
    while True:
        code = f"{random.randint(0, 99_999_999):08d}"
        if int(code) != number:
            return code


def build_access_key(
    uf: str,
    emitted_at: datetime,
    cnpj: str,
    modelo: str,
    serie: int,
    numero: int,
    numeric_code: str,
    tp_emis: str = "1",
) -> str:
    """Build the 44-digit access key.

    Format: cUF(2) + AAMM(4) + CNPJ(14) + mod(2) + serie(3) + nNF(9)
    + tpEmis(1) + cNF(8) + cDV(1)
    """
    try:
        c_uf = CODIGO_UF[uf.upper()]
    except KeyError:
        raise ValueError(f"UF desconhecida: '{uf}'") from None
    base = "".join(
        [
            c_uf,
            emitted_at.strftime("%y%m"),
            cnpj.zfill(14),
            modelo.zfill(2),
            str(serie).zfill(3),
            str(numero).zfill(9),
            tp_emis,
            numeric_code.zfill(8),
        ]
    )
    if len(base) != 43:
        raise ValueError(f"Chave sem DV deve ter 43 dígitos, obtido {len(base)}: {base}")
    return base + mod11_check_digit(base)


def parse_access_key(key: str) -> dict[str, str]:
    """Split a 44-digit access key into its fields."""
    if len(key) != 44 or not key.isdigit():
        raise ValueError("Chave de acesso deve ter 44 dígitos")
    return {
        "cUF": key[0:2],
        "AAMM": key[2:6],
        "CNPJ": key[6:20],
        "mod": key[20:22],
        "serie": key[22:25],
        "nNF": key[25:34],
        "tpEmis": key[34],
        "cNF": key[35:43],
        "cDV": key[43],
    }
