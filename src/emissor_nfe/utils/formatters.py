from __future__ import annotations

from decimal import Decimal


def format_brl(value: str) -> str:
    """Format a numeric string as R$ X.XXX,XX."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def format_access_key(key: str) -> str:
    """Group the 44-digit access key in blocks of 4, as printed on the DANFE."""
    return " ".join(key[i : i + 4] for i in range(0, len(key), 4))


def format_cpf_cnpj(value: str) -> str:
    if len(value) == 11:
        return f"{value[:3]}.{value[3:6]}.{value[6:9]}-{value[9:]}"
    if len(value) == 14:
        return f"{value[:2]}.{value[2:5]}.{value[5:8]}/{value[8:12]}-{value[12:]}"
    return value
