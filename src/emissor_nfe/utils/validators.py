from __future__ import annotations

import re


def validate_ncm(value: str) -> str:
    """Validate NCM: exactly 8 numeric digits."""
    if not re.fullmatch(r"\d{8}", value):
        raise ValueError("NCM: deve ter 8 digitos numericos")
    return value


def validate_cfop(value: str) -> str:
    """Validate CFOP: 4 digits, first digit 1-7."""
    if not re.fullmatch(r"[1-7]\d{3}", value):
        raise ValueError("CFOP: deve ter 4 digitos, iniciando entre 1 e 7")
    return value


def validate_cest(value: str) -> str:
    """Validate CEST: exactly 7 numeric digits."""
    if not re.fullmatch(r"\d{7}", value):
        raise ValueError("CEST: deve ter 7 digitos numericos")
    return value


def _cpf_digit(digits: str) -> str:
    weight = len(digits) + 1
    total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
    rest = (total * 10) % 11
    return "0" if rest == 10 else str(rest)


def validate_cpf(value: str) -> str:
    if not re.fullmatch(r"\d{11}", value) or len(set(value)) == 1:
        raise ValueError("CPF invalido")
    if _cpf_digit(value[:9]) != value[9] or _cpf_digit(value[:10]) != value[10]:
        raise ValueError("CPF invalido")
    return value


def _cnpj_digit(digits: str) -> str:
    weights = [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2][-len(digits):]
    rest = sum(int(d) * w for d, w in zip(digits, weights)) % 11
    return "0" if rest < 2 else str(11 - rest)


def validate_cnpj(value: str) -> str:
    if not re.fullmatch(r"\d{14}", value) or len(set(value)) == 1:
        raise ValueError("CNPJ invalido")
    if _cnpj_digit(value[:12]) != value[12] or _cnpj_digit(value[:13]) != value[13]:
        raise ValueError("CNPJ invalido")
    return value


def validate_cpf_cnpj(value: str) -> str:
    """Validate a CPF (11 digits) or CNPJ (14 digits), digits only."""
    if len(value) == 11:
        return validate_cpf(value)
    if len(value) == 14:
        return validate_cnpj(value)
    raise ValueError("CPF/CNPJ: deve ter 11 ou 14 digitos")


def validate_justification(value: str) -> str:
    """Validate a cancellation/voiding justification (15 to 255 characters)."""
    text = value.strip()
    if len(text) < 15:
        raise ValueError("Justificativa: minimo de 15 caracteres")
    if len(text) > 255:
        raise ValueError("Justificativa: maximo de 255 caracteres")
    return text


def validate_document_number(value: str) -> str:
    """Validate nNF: 1 to 9 digits, not zero."""
    text = value.strip()
    if not re.fullmatch(r"\d{1,9}", text) or int(text) == 0:
        raise ValueError("Número: deve ser inteiro entre 1 e 999999999")
    return text
