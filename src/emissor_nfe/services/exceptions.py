from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from emissor_nfe.models.document import TaxDocument


class EmissionError(Exception):
    """Base class for every failure surfaced by the emission workflow."""


class ConfigurationIncomplete(EmissionError):
    """Issuer setup is unfinished; nothing was reserved or transmitted."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__("Configuração fiscal incompleta: " + ", ".join(missing))
        self.missing = list(missing)


class ValidationFailed(EmissionError):
    """Sale or profile data cannot produce a valid document.

    ``problems`` holds every (field, reason) pair found, not just the first.
    """

    def __init__(self, problems: list[tuple[str, str]]) -> None:
        lines = "; ".join(f"{f}: {r}" for f, r in problems)
        super().__init__(f"Dados inválidos para emissão: {lines}")
        self.problems = list(problems)


class CertificateError(EmissionError):
    """The certificate archive could not be opened, is outside its validity or cannot sign."""

    def __init__(self, message: str, document: TaxDocument | None = None) -> None:
        super().__init__(message)
        self.document = document


class AuthorityRejected(EmissionError):
    """The authority refused the document; code and message are kept verbatim."""

    def __init__(
        self,
        code: str,
        message: str,
        document: TaxDocument | None = None,
        response: dict | None = None,
    ) -> None:
        super().__init__(f"Rejeição {code}: {message}")
        self.code = code
        self.message = message
        self.document = document
        self.response = response or {}


class TransientFailure(EmissionError):
    """The request never reached the authority; safe to retry as a fresh emission."""

    def __init__(self, message: str, document: TaxDocument | None = None) -> None:
        super().__init__(message)
        self.document = document


class UnknownOutcome(EmissionError):
    """The authority may or may not have received the document; reconcile before retrying."""

    def __init__(self, message: str, document: TaxDocument | None = None) -> None:
        super().__init__(message)
        self.document = document


class DuplicateEmission(EmissionError):
    """The sale already has an authorized document of this type."""

    def __init__(self, document: TaxDocument) -> None:
        super().__init__(
            f"Venda {document.sale_id} já possui {document.label} autorizada"
            f" (chave {document.access_key})"
        )
        self.document = document


class SeriesExhausted(EmissionError):
    """The series reached the authority's maximum number; a new series is required."""

    def __init__(self, doc_type: str, series: int) -> None:
        super().__init__(
            f"Numeração esgotada para {doc_type} série {series}; configure uma nova série"
        )
        self.doc_type = doc_type
        self.series = series


class InvalidTransition(EmissionError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Transição inválida: {current} -> {target}")
        self.current = current
        self.target = target


class StorageError(EmissionError):
    """Local state could not be read or written."""
