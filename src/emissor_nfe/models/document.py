from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

NFE = "nfe"
NFCE = "nfce"
DOC_TYPES = (NFE, NFCE)

# Document model code (mod) carried in the access key
MODELO = {NFE: "55", NFCE: "65"}
DOC_LABELS = {NFE: "NF-e", NFCE: "NFC-e"}

QUEUED = "queued"
SUBMITTED = "submitted"
PROCESSING = "processing"
AUTHORIZED = "authorized"
REJECTED = "rejected"
CANCELLED = "cancelled"

STATUS_LABELS = {
    QUEUED: "na fila",
    SUBMITTED: "enviada",
    PROCESSING: "processando",
    AUTHORIZED: "autorizada",
    REJECTED: "rejeitada",
    CANCELLED: "cancelada",
}


@dataclass(frozen=True)
class NumberReservation:
    """Claim on (issuer, doc_type, series, number) made before the number enters a payload."""

    issuer_id: str
    doc_type: str
    series: int
    number: int
    env: str

    @property
    def key(self) -> str:
        return f"{self.issuer_id}/{self.doc_type}/{self.series}"


@dataclass
class TaxDocument:
    """One emission attempt and its lifecycle.

    ``access_key`` is only set once the authority authorizes the document;
    ``submission_ref`` holds the candidate key sent with the submission and
    is what reconciliation queries by.
    """

    sale_id: str
    doc_type: str
    series: int
    number: int
    env: str
    issuer_cnpj: str
    status: str = QUEUED
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submission_ref: str | None = None
    numeric_code: str | None = None
    emitted_at: str | None = None
    access_key: str | None = None
    protocol: str | None = None
    receipt: str | None = None
    authority_code: str | None = None
    authority_message: str | None = None
    customer_document: str | None = None
    customer_name: str | None = None
    total: str | None = None
    xml_path: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    authorized_at: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_sandbox(self) -> bool:
        return self.env == "homologacao"

    @property
    def label(self) -> str:
        return f"{DOC_LABELS.get(self.doc_type, self.doc_type)} {self.series}/{self.number}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TaxDocument:
        known = {f for f in cls.__dataclass_fields__}
        data = {k: v for k, v in d.items() if k in known}
        data["history"] = list(data.get("history") or [])
        return cls(**data)
