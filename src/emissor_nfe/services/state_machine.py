"""Emission lifecycle.

    queued ─► submitted ─► authorized ─► cancelled (authority event)
       │          │  └──► rejected
       │          └─► processing ─► authorized | rejected
       └────────────────┴──────────► cancelled

Every transition is written to the document store before the caller acts on
it, so ``submitted`` is durable before the submission goes out.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from emissor_nfe.models.document import (
    AUTHORIZED,
    CANCELLED,
    PROCESSING,
    QUEUED,
    REJECTED,
    SUBMITTED,
    TaxDocument,
)
from emissor_nfe.services.exceptions import InvalidTransition
from emissor_nfe.utils import registry

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    QUEUED: frozenset({SUBMITTED, CANCELLED}),
    SUBMITTED: frozenset({PROCESSING, AUTHORIZED, REJECTED, CANCELLED}),
    PROCESSING: frozenset({AUTHORIZED, REJECTED, CANCELLED}),
    AUTHORIZED: frozenset({CANCELLED}),
    REJECTED: frozenset(),
    CANCELLED: frozenset(),
}

TERMINAL = frozenset({AUTHORIZED, REJECTED, CANCELLED})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(
    document: TaxDocument,
    target: str,
    note: str | None = None,
    **fields: object,
) -> TaxDocument:
    """Move *document* to *target*, applying *fields* in the same write.

    Raises InvalidTransition when the table does not allow the move.
    Unknown field names raise AttributeError before anything is persisted.
    """
    if not can_transition(document.status, target):
        raise InvalidTransition(document.status, target)
    for name in fields:
        if name not in TaxDocument.__dataclass_fields__:
            raise AttributeError(f"TaxDocument has no field '{name}'")

    previous = document.status
    for name, value in fields.items():
        setattr(document, name, value)
    document.status = target
    entry: dict[str, object] = {
        "status": target,
        "at": datetime.now(UTC).isoformat(timespec="seconds"),
    }
    if note:
        entry["note"] = note
    document.history.append(entry)
    registry.save_document(document)
    logger.info("%s: %s -> %s", document.label, previous, target)
    return document
