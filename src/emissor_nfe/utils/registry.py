"""Local tax-document store.

Every emission attempt is persisted as a TaxDocument row in
``data/<env>/documents.json``.  Rows are never deleted: the document is the
durable legal artifact and outlives the sale it came from.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock

from emissor_nfe import config as _config
from emissor_nfe.models.document import TaxDocument
from emissor_nfe.services.exceptions import StorageError

logger = logging.getLogger(__name__)


def _documents_path(env: str) -> Path:
    return _config.get_env_dir(env) / "documents.json"


def backup_corrupt(path: Path) -> Path:
    """Copy a corrupt file to a timestamped backup, leaving the original in place."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    shutil.copy2(path, backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


@contextmanager
def _locked(env: str) -> Iterator[None]:
    """Hold an exclusive file lock during store read-modify-write."""
    dp = _documents_path(env)
    dp.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(dp.with_suffix(".lock"))
    with lock:
        yield


def _load(env: str) -> list[dict[str, Any]]:
    dp = _documents_path(env)
    if not dp.exists():
        return []
    try:
        return json.loads(dp.read_text())
    except (json.JSONDecodeError, ValueError) as exc:
        backup_corrupt(dp)
        raise StorageError(f"Arquivo de documentos corrompido: {dp}") from exc


def _save(env: str, entries: list[dict[str, Any]]) -> None:
    dp = _documents_path(env)
    dp.parent.mkdir(parents=True, exist_ok=True)
    tmp = dp.with_suffix(".tmp")
    tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
    os.replace(tmp, dp)


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def create_document(doc: TaxDocument) -> TaxDocument:
    """Persist a new document row. Raises ValueError if the id already exists."""
    with _locked(doc.env):
        entries = _load(doc.env)
        if any(e.get("id") == doc.id for e in entries):
            raise ValueError(f"Documento já registrado: {doc.id}")
        doc.created_at = doc.created_at or _now()
        doc.updated_at = doc.created_at
        entries.append(doc.to_dict())
        _save(doc.env, entries)
    return doc


def save_document(doc: TaxDocument) -> TaxDocument:
    """Replace the stored row for *doc* (looked up by id)."""
    with _locked(doc.env):
        entries = _load(doc.env)
        idx = next((i for i, e in enumerate(entries) if e.get("id") == doc.id), None)
        if idx is None:
            raise KeyError(doc.id)
        doc.updated_at = _now()
        entries[idx] = doc.to_dict()
        _save(doc.env, entries)
    return doc


def get_document(doc_id: str, env: str) -> TaxDocument | None:
    with _locked(env):
        entries = _load(env)
    for e in entries:
        if e.get("id") == doc_id:
            return TaxDocument.from_dict(e)
    return None


def list_documents(
    env: str,
    *,
    status: str | None = None,
    doc_type: str | None = None,
    search: str | None = None,
) -> list[TaxDocument]:
    """Return documents for *env*, newest first, filtered by status, type and free text.

    *search* matches the number, access key or customer name.
    """
    with _locked(env):
        entries = _load(env)
    docs = [TaxDocument.from_dict(e) for e in entries]
    if status:
        docs = [d for d in docs if d.status == status]
    if doc_type:
        docs = [d for d in docs if d.doc_type == doc_type]
    if search:
        needle = search.strip().lower()
        docs = [
            d
            for d in docs
            if needle in str(d.number)
            or needle in (d.access_key or "")
            or needle in (d.customer_name or "").lower()
        ]
    docs.sort(key=lambda d: d.created_at or "", reverse=True)
    return docs


def find_for_sale(sale_id: str, doc_type: str, env: str) -> list[TaxDocument]:
    """Return every attempt recorded for a sale and document type, oldest first."""
    with _locked(env):
        entries = _load(env)
    docs = [
        TaxDocument.from_dict(e)
        for e in entries
        if e.get("sale_id") == sale_id and e.get("doc_type") == doc_type
    ]
    docs.sort(key=lambda d: d.created_at or "")
    return docs


def find_by_number(issuer_id: str, doc_type: str, series: int, number: int, env: str) -> TaxDocument | None:
    """Return the document holding *number* in a series, if one was recorded."""
    with _locked(env):
        entries = _load(env)
    for e in entries:
        if (
            e.get("issuer_cnpj") == issuer_id
            and e.get("doc_type") == doc_type
            and e.get("series") == series
            and e.get("number") == number
        ):
            return TaxDocument.from_dict(e)
    return None


def artifact_path(doc: TaxDocument) -> Path:
    """Return where the authorized XML of *doc* lives; sandbox files are prefixed."""
    prefix = "HOMOLOGACAO-" if doc.is_sandbox else ""
    return _config.get_issued_dir(doc.env) / f"{prefix}{doc.access_key}-procNFe.xml"


def save_artifact(doc: TaxDocument, xml_bytes: bytes) -> Path:
    """Write the authorized XML (atomic) and return its path."""
    path = artifact_path(doc)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_bytes(xml_bytes)
    os.replace(tmp, path)
    return path


def pending_path(doc: TaxDocument) -> Path:
    """Return where the signed XML of an in-flight document is kept."""
    return _config.get_env_dir(doc.env) / "pending" / f"{doc.id}.xml"


def save_pending(doc: TaxDocument, xml_bytes: bytes) -> Path:
    """Persist the signed XML before submission so it survives a crash."""
    path = pending_path(doc)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_bytes(xml_bytes)
    os.replace(tmp, path)
    return path


def load_pending(doc: TaxDocument) -> bytes | None:
    path = pending_path(doc)
    if not path.exists():
        return None
    return path.read_bytes()


def discard_pending(doc: TaxDocument) -> None:
    pending_path(doc).unlink(missing_ok=True)
