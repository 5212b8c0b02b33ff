"""Document number allocator.

One counter per (issuer, document type, series) and environment, stored in
``data/<env>/sequence.json``.  Every read-modify-write holds an exclusive
file lock, so concurrent emissions (threads or processes) never receive the
same number and numbers are handed out in strictly increasing order.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock

from emissor_nfe import config as _config
from emissor_nfe.models.document import NumberReservation
from emissor_nfe.services.exceptions import SeriesExhausted, StorageError
from emissor_nfe.utils.registry import backup_corrupt, find_by_number

logger = logging.getLogger(__name__)


def _sequence_file(env: str) -> Path:
    return _config.get_env_dir(env) / "sequence.json"


def _key(issuer_id: str, doc_type: str, series: int) -> str:
    return f"{issuer_id}/{doc_type}/{series}"


@contextmanager
def _locked(env: str) -> Iterator[None]:
    """Hold an exclusive file lock during sequence read-modify-write."""
    sf = _sequence_file(env)
    sf.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(sf.with_suffix(".lock"))
    with lock:
        yield


def _load(env: str) -> dict[str, Any]:
    sf = _sequence_file(env)
    if not sf.exists():
        return {}
    try:
        return json.loads(sf.read_text())
    except (json.JSONDecodeError, ValueError) as exc:
        backup_corrupt(sf)
        raise StorageError(f"Arquivo de numeração corrompido: {sf}") from exc


def _save(env: str, data: dict[str, Any]) -> None:
    sf = _sequence_file(env)
    sf.parent.mkdir(parents=True, exist_ok=True)
    tmp = sf.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
    os.replace(tmp, sf)


def _entry(data: dict[str, Any], key: str, start: int) -> dict[str, Any]:
    return data.setdefault(key, {"last": start - 1, "skipped": []})


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _recover_pending(entry: dict[str, Any], reservation_of: Callable[[int], NumberReservation]) -> None:
    """Settle reservations left behind by a process that died before recording its document.

    Only called under the lock, so no live reservation can be pending here.
    """
    for number in entry.pop("pending", []):
        r = reservation_of(number)
        if find_by_number(r.issuer_id, r.doc_type, r.series, number, r.env) is not None:
            continue
        _record_skip(entry, number, "reserva interrompida antes do registro do documento")
        logger.warning("Number %s/%d was reserved by an interrupted emission, recorded as skipped", r.key, number)


def reserve(
    issuer_id: str,
    doc_type: str,
    series: int,
    *,
    env: str,
    start: int = 1,
    record: Callable[[NumberReservation], object] | None = None,
) -> NumberReservation:
    """Atomically increment the counter and return the claimed number.

    *start* seeds the counter the first time the key is seen (the profile's
    ``proximo_numero``).  Raises SeriesExhausted past the authority maximum.

    *record* runs under the lock once the number is claimed, to persist the
    document that owns it.  The claim is written as pending first; if *record*
    fails the counter is rolled back, and if the process dies instead the next
    reservation turns the pending number into a skip.
    """
    key = _key(issuer_id, doc_type, series)

    def reservation_of(number: int) -> NumberReservation:
        return NumberReservation(issuer_id, doc_type, series, number, env)

    with _locked(env):
        data = _load(env)
        entry = _entry(data, key, start)
        _recover_pending(entry, reservation_of)
        number = entry["last"] + 1
        if number > _config.MAX_DOCUMENT_NUMBER:
            _save(env, data)
            raise SeriesExhausted(doc_type, series)
        entry["last"] = number
        reservation = reservation_of(number)
        if record is None:
            _save(env, data)
        else:
            entry["pending"] = [number]
            _save(env, data)
            try:
                record(reservation)
            except BaseException:
                entry["last"] = number - 1
                entry.pop("pending", None)
                _save(env, data)
                logger.warning("Recording %s number %d failed, counter rolled back", key, number)
                raise
            entry.pop("pending", None)
            _save(env, data)
    logger.info("Reserved %s number %d (%s)", key, number, env)
    return reservation


def _record_skip(entry: dict[str, Any], number: int, reason: str) -> None:
    if any(s["number"] == number for s in entry["skipped"]):
        return
    entry["skipped"].append(
        {"number": number, "reason": reason, "recorded_at": _now(), "voided": False}
    )


def release(reservation: NumberReservation, reason: str) -> bool:
    """Give back a number that never reached the authority.

    Compare-and-swap: the counter only rolls back when *reservation* is still
    the last number handed out for its key, so the same number is used next.
    Otherwise a later number is already in use and this one is recorded as
    skipped, pending a voiding request.  Returns True when rolled back.
    """
    with _locked(reservation.env):
        data = _load(reservation.env)
        entry = _entry(data, reservation.key, reservation.number)
        if entry["last"] == reservation.number:
            entry["last"] = reservation.number - 1
            rolled_back = True
        else:
            _record_skip(entry, reservation.number, reason)
            rolled_back = False
        _save(reservation.env, data)
    if rolled_back:
        logger.info("Released %s number %d", reservation.key, reservation.number)
    else:
        logger.warning(
            "Number %s/%d could not be rolled back, recorded as skipped",
            reservation.key,
            reservation.number,
        )
    return rolled_back


def skip(reservation: NumberReservation, reason: str) -> None:
    """Record a burned number that needs a voiding (inutilização) justification."""
    with _locked(reservation.env):
        data = _load(reservation.env)
        entry = _entry(data, reservation.key, reservation.number)
        _record_skip(entry, reservation.number, reason)
        _save(reservation.env, data)
    logger.warning("Number %s/%d skipped: %s", reservation.key, reservation.number, reason)


def current(issuer_id: str, doc_type: str, series: int, *, env: str, start: int = 1) -> int:
    """Return the last number handed out (``start - 1`` when unused)."""
    with _locked(env):
        entry = _load(env).get(_key(issuer_id, doc_type, series))
    return entry["last"] if entry else start - 1


def peek_next(issuer_id: str, doc_type: str, series: int, *, env: str, start: int = 1) -> int:
    """Return the next number without persisting it."""
    return current(issuer_id, doc_type, series, env=env, start=start) + 1


def set_next(issuer_id: str, doc_type: str, series: int, value: int, *, env: str) -> None:
    """Move the counter so that *value* is the next number handed out.

    Refuses values below 1 or at/below a number already handed out.
    """
    if value < 1:
        raise ValueError(f"Próximo número deve ser >= 1: {value}")
    if value > _config.MAX_DOCUMENT_NUMBER:
        raise SeriesExhausted(doc_type, series)
    key = _key(issuer_id, doc_type, series)
    with _locked(env):
        data = _load(env)
        entry = data.get(key)
        if entry is not None and value <= entry["last"]:
            raise ValueError(
                f"Número {value} já utilizado na série {series} (último: {entry['last']})"
            )
        if entry is None:
            entry = _entry(data, key, value)
        entry["last"] = value - 1
        _save(env, data)


def list_skipped(
    issuer_id: str,
    doc_type: str,
    series: int,
    *,
    env: str,
    pending_only: bool = True,
) -> list[dict[str, Any]]:
    """Return skipped numbers for a key, sorted, optionally only those not yet voided."""
    with _locked(env):
        entry = _load(env).get(_key(issuer_id, doc_type, series))
    if not entry:
        return []
    skipped = sorted(entry["skipped"], key=lambda s: s["number"])
    if pending_only:
        skipped = [s for s in skipped if not s.get("voided")]
    return skipped


def mark_voided(
    issuer_id: str,
    doc_type: str,
    series: int,
    numbers: list[int],
    *,
    env: str,
    protocol: str | None = None,
) -> None:
    """Flag skipped numbers as voided after the authority accepted the request."""
    wanted = set(numbers)
    with _locked(env):
        data = _load(env)
        entry = data.get(_key(issuer_id, doc_type, series))
        if not entry:
            return
        for s in entry["skipped"]:
            if s["number"] in wanted:
                s["voided"] = True
                s["voided_at"] = _now()
                if protocol:
                    s["protocol"] = protocol
        _save(env, data)
