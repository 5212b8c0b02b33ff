"""Emission orchestrator.

``emit`` runs one attempt for a sale: preconditions, payload, number
reservation, signing, submission and outcome recording.  Any failure after
the number was reserved is compensated (released or recorded as skipped)
before the error reaches the caller; outcomes that cannot be known are left
``submitted`` for ``reconcile``.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from signxml.exceptions import SignXMLException

from emissor_nfe import config as _config
from emissor_nfe.config import BRT
from emissor_nfe.models.document import (
    AUTHORIZED,
    CANCELLED,
    DOC_TYPES,
    PROCESSING,
    QUEUED,
    REJECTED,
    SUBMITTED,
    NumberReservation,
    TaxDocument,
)
from emissor_nfe.models.issuer import IssuerFiscalProfile
from emissor_nfe.models.sale import Customer, Sale
from emissor_nfe.services import transmission
from emissor_nfe.services.exceptions import (
    AuthorityRejected,
    CertificateError,
    ConfigurationIncomplete,
    DuplicateEmission,
    InvalidTransition,
    StorageError,
    TransientFailure,
    UnknownOutcome,
    ValidationFailed,
)
from emissor_nfe.services.fiscal_xml import build_nfe_proc
from emissor_nfe.services.payload_builder import NFePayload, build, render_xml
from emissor_nfe.services.state_machine import transition
from emissor_nfe.services.transmission import (
    AuthorityResponse,
    HttpSigningTransmissionClient,
    SigningTransmissionClient,
)
from emissor_nfe.services.xml_encoder import to_bytes
from emissor_nfe.utils import registry, sequence
from emissor_nfe.utils.access_key import generate_numeric_code
from emissor_nfe.utils.certificate import CertificateBundle, load_pfx
from emissor_nfe.utils.validators import validate_document_number, validate_justification

logger = logging.getLogger(__name__)

# A submitted document the authority does not know yet may still be in flight
RECONCILE_GRACE = timedelta(minutes=5)


def _now_brt() -> datetime:
    return datetime.now(BRT).replace(microsecond=0)


# --- loading ---


def resolve_env(env: str | None = None) -> str:
    """Return *env* or the ``ambiente`` configured in issuer.yaml."""
    if env:
        return env
    try:
        data = _config.load_issuer() or {}
    except FileNotFoundError:
        return "homologacao"
    return data.get("ambiente", "homologacao")


def load_profile(env: str | None = None) -> IssuerFiscalProfile:
    """Load issuer.yaml and resolve its secrets for *env*.

    Missing secrets leave the matching field empty; completeness is checked
    by the caller.
    """
    try:
        data = _config.load_issuer() or {}
    except FileNotFoundError:
        raise ConfigurationIncomplete(["issuer.yaml"]) from None
    env = env or data.get("ambiente", "homologacao")
    if env not in _config.ENVIRONMENTS:
        raise ValueError(f"Ambiente inválido: '{env}'")

    try:
        cert_path = _config.get_cert_path(data)
    except KeyError:
        cert_path = ""
    try:
        cert_password = _config.get_cert_password()
    except KeyError:
        cert_password = ""
    try:
        csc_token = _config.get_csc_token()
    except KeyError:
        csc_token = ""
    try:
        authority_url = _config.get_authority_url(env, data)
    except KeyError:
        authority_url = ""

    try:
        return IssuerFiscalProfile.from_dict(
            data,
            env=env,
            certificate_path=cert_path,
            certificate_password=cert_password,
            csc_token=csc_token,
            authority_url=authority_url,
        )
    except (ValueError, TypeError, AttributeError) as exc:
        raise ConfigurationIncomplete([f"issuer.yaml: {exc}"]) from exc


def load_sale(sale_id: str) -> Sale:
    try:
        data = _config.load_sale(sale_id)
    except FileNotFoundError:
        raise ValidationFailed([("venda", f"venda '{sale_id}' não encontrada")]) from None
    try:
        return Sale.from_dict(data or {})
    except (KeyError, ValueError, TypeError, AttributeError, ArithmeticError) as exc:
        raise ValidationFailed([("venda", f"dados inválidos: {exc}")]) from exc


def _load_certificate(profile: IssuerFiscalProfile) -> CertificateBundle:
    return load_pfx(profile.certificate_path, profile.certificate_password)


def _default_client(profile: IssuerFiscalProfile) -> SigningTransmissionClient:
    return HttpSigningTransmissionClient(profile.authority_url)


def _require_document(document_id: str, env: str) -> TaxDocument:
    doc = registry.get_document(document_id, env)
    if doc is None:
        raise KeyError(f"Documento não encontrado: {document_id}")
    return doc


def _reservation_of(doc: TaxDocument) -> NumberReservation:
    return NumberReservation(doc.issuer_cnpj, doc.doc_type, doc.series, doc.number, doc.env)


@contextmanager
def _storage_guard(action: str) -> Iterator[None]:
    try:
        yield
    except StorageError:
        logger.error("Storage failure during %s", action, exc_info=True)
        raise


# --- emission ---


def emit(
    sale_id: str,
    doc_type: str,
    customer: Customer | None = None,
    *,
    client: SigningTransmissionClient | None = None,
    env: str | None = None,
) -> TaxDocument:
    """Emit one NF-e/NFC-e for a finalized sale and return the recorded document.

    Raises ConfigurationIncomplete, ValidationFailed or CertificateError
    before any number is reserved; AuthorityRejected, TransientFailure or
    UnknownOutcome after, each carrying the persisted document.  A signing
    failure is a CertificateError carrying the cancelled document.
    """
    if doc_type not in DOC_TYPES:
        raise ValueError(f"Tipo de documento desconhecido: '{doc_type}'")

    profile = load_profile(env)
    env = profile.ambiente
    missing = profile.missing_for(doc_type)
    if missing:
        logger.warning("Emission of sale %s blocked, missing: %s", sale_id, ", ".join(missing))
        raise ConfigurationIncomplete(missing)

    logger.info("Emitting %s for sale %s (%s)", doc_type, sale_id, env)
    sale = load_sale(sale_id)
    certificate = _load_certificate(profile)
    client = client or _default_client(profile)

    with _storage_guard(f"emission of sale {sale_id}"):
        leftover = _check_previous_attempts(sale_id, doc_type, env, client, certificate)
        if isinstance(leftover, TaxDocument) and leftover.status != QUEUED:
            return leftover

        payload = build(sale, profile, doc_type, customer)

        if leftover is not None:
            doc = leftover
            reservation = _reservation_of(doc)
            logger.info("Resuming queued %s left by an interrupted emission", doc.label)
        else:
            doc, reservation = _reserve_and_record(sale, payload, profile, doc_type, env)

        doc = _sign_and_submit(doc, reservation, payload, client, certificate)

    if doc.status == REJECTED:
        raise AuthorityRejected(
            doc.authority_code or "",
            doc.authority_message or "",
            document=doc,
        )
    return doc


def _check_previous_attempts(
    sale_id: str,
    doc_type: str,
    env: str,
    client: SigningTransmissionClient,
    certificate: CertificateBundle,
) -> TaxDocument | None:
    """Apply idempotence rules to earlier attempts for the same sale.

    Returns a document to hand back (in flight or resumable ``queued``) or
    None when a fresh attempt should start.
    """
    attempts = registry.find_for_sale(sale_id, doc_type, env)
    for doc in attempts:
        if doc.status == AUTHORIZED:
            raise DuplicateEmission(doc)
    for doc in attempts:
        if doc.status in (SUBMITTED, PROCESSING):
            logger.info("Sale %s has %s in flight, reconciling", sale_id, doc.label)
            doc = _reconcile(doc, client, certificate)
            if doc.status in (SUBMITTED, PROCESSING, AUTHORIZED):
                return doc
    for doc in attempts:
        if doc.status == QUEUED:
            return doc
    return None


def _reserve_and_record(
    sale: Sale,
    payload: NFePayload,
    profile: IssuerFiscalProfile,
    doc_type: str,
    env: str,
) -> tuple[TaxDocument, NumberReservation]:
    lane = profile.series_for(doc_type)
    _apply_configured_next(profile, doc_type, env)
    customer = payload.customer
    created: list[TaxDocument] = []

    def _record(reservation: NumberReservation) -> None:
        doc = TaxDocument(
            sale_id=sale.id,
            doc_type=doc_type,
            series=reservation.series,
            number=reservation.number,
            env=env,
            issuer_cnpj=profile.cnpj,
            customer_document=customer.documento if customer else None,
            customer_name=customer.nome if customer else None,
            total=f"{payload.totals.v_nf:.2f}",
        )
        doc.history.append({"status": QUEUED, "at": _now_brt().isoformat()})
        created.append(registry.create_document(doc))

    reservation = sequence.reserve(
        profile.cnpj,
        doc_type,
        lane.serie,
        env=env,
        start=lane.proximo_numero,
        record=_record,
    )
    return created[0], reservation


def _apply_configured_next(profile: IssuerFiscalProfile, doc_type: str, env: str) -> None:
    """Honor a ``proximo_numero`` raised in issuer.yaml after the counter was seeded."""
    lane = profile.series_for(doc_type)
    upcoming = sequence.peek_next(profile.cnpj, doc_type, lane.serie, env=env, start=lane.proximo_numero)
    if lane.proximo_numero <= upcoming:
        return
    try:
        sequence.set_next(profile.cnpj, doc_type, lane.serie, lane.proximo_numero, env=env)
    except ValueError:
        # another emission already moved past it
        return
    logger.warning(
        "%s series %d jumps from %d to %d (proximo_numero in issuer.yaml)",
        doc_type,
        lane.serie,
        upcoming,
        lane.proximo_numero,
    )


def _compensate(doc: TaxDocument, reservation: NumberReservation, reason: str) -> None:
    """Cancel *doc* locally and give its number back (or record the skip)."""
    logger.warning("Compensating %s: %s", doc.label, reason)
    if doc.status in (QUEUED, SUBMITTED):
        transition(doc, CANCELLED, note=reason)
    sequence.release(reservation, reason)
    registry.discard_pending(doc)


def _sign_and_submit(
    doc: TaxDocument,
    reservation: NumberReservation,
    payload: NFePayload,
    client: SigningTransmissionClient,
    certificate: CertificateBundle,
) -> TaxDocument:
    emitted_at = _now_brt()
    numeric_code = generate_numeric_code(doc.number)
    try:
        nfe, access_key = render_xml(
            payload,
            number=doc.number,
            series=doc.series,
            env=doc.env,
            emitted_at=emitted_at,
            numeric_code=numeric_code,
        )
        try:
            signed = client.sign(nfe, certificate)
        except (ValueError, SignXMLException) as exc:
            raise CertificateError(f"Falha ao assinar {doc.label}: {exc}", document=doc) from exc
        registry.save_pending(doc, to_bytes(signed))
        transition(
            doc,
            SUBMITTED,
            submission_ref=access_key,
            numeric_code=numeric_code,
            emitted_at=emitted_at.isoformat(),
        )
    except Exception as exc:
        _compensate(doc, reservation, f"falha antes do envio: {exc}")
        raise

    logger.info("Submitting %s (%s)", doc.label, access_key)
    try:
        response = client.submit(signed, certificate, doc.env, doc.doc_type)
    except TransientFailure as exc:
        _compensate(doc, reservation, f"autorizador não recebeu o documento: {exc}")
        exc.document = doc
        raise
    except UnknownOutcome as exc:
        logger.warning("Outcome of %s unknown, left submitted for reconciliation", doc.label)
        exc.document = doc
        raise
    return _apply_response(doc, response)


# --- outcome recording ---


def _apply_response(doc: TaxDocument, response: AuthorityResponse) -> TaxDocument:
    """Record an authority answer on *doc* and persist it."""
    kind = response.kind
    if kind == transmission.AUTHORIZED:
        return _record_authorized(doc, response)

    if kind == transmission.REJECTED:
        transition(
            doc,
            REJECTED,
            note=f"rejeição {response.code}",
            authority_code=response.code,
            authority_message=response.message,
        )
        sequence.skip(_reservation_of(doc), f"rejeição {response.code}: {response.message}")
        registry.discard_pending(doc)
        logger.warning("%s rejected: %s %s", doc.label, response.code, response.message)
        return doc

    if kind == transmission.QUEUED:
        if doc.status == SUBMITTED:
            transition(
                doc,
                PROCESSING,
                note=f"recibo {response.receipt}" if response.receipt else None,
                receipt=response.receipt or doc.receipt,
                authority_code=response.code,
                authority_message=response.message,
            )
        elif response.receipt and response.receipt != doc.receipt:
            doc.receipt = response.receipt
            registry.save_document(doc)
        logger.info("%s queued by the authority (receipt %s)", doc.label, doc.receipt)
        return doc

    if kind == transmission.NOT_FOUND:
        return _record_not_found(doc, response)

    # Cancelled or voided at the authority
    transition(
        doc,
        CANCELLED,
        note=f"situação no autorizador: {response.code}",
        access_key=response.access_key or doc.access_key,
        protocol=response.protocol or doc.protocol,
        authority_code=response.code,
        authority_message=response.message,
    )
    registry.discard_pending(doc)
    return doc


def _record_authorized(doc: TaxDocument, response: AuthorityResponse) -> TaxDocument:
    doc.access_key = response.access_key or doc.submission_ref
    xml = response.xml
    if xml is None:
        signed = registry.load_pending(doc)
        if signed is None:
            raise StorageError(f"XML assinado de {doc.label} não encontrado")
        data = {**response.raw, "chNFe": doc.access_key}
        xml = build_nfe_proc(signed, data, doc.env)
    path = registry.save_artifact(doc, xml)
    transition(
        doc,
        AUTHORIZED,
        note=f"protocolo {response.protocol}",
        access_key=doc.access_key,
        protocol=response.protocol,
        authority_code=response.code,
        authority_message=response.message,
        authorized_at=response.received_at or _now_brt().isoformat(),
        xml_path=str(path),
    )
    registry.discard_pending(doc)
    logger.info("%s authorized (protocol %s)", doc.label, doc.protocol)
    return doc


def _record_not_found(doc: TaxDocument, response: AuthorityResponse) -> TaxDocument:
    """The authority has no record of the document.

    Within the grace window the submission may still be travelling, so the
    document is left as is.  After it the number is burned (skipped) rather
    than reused.
    """
    sent_at = datetime.fromisoformat(doc.emitted_at) if doc.emitted_at else None
    if sent_at is not None and _now_brt() - sent_at < RECONCILE_GRACE:
        logger.info("%s not found yet, still within the grace window", doc.label)
        return doc
    transition(
        doc,
        CANCELLED,
        note="documento não recebido pelo autorizador",
        authority_code=response.code,
        authority_message=response.message,
    )
    sequence.skip(_reservation_of(doc), "documento não recebido pelo autorizador")
    registry.discard_pending(doc)
    logger.warning("%s unknown to the authority, number recorded as skipped", doc.label)
    return doc


# --- reconciliation ---


def _reconcile(
    doc: TaxDocument,
    client: SigningTransmissionClient,
    certificate: CertificateBundle,
) -> TaxDocument:
    if not doc.receipt and not doc.submission_ref:
        raise UnknownOutcome(f"{doc.label} sem referência de envio para consulta", document=doc)
    if doc.receipt:
        response = client.poll(doc.receipt, certificate, doc.env)
        if response.kind == transmission.NOT_FOUND and doc.submission_ref:
            response = client.query(doc.submission_ref, certificate, doc.env)
    else:
        response = client.query(doc.submission_ref, certificate, doc.env)
    logger.info("Reconciled %s: cStat %s (%s)", doc.label, response.code, response.kind)
    return _apply_response(doc, response)


def reconcile(
    document_id: str,
    *,
    client: SigningTransmissionClient | None = None,
    env: str | None = None,
) -> TaxDocument:
    """Ask the authority for the state of a submitted/processing document.

    Never re-submits; documents in other states are returned unchanged.
    """
    profile = load_profile(env)
    with _storage_guard(f"reconciliation of {document_id}"):
        doc = _require_document(document_id, profile.ambiente)
        if doc.status not in (SUBMITTED, PROCESSING):
            return doc
        missing = profile.missing_requirements()
        if missing:
            raise ConfigurationIncomplete(missing)
        certificate = _load_certificate(profile)
        return _reconcile(doc, client or _default_client(profile), certificate)


def poll_processing(
    *,
    client: SigningTransmissionClient | None = None,
    env: str | None = None,
) -> list[TaxDocument]:
    """One cooperative pass over ``processing`` documents.

    A document whose query fails transiently stays ``processing`` for the
    next pass.  Returns the documents examined.
    """
    profile = load_profile(env)
    env = profile.ambiente
    with _storage_guard("polling"):
        pending = registry.list_documents(env, status=PROCESSING)
        if not pending:
            return []
        missing = profile.missing_requirements()
        if missing:
            raise ConfigurationIncomplete(missing)
        certificate = _load_certificate(profile)
        client = client or _default_client(profile)

        results = []
        for doc in pending:
            try:
                results.append(_reconcile(doc, client, certificate))
            except TransientFailure as exc:
                logger.warning("Polling %s failed, will retry: %s", doc.label, exc)
                results.append(doc)
    return results


# --- cancellation and voiding ---


def cancel(
    document_id: str,
    justification: str = "",
    *,
    client: SigningTransmissionClient | None = None,
    env: str | None = None,
) -> TaxDocument:
    """Cancel a document.

    ``queued`` documents are cancelled locally and their number released;
    ``authorized`` ones go through the authority's cancellation event.
    In-flight documents must be reconciled first.
    """
    profile = load_profile(env)
    env = profile.ambiente
    with _storage_guard(f"cancellation of {document_id}"):
        doc = _require_document(document_id, env)

        if doc.status == QUEUED:
            _compensate(doc, _reservation_of(doc), "cancelada antes do envio")
            return doc
        if doc.status != AUTHORIZED:
            raise InvalidTransition(doc.status, CANCELLED)

        try:
            justification = validate_justification(justification)
        except ValueError as exc:
            raise ValidationFailed([("justificativa", str(exc))]) from exc
        missing = profile.missing_requirements()
        if missing:
            raise ConfigurationIncomplete(missing)
        certificate = _load_certificate(profile)
        client = client or _default_client(profile)

        logger.info("Requesting cancellation of %s", doc.label)
        response = client.cancel(
            doc.access_key or "",
            doc.protocol or "",
            justification,
            certificate,
            env,
            cnpj=profile.cnpj,
        )
        if response.kind != transmission.CANCELLED:
            raise AuthorityRejected(response.code, response.message, document=doc, response=response.raw)
        transition(
            doc,
            CANCELLED,
            note=f"cancelamento protocolo {response.protocol}: {justification}",
            authority_code=response.code,
            authority_message=response.message,
        )
    return doc


def _ranges(numbers: list[int]) -> list[tuple[int, int]]:
    """Collapse sorted numbers into contiguous (first, last) ranges."""
    ranges: list[tuple[int, int]] = []
    for n in sorted(set(numbers)):
        if ranges and n == ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], n)
        else:
            ranges.append((n, n))
    return ranges


def set_next_number(
    doc_type: str,
    value: int,
    *,
    series: int | None = None,
    env: str | None = None,
) -> int:
    """Make *value* the next number handed out for a document type.

    Numbers left unused below *value* are not recorded as skipped; moving the
    counter back onto numbers already handed out is refused.
    """
    if doc_type not in DOC_TYPES:
        raise ValueError(f"Tipo de documento desconhecido: '{doc_type}'")
    profile = load_profile(env)
    env = profile.ambiente
    series = series or profile.series_for(doc_type).serie
    try:
        value = int(validate_document_number(str(value)))
        with _storage_guard("numbering change"):
            sequence.set_next(profile.cnpj, doc_type, series, value, env=env)
    except ValueError as exc:
        raise ValidationFailed([("proximo_numero", str(exc))]) from exc
    logger.info("Next %s number in series %d set to %d (%s)", doc_type, series, value, env)
    return value


def void_skipped(
    doc_type: str,
    justification: str,
    *,
    series: int | None = None,
    client: SigningTransmissionClient | None = None,
    env: str | None = None,
) -> list[tuple[int, int]]:
    """Request voiding (inutilização) of every pending skipped number.

    Returns the voided (first, last) ranges.
    """
    profile = load_profile(env)
    env = profile.ambiente
    series = series or profile.series_for(doc_type).serie
    try:
        justification = validate_justification(justification)
    except ValueError as exc:
        raise ValidationFailed([("justificativa", str(exc))]) from exc

    with _storage_guard("voiding"):
        skipped = sequence.list_skipped(profile.cnpj, doc_type, series, env=env)
        if not skipped:
            return []
        missing = profile.missing_requirements()
        if missing:
            raise ConfigurationIncomplete(missing)
        certificate = _load_certificate(profile)
        client = client or _default_client(profile)

        voided = []
        for first, last in _ranges([s["number"] for s in skipped]):
            logger.info("Voiding %s series %d numbers %d-%d", doc_type, series, first, last)
            response = client.void(
                doc_type,
                series,
                first,
                last,
                justification,
                certificate,
                env,
                cnpj=profile.cnpj,
                uf=profile.uf,
            )
            if response.kind != transmission.VOIDED:
                raise AuthorityRejected(response.code, response.message, response=response.raw)
            sequence.mark_voided(
                profile.cnpj,
                doc_type,
                series,
                list(range(first, last + 1)),
                env=env,
                protocol=response.protocol,
            )
            voided.append((first, last))
    return voided


# --- artifacts ---


def export_artifact(document_id: str, dest: str | Path, *, env: str | None = None) -> Path:
    """Copy the authorized XML of a document to *dest* (file or directory)."""
    env = resolve_env(env)
    doc = _require_document(document_id, env)
    if not doc.xml_path or not Path(doc.xml_path).exists():
        raise FileNotFoundError(f"{doc.label} não possui XML autorizado")
    source = Path(doc.xml_path)
    target = Path(dest)
    if target.is_dir():
        target = target / source.name
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)
    logger.info("Exported %s to %s", doc.label, target)
    return target
