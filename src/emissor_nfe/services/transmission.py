"""Signing & transmission client for the tax authority.

Wire contract: JSON over mutual TLS.  Signed XML travels gzip+base64 encoded
inside a JSON envelope; the authority answers with ``cStat``/``xMotivo`` plus
the fields relevant to each operation.

    POST {base}/nfe                  {"nfeXmlGZipB64", "modelo", "tpAmb"}
    GET  {base}/nfe/recibos/{nRec}
    GET  {base}/nfe/{chave}
    POST {base}/nfe/{chave}/eventos  {"eventoXmlGZipB64"}
    POST {base}/inutilizacao         {"inutXmlGZipB64"}
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import requests.exceptions
from lxml import etree
from requests_pkcs12 import get, post
from urllib3.exceptions import MaxRetryError, NewConnectionError

from emissor_nfe.config import BRT, READ_TIMEOUT, SUBMIT_TIMEOUT, TP_AMB
from emissor_nfe.models.document import MODELO
from emissor_nfe.services.exceptions import TransientFailure, UnknownOutcome
from emissor_nfe.services.fiscal_xml import build_cancel_event, build_void_request
from emissor_nfe.services.http_retry import (
    AUTHORITY_READ,
    AUTHORITY_SUBMIT,
    ConnectFailure,
    RetryableHTTPError,
    retry_call,
)
from emissor_nfe.services.xml_encoder import decode_xml, encode_xml
from emissor_nfe.services.xml_signer import sign_element, sign_nfe
from emissor_nfe.utils.certificate import CertificateBundle

logger = logging.getLogger(__name__)

AUTHORIZED = "authorized"
QUEUED = "queued"
REJECTED = "rejected"
NOT_FOUND = "not_found"
CANCELLED = "cancelled"
VOIDED = "voided"

AUTHORIZED_CODES = frozenset({"100", "150"})
QUEUED_CODES = frozenset({"103", "105"})
NOT_FOUND_CODES = frozenset({"217"})
CANCELLED_CODES = frozenset({"101", "135", "155"})
VOIDED_CODES = frozenset({"102"})


@dataclass(frozen=True)
class AuthorityResponse:
    """Normalized authority answer; ``code``/``message`` are cStat/xMotivo verbatim."""

    kind: str
    code: str
    message: str
    access_key: str | None = None
    protocol: str | None = None
    receipt: str | None = None
    received_at: str | None = None
    xml: bytes | None = field(default=None, repr=False)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


class SigningTransmissionClient(Protocol):
    def sign(self, nfe: etree._Element, certificate: CertificateBundle) -> etree._Element: ...

    def submit(
        self,
        signed_nfe: etree._Element,
        certificate: CertificateBundle,
        env: str,
        doc_type: str,
    ) -> AuthorityResponse: ...

    def poll(self, receipt: str, certificate: CertificateBundle, env: str) -> AuthorityResponse: ...

    def query(self, access_key: str, certificate: CertificateBundle, env: str) -> AuthorityResponse: ...

    def cancel(
        self,
        access_key: str,
        protocol: str,
        justification: str,
        certificate: CertificateBundle,
        env: str,
        *,
        cnpj: str,
    ) -> AuthorityResponse: ...

    def void(
        self,
        doc_type: str,
        series: int,
        first: int,
        last: int,
        justification: str,
        certificate: CertificateBundle,
        env: str,
        *,
        cnpj: str,
        uf: str,
    ) -> AuthorityResponse: ...


def _extract_reason(data: dict) -> str:
    """Best-effort extraction of a human-readable reason."""
    for key in ("xMotivo", "mensagem", "message"):
        val = data.get(key)
        if val:
            return str(val)
    erros = data.get("erros")
    if erros:
        if isinstance(erros, list):
            return "; ".join(str(e) for e in erros)
        return str(erros)
    return json.dumps(data, ensure_ascii=False)[:200]


def classify(data: dict) -> AuthorityResponse:
    """Map an authority payload to one of the response kinds by its cStat."""
    code = str(data.get("cStat", "")).strip()
    if code in AUTHORIZED_CODES:
        kind = AUTHORIZED
    elif code in QUEUED_CODES:
        kind = QUEUED
    elif code in NOT_FOUND_CODES:
        kind = NOT_FOUND
    elif code in CANCELLED_CODES:
        kind = CANCELLED
    elif code in VOIDED_CODES:
        kind = VOIDED
    else:
        kind = REJECTED

    xml = None
    proc_b64 = data.get("nfeProcXmlGZipB64")
    if proc_b64:
        xml = decode_xml(proc_b64)

    return AuthorityResponse(
        kind=kind,
        code=code,
        message=_extract_reason(data),
        access_key=data.get("chNFe"),
        protocol=str(data["nProt"]) if data.get("nProt") else None,
        receipt=str(data["nRec"]) if data.get("nRec") else None,
        received_at=data.get("dhRecbto"),
        xml=xml,
        raw=data,
    )


def _never_connected(exc: requests.exceptions.ConnectionError) -> bool:
    """True when the failure happened while opening the connection."""
    reason = exc.args[0] if exc.args else None
    if isinstance(reason, MaxRetryError):
        reason = reason.reason
    return isinstance(reason, NewConnectionError)


class HttpSigningTransmissionClient:
    """Real client: signxml signatures, requests_pkcs12 mutual TLS, bounded retries."""

    def __init__(
        self,
        base_url: str,
        *,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep_func

    # --- signing ---

    def sign(self, nfe: etree._Element, certificate: CertificateBundle) -> etree._Element:
        return sign_nfe(nfe, certificate.key_pem, certificate.cert_pem)

    # --- transport ---

    def _send(self, url: str, body: dict, certificate: CertificateBundle, action: str) -> dict:
        """POST a document-carrying request.

        Only failures that prove nothing was delivered are retried; they end
        as TransientFailure.  Anything after the request left (read timeout,
        dropped connection, 5xx, unparsable body) is UnknownOutcome.
        """

        def _do_post():
            try:
                resp = post(
                    url,
                    json=body,
                    pkcs12_filename=certificate.pfx_path,
                    pkcs12_password=certificate.password,
                    timeout=SUBMIT_TIMEOUT,
                )
            except requests.exceptions.ConnectTimeout as exc:
                raise ConnectFailure(str(exc)) from exc
            except requests.exceptions.SSLError:
                raise
            except requests.exceptions.ConnectionError as exc:
                if _never_connected(exc):
                    raise ConnectFailure(str(exc)) from exc
                raise
            if resp.status_code in AUTHORITY_SUBMIT.retryable_status_codes:
                raise RetryableHTTPError(
                    f"Autorizador {action} ({resp.status_code})", status_code=resp.status_code
                )
            return resp

        try:
            resp = retry_call(_do_post, AUTHORITY_SUBMIT, sleep_func=self._sleep)
        except (ConnectFailure, RetryableHTTPError) as exc:
            raise TransientFailure(f"Autorizador indisponível ({action}): {exc}") from exc
        except requests.exceptions.SSLError as exc:
            raise TransientFailure(f"Falha na conexão TLS ({action}): {exc}") from exc
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            raise UnknownOutcome(f"Sem resposta do autorizador após envio ({action}): {exc}") from exc

        if resp.status_code >= 500:
            body_text = resp.text[:500] if resp.text else ""
            raise UnknownOutcome(f"Erro do autorizador {action} ({resp.status_code}): {body_text}")
        try:
            data = resp.json()
        except ValueError as exc:
            if not resp.ok:
                body_text = resp.text[:500] if resp.text else ""
                return {"cStat": f"HTTP{resp.status_code}", "xMotivo": body_text}
            raise UnknownOutcome(f"Resposta ilegível do autorizador ({action})") from exc
        if not resp.ok and "cStat" not in data:
            data = {**data, "cStat": f"HTTP{resp.status_code}", "xMotivo": _extract_reason(data)}
        return data

    def _fetch(self, url: str, certificate: CertificateBundle, action: str) -> dict:
        """GET a status resource with the read policy; failures end as TransientFailure."""

        def _do_get():
            resp = get(
                url,
                pkcs12_filename=certificate.pfx_path,
                pkcs12_password=certificate.password,
                timeout=READ_TIMEOUT,
            )
            if resp.status_code in AUTHORITY_READ.retryable_status_codes:
                raise RetryableHTTPError(
                    f"Autorizador {action} ({resp.status_code})", status_code=resp.status_code
                )
            return resp

        try:
            resp = retry_call(_do_get, AUTHORITY_READ, sleep_func=self._sleep)
        except requests.exceptions.RequestException as exc:
            raise TransientFailure(f"Falha ao consultar autorizador ({action}): {exc}") from exc

        if resp.status_code == 404:
            return {"cStat": "217", "xMotivo": "Documento não consta na base do autorizador"}
        if not resp.ok:
            body_text = resp.text[:500] if resp.text else ""
            raise TransientFailure(f"Erro do autorizador {action} ({resp.status_code}): {body_text}")
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientFailure(f"Resposta ilegível do autorizador ({action})") from exc

    # --- operations ---

    def submit(
        self,
        signed_nfe: etree._Element,
        certificate: CertificateBundle,
        env: str,
        doc_type: str,
    ) -> AuthorityResponse:
        body = {
            "nfeXmlGZipB64": encode_xml(signed_nfe),
            "modelo": MODELO[doc_type],
            "tpAmb": TP_AMB[env],
        }
        data = self._send(f"{self.base_url}/nfe", body, certificate, "envio")
        response = classify(data)
        logger.info("Submission answered cStat %s (%s)", response.code, response.kind)
        return response

    def poll(self, receipt: str, certificate: CertificateBundle, env: str) -> AuthorityResponse:
        data = self._fetch(f"{self.base_url}/nfe/recibos/{receipt}", certificate, "recibo")
        return classify(data)

    def query(self, access_key: str, certificate: CertificateBundle, env: str) -> AuthorityResponse:
        data = self._fetch(f"{self.base_url}/nfe/{access_key}", certificate, "consulta")
        return classify(data)

    def cancel(
        self,
        access_key: str,
        protocol: str,
        justification: str,
        certificate: CertificateBundle,
        env: str,
        *,
        cnpj: str,
    ) -> AuthorityResponse:
        evento = build_cancel_event(
            access_key, protocol, justification, cnpj, env, datetime.now(BRT)
        )
        signed = sign_element(evento, "infEvento", certificate.key_pem, certificate.cert_pem)
        body = {"eventoXmlGZipB64": encode_xml(signed)}
        data = self._send(f"{self.base_url}/nfe/{access_key}/eventos", body, certificate, "cancelamento")
        return classify(data)

    def void(
        self,
        doc_type: str,
        series: int,
        first: int,
        last: int,
        justification: str,
        certificate: CertificateBundle,
        env: str,
        *,
        cnpj: str,
        uf: str,
    ) -> AuthorityResponse:
        inut = build_void_request(
            doc_type, series, first, last, justification, cnpj, uf, env, datetime.now(BRT).year
        )
        signed = sign_element(inut, "infInut", certificate.key_pem, certificate.cert_pem)
        body = {"inutXmlGZipB64": encode_xml(signed)}
        data = self._send(f"{self.base_url}/inutilizacao", body, certificate, "inutilização")
        return classify(data)
