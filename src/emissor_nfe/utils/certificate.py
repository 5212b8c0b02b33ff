from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509 import Certificate

from emissor_nfe.services.exceptions import CertificateError


@dataclass(frozen=True)
class CertificateBundle:
    """Decrypted A1 certificate, kept in memory for the duration of one call."""

    pfx_path: str
    password: str = field(repr=False)
    key_pem: bytes = field(repr=False)
    cert_pem: bytes
    chain: list[Certificate]
    subject: str
    not_before: datetime
    not_after: datetime


def _read_pfx(pfx_path: str, password: str):
    try:
        pfx_data = Path(pfx_path).read_bytes()
    except OSError as exc:
        raise CertificateError(f"Certificado não encontrado: {pfx_path}") from exc
    try:
        return pkcs12.load_key_and_certificates(pfx_data, password.encode())
    except ValueError as exc:
        raise CertificateError("Senha do certificado incorreta ou arquivo inválido") from exc


def load_pfx(pfx_path: str, password: str, *, now: datetime | None = None) -> CertificateBundle:
    """Open a .pfx/.p12 archive and return its key and certificate in PEM.

    Raises CertificateError on a missing file, wrong passphrase, missing key
    or an expired (or not yet valid) certificate.
    """
    private_key, certificate, chain = _read_pfx(pfx_path, password)

    if private_key is None or certificate is None:
        raise CertificateError("Certificado ou chave privada ausente no arquivo .pfx")

    now = now or datetime.now(UTC)
    not_before = certificate.not_valid_before_utc
    not_after = certificate.not_valid_after_utc
    if now > not_after:
        raise CertificateError(f"Certificado expirado em {not_after:%d/%m/%Y}")
    if now < not_before:
        raise CertificateError(f"Certificado válido somente a partir de {not_before:%d/%m/%Y}")

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    return CertificateBundle(
        pfx_path=pfx_path,
        password=password,
        key_pem=key_pem,
        cert_pem=certificate.public_bytes(Encoding.PEM),
        chain=list(chain) if chain else [],
        subject=certificate.subject.rfc4514_string(),
        not_before=not_before,
        not_after=not_after,
    )


def validate_certificate(pfx_path: str, password: str) -> dict:
    """Return certificate info without rejecting expired certificates."""
    _, certificate, _ = _read_pfx(pfx_path, password)

    if certificate is None:
        raise CertificateError("Nenhum certificado encontrado no arquivo .pfx")

    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
    }
