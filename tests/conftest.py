from __future__ import annotations

import copy
import threading
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from emissor_nfe.config import NFE_NS
from emissor_nfe.models.issuer import IssuerFiscalProfile
from emissor_nfe.models.sale import Sale
from emissor_nfe.services import transmission
from emissor_nfe.services.transmission import AuthorityResponse

CNPJ = "11222333000181"
CPF = "52998224725"
AUTHORITY_URL = "https://autorizador.test/nfe/v1"


NS = {"n": NFE_NS}


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an XML element by xpath (prefix ``n:`` for the NF-e namespace)."""
    found = el.find(xpath, namespaces=NS)
    return found.text if found is not None else None


# --- Issuer fixtures ---


@pytest.fixture
def issuer_dict() -> dict:
    return {
        "cnpj": CNPJ,
        "razao_social": "LOJA EXEMPLO LTDA",
        "nome_fantasia": "Loja Exemplo",
        "inscricao_estadual": "123456789",
        "telefone": "11999990000",
        "regime_tributario": "simples_nacional",
        "ambiente": "homologacao",
        "endereco": {
            "logradouro": "RUA DAS FLORES",
            "numero": "100",
            "bairro": "CENTRO",
            "cod_municipio": "3550308",
            "municipio": "SAO PAULO",
            "uf": "SP",
            "cep": "01001000",
        },
        "series": {
            "nfe": {"serie": 1, "proximo_numero": 1},
            "nfce": {"serie": 2, "proximo_numero": 1},
        },
        "csc_id": {"homologacao": "000001", "producao": ""},
        "nfce": {
            "url_qrcode": "https://nfce.test/qrcode",
            "url_chave": "https://nfce.test/consulta",
        },
        "autorizador": {"homologacao": AUTHORITY_URL},
    }


@pytest.fixture
def profile(issuer_dict: dict) -> IssuerFiscalProfile:
    return IssuerFiscalProfile.from_dict(
        issuer_dict,
        env="homologacao",
        certificate_path="/fake.pfx",
        certificate_password="fakepass",
        csc_token="CSC-TOKEN-123",
        authority_url=AUTHORITY_URL,
    )


# --- Sale fixtures ---


def make_sale_dict(sale_id: str = "venda-1", **overrides) -> dict:
    data = {
        "id": sale_id,
        "numero": 1,
        "forma_pagamento": "pix",
        "valor_total": "59.80",
        "desconto": "0.00",
        "valor_final": "59.80",
        "cliente": {
            "cpf_cnpj": CPF,
            "nome": "MARIA DA SILVA",
            "email": "maria@example.com",
            "endereco": {
                "logradouro": "AV PAULISTA",
                "numero": "1000",
                "bairro": "BELA VISTA",
                "cod_municipio": "3550308",
                "municipio": "SAO PAULO",
                "uf": "SP",
                "cep": "01310100",
            },
        },
        "itens": [
            {
                "produto": {
                    "codigo": "P001",
                    "nome": "CAMISETA ALGODAO",
                    "ncm": "61091000",
                    "unidade_comercial": "UN",
                    "cfop_padrao": "5102",
                },
                "quantidade": "2",
                "preco_unitario": "29.90",
                "subtotal": "59.80",
            }
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture
def sale_dict() -> dict:
    return make_sale_dict()


@pytest.fixture
def sale(sale_dict: dict) -> Sale:
    return Sale.from_dict(sale_dict)


# --- Certificate / PFX fixtures ---


def _make_key_and_cert(not_before: datetime, not_after: datetime):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, f"LOJA EXEMPLO LTDA:{CNPJ}"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def test_key_and_cert():
    now = datetime.now(UTC)
    return _make_key_and_cert(now - timedelta(days=1), now + timedelta(days=365))


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


def write_pfx(path, key, cert, password: str = "testpass") -> str:
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )
    path.write_bytes(pfx_data)
    return str(path)


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    return write_pfx(tmp_path / "test.pfx", key, cert), "testpass"


@pytest.fixture
def expired_pfx(tmp_path):
    now = datetime.now(UTC)
    key, cert = _make_key_and_cert(now - timedelta(days=400), now - timedelta(days=30))
    return write_pfx(tmp_path / "expired.pfx", key, cert), "testpass"


@pytest.fixture
def certificate(test_pfx):
    from emissor_nfe.utils.certificate import load_pfx

    return load_pfx(*test_pfx)


# --- Authority responses ---


def authorized(access_key: str | None = None, protocol: str = "135260000000001") -> AuthorityResponse:
    return AuthorityResponse(
        kind=transmission.AUTHORIZED,
        code="100",
        message="Autorizado o uso da NF-e",
        access_key=access_key,
        protocol=protocol,
        received_at="2026-10-19T10:00:00-03:00",
        raw={"cStat": "100", "xMotivo": "Autorizado o uso da NF-e", "nProt": protocol},
    )


def rejected(code: str = "594", message: str = "Rejeição: O número de item da nota é inválido") -> AuthorityResponse:
    return AuthorityResponse(
        kind=transmission.REJECTED,
        code=code,
        message=message,
        raw={"cStat": code, "xMotivo": message},
    )


def queued(receipt: str = "351000000000001") -> AuthorityResponse:
    return AuthorityResponse(
        kind=transmission.QUEUED,
        code="103",
        message="Lote recebido com sucesso",
        receipt=receipt,
        raw={"cStat": "103", "xMotivo": "Lote recebido com sucesso", "nRec": receipt},
    )


def not_found() -> AuthorityResponse:
    return AuthorityResponse(
        kind=transmission.NOT_FOUND,
        code="217",
        message="Rejeição: NF-e não consta na base de dados da SEFAZ",
        raw={"cStat": "217"},
    )


def event_response(kind: str, code: str, protocol: str = "135260000000999") -> AuthorityResponse:
    return AuthorityResponse(
        kind=kind,
        code=code,
        message="Evento registrado" if kind == transmission.CANCELLED else "Inutilização homologada",
        protocol=protocol,
        raw={"cStat": code},
    )


def key_of(nfe: etree._Element) -> str:
    inf = nfe.find(f"{{{NFE_NS}}}infNFe")
    return inf.get("Id")[3:]


class FakeTransmissionClient:
    """Scripted stand-in for the authority.

    Each queue holds responses, exceptions to raise, or callables taking the
    call arguments.  An empty submit queue authorizes whatever is sent.
    """

    def __init__(self, *, submit=None, poll=None, query=None, cancel=None, void=None):
        self.queues = {
            "submit": list(submit or []),
            "poll": list(poll or []),
            "query": list(query or []),
            "cancel": list(cancel or []),
            "void": list(void or []),
        }
        self.calls: list[tuple[str, tuple]] = []
        self.submitted: list[str] = []
        self._lock = threading.Lock()
        self._protocol = 135260000000000

    def _next(self, name: str, *args):
        with self._lock:
            self.calls.append((name, args))
            item = self.queues[name].pop(0) if self.queues[name] else None
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(*args)
        return item

    def sign(self, nfe, certificate):
        return nfe

    def submit(self, signed_nfe, certificate, env, doc_type):
        key = key_of(signed_nfe)
        with self._lock:
            self.submitted.append(key)
        result = self._next("submit", signed_nfe, env, doc_type)
        if result is None:
            with self._lock:
                self._protocol += 1
                protocol = str(self._protocol)
            result = authorized(key, protocol)
        return result

    def poll(self, receipt, certificate, env):
        return self._next("poll", receipt, env) or not_found()

    def query(self, access_key, certificate, env):
        return self._next("query", access_key, env) or not_found()

    def cancel(self, access_key, protocol, justification, certificate, env, *, cnpj):
        return self._next("cancel", access_key, protocol, justification, env) or event_response(
            transmission.CANCELLED, "135"
        )

    def void(self, doc_type, series, first, last, justification, certificate, env, *, cnpj, uf):
        return self._next("void", doc_type, series, first, last, justification, env) or event_response(
            transmission.VOIDED, "102"
        )

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)


@pytest.fixture
def fake_client() -> FakeTransmissionClient:
    return FakeTransmissionClient()


# --- On-disk workspace ---


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the data directory at tmp_path/data."""
    d = tmp_path / "data"
    d.mkdir()
    monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: d)
    return d


@pytest.fixture
def workspace(tmp_path, monkeypatch, data_dir, issuer_dict, test_pfx):
    """Config dir with issuer.yaml, two sales, and secrets in the environment."""
    cfg = tmp_path / "config"
    cfg.mkdir()
    (cfg / "issuer.yaml").write_text(yaml.dump(issuer_dict, allow_unicode=True))
    monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: cfg)
    monkeypatch.setattr("emissor_nfe.config._get_keyring_secret", lambda username: None)

    pfx_path, password = test_pfx
    monkeypatch.setenv("CERT_PFX_PATH", pfx_path)
    monkeypatch.setenv("CERT_PFX_PASSWORD", password)
    monkeypatch.setenv("NFCE_CSC_TOKEN", "CSC-TOKEN-123")
    monkeypatch.delenv("EMISSOR_AUTORIZADOR_URL_HOMOLOGACAO", raising=False)
    monkeypatch.delenv("EMISSOR_AUTORIZADOR_URL_PRODUCAO", raising=False)

    sales = data_dir / "vendas"
    sales.mkdir()

    def add_sale(sale_id: str, **overrides) -> dict:
        data = make_sale_dict(sale_id, **overrides)
        (sales / f"{sale_id}.yaml").write_text(yaml.dump(data, allow_unicode=True))
        return data

    add_sale("venda-1")
    add_sale("venda-2")
    return SimpleNamespace(
        config_dir=cfg,
        data_dir=data_dir,
        issuer=copy.deepcopy(issuer_dict),
        add_sale=add_sale,
    )
