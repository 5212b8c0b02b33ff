from __future__ import annotations

from dataclasses import dataclass, field

REGIMES = ("simples_nacional", "lucro_presumido", "lucro_real")

# CRT (Código de Regime Tributário) per regime
CRT = {"simples_nacional": "1", "lucro_presumido": "3", "lucro_real": "3"}

# serie is a 3-digit field in the access key and in <serie>
MAX_SERIES = 999

_IDENTITY_FIELDS = (
    "cnpj",
    "razao_social",
    "inscricao_estadual",
    "logradouro",
    "numero",
    "bairro",
    "cod_municipio",
    "municipio",
    "uf",
    "cep",
)


@dataclass(frozen=True)
class SeriesConfig:
    """Numbering lane for one document type: series plus the seed for its counter."""

    serie: int
    proximo_numero: int = 1

    def __post_init__(self) -> None:
        if not 1 <= self.serie <= MAX_SERIES:
            raise ValueError(f"Série deve estar entre 1 e {MAX_SERIES}: {self.serie}")
        if self.proximo_numero < 1:
            raise ValueError(f"Próximo número deve ser >= 1: {self.proximo_numero}")

    @classmethod
    def from_dict(cls, d: dict) -> SeriesConfig:
        return cls(
            serie=int(d.get("serie", 1)),
            proximo_numero=int(d.get("proximo_numero", 1)),
        )


@dataclass(frozen=True)
class IssuerFiscalProfile:
    """Issuer (emitente) fiscal profile for one environment.

    Identity and numbering come from issuer.yaml; certificate passphrase, CSC
    token and authority URL are resolved from the environment or keyring and
    never written back to YAML.
    """

    cnpj: str
    razao_social: str
    nome_fantasia: str
    inscricao_estadual: str
    logradouro: str
    numero: str
    bairro: str
    cod_municipio: str
    municipio: str
    uf: str
    cep: str
    telefone: str
    regime_tributario: str
    ambiente: str
    series: dict[str, SeriesConfig] = field(default_factory=dict)
    csc_id: str = ""
    aliquota_icms: str = "18.00"
    nfce_url_qrcode: str = ""
    nfce_url_chave: str = ""
    certificate_path: str = ""
    certificate_password: str = field(default="", repr=False)
    csc_token: str = field(default="", repr=False)
    authority_url: str = ""

    def __post_init__(self) -> None:
        if self.regime_tributario not in REGIMES:
            raise ValueError(f"Regime tributário inválido: '{self.regime_tributario}'")
        if self.ambiente not in ("homologacao", "producao"):
            raise ValueError(f"Ambiente inválido: '{self.ambiente}'")

    @property
    def crt(self) -> str:
        return CRT[self.regime_tributario]

    @property
    def is_sandbox(self) -> bool:
        return self.ambiente == "homologacao"

    def series_for(self, doc_type: str) -> SeriesConfig:
        """Return the configured series for *doc_type*, defaulting to series 1."""
        return self.series.get(doc_type) or SeriesConfig(serie=1)

    def missing_requirements(self) -> list[str]:
        """Return what is still missing for the profile to be complete.

        Complete means identity filled in, certificate and passphrase present,
        and the authority endpoint for the active environment configured.
        """
        missing = [name for name in _IDENTITY_FIELDS if not getattr(self, name)]
        if not self.certificate_path:
            missing.append("certificado")
        if not self.certificate_password:
            missing.append("senha_certificado")
        if not self.authority_url:
            missing.append(f"autorizador.{self.ambiente}")
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing_requirements()

    def missing_for(self, doc_type: str) -> list[str]:
        """Completeness check plus the NFC-e security code (CSC) requirement."""
        missing = self.missing_requirements()
        if doc_type == "nfce":
            if not self.csc_id:
                missing.append("csc_id")
            if not self.csc_token:
                missing.append("csc_token")
            if not self.nfce_url_qrcode:
                missing.append("nfce.url_qrcode")
            if not self.nfce_url_chave:
                missing.append("nfce.url_chave")
        return missing

    @classmethod
    def from_dict(
        cls,
        d: dict,
        *,
        env: str | None = None,
        certificate_path: str = "",
        certificate_password: str = "",
        csc_token: str = "",
        authority_url: str = "",
    ) -> IssuerFiscalProfile:
        """Create a profile from issuer.yaml data plus secrets resolved by the caller."""
        ambiente = env or d.get("ambiente", "homologacao")
        endereco = d.get("endereco") or {}
        nfce = d.get("nfce") or {}
        csc = d.get("csc_id", "")
        if isinstance(csc, dict):
            csc = csc.get(ambiente, "")
        series = {
            doc_type: SeriesConfig.from_dict(cfg)
            for doc_type, cfg in (d.get("series") or {}).items()
        }
        return cls(
            cnpj=_digits(d.get("cnpj", "")),
            razao_social=d.get("razao_social", ""),
            nome_fantasia=d.get("nome_fantasia", "") or d.get("razao_social", ""),
            inscricao_estadual=_digits(d.get("inscricao_estadual", "")),
            logradouro=endereco.get("logradouro", ""),
            numero=str(endereco.get("numero", "")),
            bairro=endereco.get("bairro", ""),
            cod_municipio=str(endereco.get("cod_municipio", "")),
            municipio=endereco.get("municipio", ""),
            uf=endereco.get("uf", ""),
            cep=_digits(endereco.get("cep", "")),
            telefone=_digits(d.get("telefone", "")),
            regime_tributario=d.get("regime_tributario", "simples_nacional"),
            ambiente=ambiente,
            series=series,
            csc_id=str(csc or ""),
            aliquota_icms=str(d.get("aliquota_icms", "18.00")),
            nfce_url_qrcode=nfce.get("url_qrcode", ""),
            nfce_url_chave=nfce.get("url_chave", ""),
            certificate_path=certificate_path,
            certificate_password=certificate_password,
            csc_token=csc_token,
            authority_url=authority_url,
        )


def _digits(value: object) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())
