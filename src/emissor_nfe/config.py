from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "emissor-nfe"
KEYRING_SERVICE = "emissor-nfe"
KEYRING_CERT_USERNAME = "cert-pfx-password"
KEYRING_CSC_USERNAME = "nfce-csc-token"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (shell env var, dev
    layout, an existing platformdirs directory).
    """
    from_env = os.environ.get("EMISSOR_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/emissor_nfe/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_DATA_DIR", "data", kind="data")


NFE_NS = "http://www.portalfiscal.inf.br/nfe"

BRT = timezone(timedelta(hours=-3))

ENVIRONMENTS = ("homologacao", "producao")

TP_AMB = {"homologacao": "2", "producao": "1"}

AUTHORITY_URL_VARS = {
    "homologacao": "EMISSOR_AUTORIZADOR_URL_HOMOLOGACAO",
    "producao": "EMISSOR_AUTORIZADOR_URL_PRODUCAO",
}

SUBMIT_TIMEOUT = 60
READ_TIMEOUT = 30

# Authority's upper bound for nNF within a series
MAX_DOCUMENT_NUMBER = 999_999_999


# --- Keyring helpers ---


def _get_keyring_secret(username: str) -> str | None:
    """Read a secret from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, username)
    except Exception:
        return None


def _set_keyring_secret(username: str, secret: str) -> bool:
    """Store a secret in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, username, secret)
        return True
    except Exception:
        return False


def _delete_keyring_secret(username: str) -> bool:
    """Remove a secret from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, username)
        return True
    except Exception:
        return False


# --- Secrets ---


def get_cert_path(issuer: dict | None = None) -> str:
    """Return the .pfx path from CERT_PFX_PATH or the issuer's ``certificado`` entry.

    Raises KeyError if neither is set.
    """
    path = os.environ.get("CERT_PFX_PATH")
    if path:
        return path
    if issuer and issuer.get("certificado"):
        return str(issuer["certificado"])
    raise KeyError("CERT_PFX_PATH")


def get_cert_password() -> str:
    """Return the certificate password.

    Priority: 1) CERT_PFX_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has the password.
    """
    pwd = os.environ.get("CERT_PFX_PASSWORD")
    if pwd is not None:
        return pwd
    pwd = _get_keyring_secret(KEYRING_CERT_USERNAME)
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


def get_csc_token() -> str:
    """Return the NFC-e CSC token from NFCE_CSC_TOKEN or the OS keyring.

    Raises KeyError if neither source has it.
    """
    token = os.environ.get("NFCE_CSC_TOKEN")
    if token:
        return token
    token = _get_keyring_secret(KEYRING_CSC_USERNAME)
    if token:
        return token
    raise KeyError("NFCE_CSC_TOKEN")


def get_authority_url(env: str, issuer: dict | None = None) -> str:
    """Return the authority base URL for *env*.

    Priority: 1) EMISSOR_AUTORIZADOR_URL_<ENV>, 2) issuer.yaml ``autorizador`` block.
    Raises KeyError when no URL is configured.
    """
    url = os.environ.get(AUTHORITY_URL_VARS[env])
    if url:
        return url.rstrip("/")
    block = (issuer or {}).get("autorizador") or {}
    if block.get(env):
        return str(block[env]).rstrip("/")
    raise KeyError(AUTHORITY_URL_VARS[env])


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text())


def load_issuer() -> dict:
    """Load the issuer fiscal profile from config/issuer.yaml."""
    return load_yaml(get_config_dir() / "issuer.yaml")


def get_sales_dir() -> Path:
    """Return the directory holding finalized sales exported from the record store."""
    return get_data_dir() / "vendas"


def load_sale(sale_id: str) -> dict:
    """Load a finalized sale from data/vendas/{sale_id}.yaml."""
    return load_yaml(get_sales_dir() / f"{sale_id}.yaml")


def list_sales() -> list[str]:
    """Return sorted sale ids (YAML file stems) from data/vendas/."""
    sales_dir = get_sales_dir()
    if not sales_dir.exists():
        return []
    return sorted(f.stem for f in sales_dir.glob("*.yaml"))


def get_env_dir(env: str) -> Path:
    """Return the per-environment state directory."""
    return get_data_dir() / env


def get_issued_dir(env: str) -> Path:
    """Return the authorized-XML directory for the given environment."""
    return get_env_dir(env) / "issued"
