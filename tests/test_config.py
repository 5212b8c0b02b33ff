from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

import emissor_nfe.config as config_mod


class TestResolveDir:
    def test_from_env_var(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EMISSOR_DATA_DIR", str(tmp_path))
        assert config_mod._resolve_dir("EMISSOR_DATA_DIR", "data", kind="data") == tmp_path

    def test_project_root_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("EMISSOR_CONFIG_DIR", raising=False)
        fake_root = tmp_path / "src" / "emissor_nfe"
        fake_root.mkdir(parents=True)
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        monkeypatch.setattr(config_mod, "__file__", str(fake_root / "config.py"))
        assert config_mod._resolve_dir("EMISSOR_CONFIG_DIR", "config", kind="config") == config_dir

    def test_platformdirs_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("EMISSOR_DATA_DIR", raising=False)
        fake = tmp_path / "nowhere" / "src" / "emissor_nfe"
        fake.mkdir(parents=True)
        monkeypatch.setattr(config_mod, "__file__", str(fake / "config.py"))
        result = config_mod._resolve_dir("EMISSOR_DATA_DIR", "data", kind="data")
        assert "emissor-nfe" in str(result)

    def test_env_dirs(self, monkeypatch, tmp_path):
        monkeypatch.setattr(config_mod, "get_data_dir", lambda: tmp_path)
        assert config_mod.get_env_dir("producao") == tmp_path / "producao"
        assert config_mod.get_issued_dir("homologacao") == tmp_path / "homologacao" / "issued"
        assert config_mod.get_sales_dir() == tmp_path / "vendas"


class TestSecrets:
    def test_cert_path_from_env(self, monkeypatch):
        monkeypatch.setenv("CERT_PFX_PATH", "/some/path.pfx")
        assert config_mod.get_cert_path({"certificado": "/yaml.pfx"}) == "/some/path.pfx"

    def test_cert_path_from_issuer(self, monkeypatch):
        monkeypatch.delenv("CERT_PFX_PATH", raising=False)
        assert config_mod.get_cert_path({"certificado": "/yaml.pfx"}) == "/yaml.pfx"

    def test_cert_path_missing(self, monkeypatch):
        monkeypatch.delenv("CERT_PFX_PATH", raising=False)
        with pytest.raises(KeyError):
            config_mod.get_cert_path()

    def test_cert_password_keyring_fallback(self, monkeypatch):
        monkeypatch.delenv("CERT_PFX_PASSWORD", raising=False)
        with patch.object(config_mod, "_get_keyring_secret", return_value="from-keyring") as mock_get:
            assert config_mod.get_cert_password() == "from-keyring"
        mock_get.assert_called_once_with(config_mod.KEYRING_CERT_USERNAME)

    def test_cert_password_env_takes_priority(self, monkeypatch):
        monkeypatch.setenv("CERT_PFX_PASSWORD", "from-env")
        with patch.object(config_mod, "_get_keyring_secret", return_value="from-keyring"):
            assert config_mod.get_cert_password() == "from-env"

    def test_cert_password_missing(self, monkeypatch):
        monkeypatch.delenv("CERT_PFX_PASSWORD", raising=False)
        with patch.object(config_mod, "_get_keyring_secret", return_value=None), pytest.raises(KeyError):
            config_mod.get_cert_password()

    def test_csc_token(self, monkeypatch):
        monkeypatch.delenv("NFCE_CSC_TOKEN", raising=False)
        with patch.object(config_mod, "_get_keyring_secret", return_value="csc") as mock_get:
            assert config_mod.get_csc_token() == "csc"
        mock_get.assert_called_once_with(config_mod.KEYRING_CSC_USERNAME)

    def test_csc_token_missing(self, monkeypatch):
        monkeypatch.delenv("NFCE_CSC_TOKEN", raising=False)
        with patch.object(config_mod, "_get_keyring_secret", return_value=None), pytest.raises(KeyError):
            config_mod.get_csc_token()


class TestAuthorityUrl:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("EMISSOR_AUTORIZADOR_URL_PRODUCAO", "https://prod.test/")
        assert config_mod.get_authority_url("producao", {"autorizador": {"producao": "x"}}) == "https://prod.test"

    def test_from_issuer(self, monkeypatch):
        monkeypatch.delenv("EMISSOR_AUTORIZADOR_URL_HOMOLOGACAO", raising=False)
        issuer = {"autorizador": {"homologacao": "https://homol.test/v1/"}}
        assert config_mod.get_authority_url("homologacao", issuer) == "https://homol.test/v1"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("EMISSOR_AUTORIZADOR_URL_PRODUCAO", raising=False)
        with pytest.raises(KeyError, match="EMISSOR_AUTORIZADOR_URL_PRODUCAO"):
            config_mod.get_authority_url("producao", {"autorizador": {"homologacao": "x"}})


class TestKeyringHelpers:
    def test_get_secret(self):
        mock_kr = MagicMock()
        mock_kr.get_password.return_value = "stored"
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._get_keyring_secret("nfce-csc-token") == "stored"
        mock_kr.get_password.assert_called_once_with(config_mod.KEYRING_SERVICE, "nfce-csc-token")

    def test_get_secret_exception(self):
        mock_kr = MagicMock()
        mock_kr.get_password.side_effect = RuntimeError("no backend")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._get_keyring_secret("x") is None

    def test_set_secret(self):
        mock_kr = MagicMock()
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._set_keyring_secret("cert-pfx-password", "pw123") is True
        mock_kr.set_password.assert_called_once_with(config_mod.KEYRING_SERVICE, "cert-pfx-password", "pw123")

    def test_set_secret_failure(self):
        mock_kr = MagicMock()
        mock_kr.set_password.side_effect = RuntimeError("locked")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._set_keyring_secret("x", "pw") is False

    def test_delete_secret_failure(self):
        mock_kr = MagicMock()
        mock_kr.delete_password.side_effect = RuntimeError("not found")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._delete_keyring_secret("x") is False


class TestYamlFiles:
    def test_load_issuer_missing(self, monkeypatch, tmp_path):
        monkeypatch.setattr(config_mod, "get_config_dir", lambda: tmp_path)
        with pytest.raises(FileNotFoundError):
            config_mod.load_issuer()

    def test_sales(self, monkeypatch, tmp_path):
        monkeypatch.setattr(config_mod, "get_data_dir", lambda: tmp_path)
        assert config_mod.list_sales() == []
        sales = tmp_path / "vendas"
        sales.mkdir()
        (sales / "venda-2.yaml").write_text(yaml.dump({"id": "venda-2"}))
        (sales / "venda-1.yaml").write_text(yaml.dump({"id": "venda-1"}))
        (sales / "notas.txt").write_text("ignorado")

        assert config_mod.list_sales() == ["venda-1", "venda-2"]
        assert config_mod.load_sale("venda-2") == {"id": "venda-2"}
