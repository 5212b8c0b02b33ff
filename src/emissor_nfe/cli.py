from __future__ import annotations

import getpass
import logging
import os
import stat
import sys
from importlib.resources import files
from pathlib import Path

TEMPLATES = [
    "issuer.yaml.example",
]
SALE_TEMPLATES = [
    "vendas/exemplo.yaml.example",
]


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed.

    Uses dotenv.set_key for proper quoting (handles #, spaces, etc.).
    """
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tem permissões abertas.")
            print("  Recomendação: chmod 600", env_file)
    except OSError:
        pass


def _choose_storage(label: str) -> str:
    """Ask where a secret should live. Returns "keyring", "env" or "none"."""
    print()
    print(f"Onde deseja armazenar {label}?")

    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Keychain do sistema (recomendado)"))
    options.append(("2", "Arquivo .env no diretório de configuração"))
    options.append(("3", "Não armazenar (definir manualmente)"))

    for num, text in options:
        print(f"  {num}. {text}")
    if not keyring_ok:
        print()
        print("  Nota: keychain do sistema indisponível (sem backend configurado).")

    print()
    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Escolha [{'/'.join(sorted(valid_choices))}]: ").strip()
    return {"1": "keyring", "2": "env"}.get(choice, "none")


def _store_secret(env_file: Path, env_key: str, keyring_user: str, secret: str, label: str) -> None:
    """Store *secret* following the user's choice, removing stale copies elsewhere."""
    from emissor_nfe.config import _delete_keyring_secret, _set_keyring_secret

    where = _choose_storage(label)
    if where == "keyring":
        if _set_keyring_secret(keyring_user, secret):
            print(f"  {label.capitalize()} armazenada no keychain do sistema.")
            _remove_env_var(env_file, env_key)
        else:
            print("  ERRO: Falha ao armazenar no keychain. Salvando no .env como alternativa.")
            _upsert_env_var(env_file, env_key, secret)
            _warn_open_permissions(env_file)
    elif where == "env":
        _upsert_env_var(env_file, env_key, secret)
        print(f"  {label.capitalize()} salva em {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_secret(keyring_user)
    else:
        _remove_env_var(env_file, env_key)
        _delete_keyring_secret(keyring_user)
        print(f"  {label.capitalize()} não armazenada.")
        print(f"  Defina {env_key} no seu shell ou .env antes de usar o emissor.")


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive certificate setup. Returns True if cert was configured."""
    from emissor_nfe.config import KEYRING_CERT_USERNAME

    print()
    print("Configuração do certificado digital A1")
    print("──────────────────────────────────────")
    print()

    while True:
        pfx_path = input("Caminho do certificado .pfx/.p12 (vazio para pular): ").strip()
        if not pfx_path:
            print("  Configuração de certificado pulada.")
            return False
        if Path(pfx_path).is_file():
            break
        print(f"  Arquivo não encontrado: {pfx_path}")

    pfx_password = getpass.getpass("Senha do certificado: ")

    print()
    print("Validando certificado…")
    try:
        from emissor_nfe.utils.certificate import validate_certificate

        info = validate_certificate(pfx_path, pfx_password)
    except Exception as e:
        print(f"  ERRO: Certificado inválido ou senha incorreta: {e}")
        print("  Configuração de certificado abortada.")
        return False

    print(f"  Titular: {info['subject']}")
    print(f"  Válido até: {info['not_after']:%d/%m/%Y}")
    if info["valid"]:
        print("  Certificado válido")
    else:
        print("  AVISO: Certificado fora da validade")

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_PFX_PATH", pfx_path)
    _store_secret(env_file, "CERT_PFX_PASSWORD", KEYRING_CERT_USERNAME, pfx_password, "a senha do certificado")
    return True


def _setup_csc(config_dir: Path) -> bool:
    """Interactive NFC-e CSC token setup. Returns True if a token was given."""
    from emissor_nfe.config import KEYRING_CSC_USERNAME

    print()
    token = getpass.getpass("Token CSC da NFC-e (vazio para pular): ").strip()
    if not token:
        print("  Configuração do CSC pulada.")
        return False
    _store_secret(config_dir / ".env", "NFCE_CSC_TOKEN", KEYRING_CSC_USERNAME, token, "o token CSC")
    return True


def _copy_templates(names: list[str], templates, dest_dir: Path) -> int:
    copied = 0
    for rel in names:
        dest = dest_dir / Path(rel).name
        if dest.exists():
            print(f"  já existe: {dest}")
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        with (templates / rel).open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  criado: {dest}")
        copied += 1
    return copied


def _init_config() -> None:
    """Copy bundled templates to the user's config/data directories."""
    from emissor_nfe.config import get_config_dir, get_data_dir, get_sales_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_nfe") / "templates"

    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    copied = _copy_templates(TEMPLATES, templates, config_dir)
    copied += _copy_templates(SALE_TEMPLATES, templates, get_sales_dir())

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")

    print()
    cert_configured = False
    try:
        answer = input("Deseja configurar o certificado digital agora? [S/n]: ").strip().lower()
        if answer in ("", "s", "sim", "y", "yes"):
            cert_configured = _setup_certificate(config_dir)
        answer = input("Deseja configurar o CSC da NFC-e agora? [s/N]: ").strip().lower()
        if answer in ("s", "sim", "y", "yes"):
            _setup_csc(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    if copied:
        print("Próximos passos:")
        print(f"  1. cp {config_dir / 'issuer.yaml.example'} {config_dir / 'issuer.yaml'}")
        print("  2. Edite issuer.yaml com os dados fiscais do seu CNPJ")
        if not cert_configured:
            print("  3. Crie um .env com CERT_PFX_PATH e CERT_PFX_PASSWORD")
            print("  4. Execute: emissor-nfe")
        else:
            print("  3. Execute: emissor-nfe")
    else:
        print("Nenhum arquivo novo criado (todos já existiam).")


def _preflight() -> bool:
    """Verify minimal config before running.

    Auto-creates the data directory. Returns False with a helpful
    message when the config directory or issuer.yaml is missing.
    """
    from emissor_nfe.config import get_config_dir, get_data_dir

    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    config_dir = get_config_dir()
    if not config_dir.is_dir():
        print(f"Erro: diretório de configuração não encontrado: {config_dir}")
        print("Execute 'emissor-nfe init' para criar os arquivos de exemplo.")
        return False
    if not (config_dir / "issuer.yaml").is_file():
        print(f"Erro: issuer.yaml não encontrado em {config_dir}")
        print("Execute 'emissor-nfe init' e configure o emitente.")
        return False
    return True


def _configure_logging() -> None:
    level = os.environ.get("EMISSOR_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _poll() -> int:
    """Run one polling pass over documents awaiting the authority. Returns exit code."""
    from emissor_nfe.services.emission import poll_processing
    from emissor_nfe.services.exceptions import EmissionError

    _configure_logging()
    try:
        docs = poll_processing()
    except EmissionError as e:
        print(f"Erro: {e}")
        return 1
    for doc in docs:
        print(f"{doc.label}: {doc.status}")
    if not docs:
        print("Nenhum documento aguardando o autorizador.")
    return 0


def main() -> None:
    """Entry point for the emissor-nfe CLI/TUI."""
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "init":
        _init_config()
        return

    if not _preflight():
        sys.exit(1)

    if command == "poll":
        sys.exit(_poll())

    from emissor_nfe.tui.app import EmissorApp

    app = EmissorApp()
    app.run()


if __name__ == "__main__":
    main()
