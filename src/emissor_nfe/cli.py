from __future__ import annotations

import getpass
import logging
import stat
import sys
from importlib.resources import files
from pathlib import Path

USAGE = """\
Uso: emissor-nfe <comando> [argumentos]

Comandos:
  init                          cria os arquivos de configuração de exemplo
  montar <pedido.yaml> [env]    monta a NF-e e registra o rascunho
  notas [env]                   lista as NF-e registradas
  chave <chave>                 decompõe e confere uma chave de acesso
  numeracao [env] [serie] [n]   mostra ou ajusta o último número usado da série
"""

ENVS = ("homologacao", "producao")


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
    """Remove a key from a .env file if present."""
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


def _store_password(env_file: Path, pfx_password: str) -> None:
    """Ask where the certificate password goes and store it there."""
    from emissor_nfe.config import _delete_keyring_password, _set_keyring_password

    print()
    print("Onde deseja armazenar a senha?")

    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Keychain do sistema (recomendado)"))
    options.append(("2", "Arquivo .env no diretório de configuração"))
    options.append(("3", "Não armazenar (definir manualmente)"))

    for num, label in options:
        print(f"  {num}. {label}")
    if not keyring_ok:
        print()
        print("  Nota: keychain do sistema indisponível (sem backend configurado).")

    print()
    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Escolha [{'/'.join(sorted(valid_choices))}]: ").strip()

    if choice == "1" and keyring_ok:
        if _set_keyring_password(pfx_password):
            print("  Senha armazenada no keychain do sistema.")
            _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        else:
            print("  ERRO: Falha ao armazenar no keychain. Salvando no .env como alternativa.")
            _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
            _warn_open_permissions(env_file)
    elif choice == "2":
        _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
        print(f"  Senha salva em {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password()
    else:
        _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        _delete_keyring_password()
        print("  Senha não armazenada.")
        print("  Defina CERT_PFX_PASSWORD no seu shell ou .env antes de transmitir NF-e.")


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive A1 certificate setup. Returns True if cert was configured."""
    print()
    print("Configuração do certificado digital (A1)")
    print("────────────────────────────────────────")
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

    print(f"  Sujeito: {info['subject']}")
    if info["cnpj"]:
        print(f"  CNPJ: {info['cnpj']}")
    print(f"  Válido até: {info['not_after']}")
    if info["valid"]:
        print("  Certificado válido")
    else:
        print("  AVISO: Certificado expirado")

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_PFX_PATH", pfx_path)
    _store_password(env_file, pfx_password)
    return True


def _init_config() -> None:
    """Copy bundled config templates to the user's config/data directories."""
    from emissor_nfe.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_nfe") / "templates"

    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    copied = 0
    for name in ["emitter.yaml.example", "resp_tec.yaml.example", "request.yaml.example"]:
        dest = config_dir / name
        if dest.exists():
            print(f"  já existe: {dest}")
            continue
        src = templates / name
        with src.open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  criado: {dest}")
        copied += 1

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")

    print()
    try:
        answer = input("Deseja configurar o certificado digital agora? [S/n]: ").strip().lower()
        if answer in ("", "s", "sim", "y", "yes"):
            _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    if copied:
        print("Próximos passos:")
        print(f"  1. cp {config_dir / 'emitter.yaml.example'} {config_dir / 'emitter.yaml'}")
        print("  2. Edite emitter.yaml com os dados do seu CNPJ")
        print(f"  3. Execute: emissor-nfe montar {config_dir / 'request.yaml.example'}")
    else:
        print("Nenhum arquivo novo criado (todos já existiam).")


def _preflight() -> bool:
    """Verify minimal config before assembling documents.

    Auto-creates the data directory. Returns False with a helpful
    message when the config directory or emitter.yaml is missing.
    """
    from emissor_nfe.config import get_config_dir, get_data_dir

    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    config_dir = get_config_dir()
    if not config_dir.is_dir():
        print(f"Erro: diretório de configuração não encontrado: {config_dir}")
        print("Execute 'emissor-nfe init' para criar os arquivos de exemplo.")
        return False
    if not (config_dir / "emitter.yaml").is_file():
        print(f"Erro: emitter.yaml não encontrado em {config_dir}")
        print("Execute 'emissor-nfe init' e configure o emitente.")
        return False
    return True


def _env_arg(args: list[str], index: int) -> str:
    env = args[index] if len(args) > index else "homologacao"
    if env not in ENVS:
        raise SystemExit(f"Ambiente inválido: {env} (use {' ou '.join(ENVS)})")
    return env


def _request_dict(path: Path, env: str) -> dict:
    """Load a request file and fill in the configured issuer and environment."""
    from emissor_nfe.config import TP_AMB, load_emitter, load_request

    data = load_request(path)
    if not data.get("emitente"):
        data["emitente"] = load_emitter()
    data.setdefault("tpAmb", TP_AMB[env])
    return data


def _montar(path: Path, env: str) -> int:
    from emissor_nfe.config import get_notas_dir, load_resp_tec
    from emissor_nfe.models.party import TechnicalContact
    from emissor_nfe.services.exceptions import NFeError
    from emissor_nfe.services.lifecycle import LifecycleManager
    from emissor_nfe.utils.formatters import format_access_key, format_brl
    from emissor_nfe.utils.registry import JsonInvoiceRepository, registry_path
    from emissor_nfe.utils.sequence import next_numero

    if not path.is_file():
        print(f"Erro: arquivo não encontrado: {path}")
        return 1

    manager = LifecycleManager(
        JsonInvoiceRepository(registry_path(env)),
        numbering=lambda serie: next_numero(env, serie),
        resp_tec=TechnicalContact.from_dict(load_resp_tec()),
    )
    try:
        record = manager.create(_request_dict(path, env))
    except NFeError as e:
        print(f"Erro: {e}")
        return 1

    out_path = get_notas_dir(env) / f"{record.chave}-nfe.xml"
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(record.xml or "", encoding="utf-8")

    print(f"NF-e montada (serie {record.serie}, número {record.numero})")
    print(f"  Chave:    {format_access_key(record.chave or '')}")
    print(f"  Produtos: {format_brl(record.valor_produtos)}")
    print(f"  Total:    {format_brl(record.valor_total)}")
    print(f"  XML:      {out_path}")
    return 0


def _notas(env: str) -> int:
    from emissor_nfe.utils.formatters import format_brl
    from emissor_nfe.utils.registry import JsonInvoiceRepository, registry_path

    records = JsonInvoiceRepository(registry_path(env)).list()
    if not records:
        print(f"Nenhuma NF-e registrada em {env}.")
        return 0
    for r in records:
        print(
            f"{r.serie:>3} {r.numero:>9}  {r.status.value:<10}  "
            f"{format_brl(r.valor_total):>16}  {r.destinatario_nome}  {r.chave or '-'}"
        )
    return 0


def _chave(chave: str) -> int:
    from emissor_nfe.services.exceptions import NFeError
    from emissor_nfe.utils.access_key import is_valid_access_key, split_access_key
    from emissor_nfe.utils.registry import JsonInvoiceRepository, registry_path
    from emissor_nfe.utils.validators import validate_access_key

    try:
        digits = validate_access_key(chave)
        parts = split_access_key(digits)
    except NFeError as e:
        print(f"Erro: {e}")
        return 1
    for name, value in parts.items():
        print(f"  {name:<7}{value}")
    if not is_valid_access_key(digits):
        print("Dígito verificador inválido.")
        return 1
    print("Dígito verificador confere.")

    for env in ENVS:
        path = registry_path(env)
        if not path.exists():
            continue
        record = JsonInvoiceRepository(path).find_by_chave(digits)
        if record is not None:
            print(f"Registrada em {env}: {record.status.value} (id {record.id})")
    return 0


def _numeracao(args: list[str]) -> int:
    from emissor_nfe.utils.sequence import current_numero, peek_next_numero, set_numero

    env = _env_arg(args, 0)
    try:
        serie = int(args[1]) if len(args) > 1 else 1
        value = int(args[2]) if len(args) > 2 else None
    except ValueError:
        print("Erro: serie e número devem ser inteiros")
        return 1
    if value is not None:
        if value < 0:
            print("Erro: número não pode ser negativo")
            return 1
        set_numero(value, env, serie)
        print(f"Último número da série {serie} ({env}) ajustado para {value}")
    print(
        f"Série {serie} ({env}): último {current_numero(env, serie)}, "
        f"próximo {peek_next_numero(env, serie)}"
    )
    return 0


def main() -> None:
    """Entry point for the emissor-nfe CLI."""
    from emissor_nfe.config import get_log_level

    logging.basicConfig(
        level=get_log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    args = sys.argv[1:]
    command = args[0] if args else ""

    if command == "init":
        _init_config()
        return
    if command == "montar" and len(args) >= 2:
        if not _preflight():
            sys.exit(1)
        sys.exit(_montar(Path(args[1]), _env_arg(args, 2)))
    if command == "notas":
        sys.exit(_notas(_env_arg(args, 1)))
    if command == "chave" and len(args) >= 2:
        sys.exit(_chave(args[1]))
    if command == "numeracao":
        sys.exit(_numeracao(args[1:]))

    print(USAGE)
    sys.exit(2)


if __name__ == "__main__":
    main()
