from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "emissor-nfe"
KEYRING_SERVICE = "emissor-nfe"
KEYRING_USERNAME = "cert-pfx-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (env var set in shell,
    dev layout, an existing platformdirs directory).
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
NFE_VERSAO = "4.00"
MODELO_NFE = "55"

BRT = timezone(timedelta(hours=-3))

# Emission instants are pushed back so SEFAZ never sees a future-dated dhEmi.
EMISSION_BACKDATE = timedelta(minutes=2)

TP_AMB = {"homologacao": "2", "producao": "1"}

# The native processor numbers its environments differently from tpAmb.
PROCESSOR_AMBIENTE = {"homologacao": "1", "producao": "0"}

PROCESSOR_TIMEOUT = 60
QUERY_TIMEOUT = 30

DEFAULT_RESP_TEC = {
    "CNPJ": "99999999000191",
    "xContato": "Suporte Tecnico",
    "email": "suporte@seuteste.com.br",
    "fone": "1133334444",
}


def get_log_level() -> str:
    return os.environ.get("EMISSOR_LOG_LEVEL", "WARNING").upper()


# --- Keyring helpers ---


def _get_keyring_password() -> str | None:
    """Try to get the certificate password from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_password(password: str) -> bool:
    """Store the certificate password in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, password)
        return True
    except Exception:
        return False


def _delete_keyring_password() -> bool:
    """Remove the certificate password from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, KEYRING_USERNAME)
        return True
    except Exception:
        return False


# --- Certificate access ---


def get_cert_path() -> str:
    """Return the path to the .pfx certificate from CERT_PFX_PATH env var.

    Raises KeyError if the variable is not set.
    """
    return os.environ["CERT_PFX_PATH"]


def get_cert_password() -> str:
    """Return the certificate password.

    Priority: 1) CERT_PFX_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has the password.
    """
    pwd = os.environ.get("CERT_PFX_PASSWORD")
    if pwd is not None:
        return pwd
    pwd = _get_keyring_password()
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def load_emitter() -> dict:
    """Load issuer defaults from config/emitter.yaml (gateway field names)."""
    return load_yaml(get_config_dir() / "emitter.yaml")


def load_resp_tec() -> dict:
    """Load the technical-contact block, falling back to the built-in defaults."""
    path = get_config_dir() / "resp_tec.yaml"
    if not path.exists():
        return dict(DEFAULT_RESP_TEC)
    return {**DEFAULT_RESP_TEC, **load_yaml(path)}


def load_request(path: Path) -> dict:
    """Load an invoice request from a YAML or JSON file (YAML is a JSON superset)."""
    return load_yaml(path)


def get_notas_dir(env: str) -> Path:
    """Return the directory where assembled documents are written for *env*."""
    return get_data_dir() / env / "notas"


def processor_settings(env: str = "homologacao", tipo_danfe: str = "1") -> dict[str, dict[str, str]]:
    """Section/key settings a native processor adapter is initialized with.

    Raises KeyError when the certificate path or password is not configured.
    """
    data_dir = get_data_dir()
    return {
        "Principal": {
            "LogPath": str(data_dir / "log"),
            "LogNivel": "4",
        },
        "DFe": {
            "SSLCryptLib": "1",
            "SSLHttpLib": "3",
            "SSLXmlSignLib": "4",
            "ArquivoPFX": get_cert_path(),
            "Senha": get_cert_password(),
        },
        "NFE": {
            "PathSchemas": str(data_dir / "Schemas" / "NFe"),
            "PathSalvar": str(get_notas_dir(env)),
            "Ambiente": PROCESSOR_AMBIENTE[env],
            "ModeloDF": "0",
        },
        "DANFE": {
            "PathPDF": str(data_dir / env / "pdf"),
            "TipoDANFE": tipo_danfe,
        },
    }
