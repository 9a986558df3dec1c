"""
Configuration loading for Grafana Export.

Priority order (highest → lowest):
  1. Environment variables, seeded from a `.env` file in the working
     directory (GRAFANA_URL, GRAFANA_API_KEY, EXPORT_DIRECTORY, SERVER_PORT,
     SKIP_TLS_VERIFY, GRAFANA_VERSION, GRAFANA_TIMEOUT)
  2. macOS Keychain  (grafana-export / grafana-token, grafana-url)
  3. ~/.config/grafana-export/config.yaml

Token is a Grafana service-account token (Bearer token).
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from dotenv import load_dotenv

from grafana_export.keychain import keychain_available, retrieve_secret

log = structlog.get_logger(__name__)

_CONFIG_FILE = Path.home() / ".config" / "grafana-export" / "config.yaml"
_ENV_FILE_NAME = ".env"
_KEYCHAIN_TOKEN_ACCOUNT = "grafana-token"
_KEYCHAIN_URL_ACCOUNT = "grafana-url"

DEFAULT_GRAFANA_URL = "http://localhost:3000"
DEFAULT_EXPORT_DIRECTORY = "./exported"
DEFAULT_SERVER_PORT = 8080
DEFAULT_GRAFANA_VERSION = 11.1

MISSING_ENV_MESSAGE = (
    "Configuration file (.env) not found. "
    "Please create one based on the .env.example template."
)


class Settings:
    """Runtime configuration resolved at startup."""

    def __init__(
        self,
        grafana_url: str,
        api_token: str,
        export_directory: str | Path = DEFAULT_EXPORT_DIRECTORY,
        server_port: int = DEFAULT_SERVER_PORT,
        skip_tls_verify: bool = False,
        grafana_version: float = DEFAULT_GRAFANA_VERSION,
        timeout: float = 30.0,
        env_file: Optional[Path] = None,
    ) -> None:
        self.grafana_url = grafana_url.rstrip("/")
        self.api_token = api_token
        self.export_directory = Path(export_directory)
        self.server_port = server_port
        self.skip_tls_verify = skip_tls_verify
        self.grafana_version = grafana_version
        self.timeout = timeout
        self.env_file = env_file

    @property
    def ssl_verify(self) -> bool:
        return not self.skip_tls_verify

    def __repr__(self) -> str:
        return (
            f"Settings(url={self.grafana_url!r}, export_directory={str(self.export_directory)!r}, "
            f"port={self.server_port}, skip_tls_verify={self.skip_tls_verify}, "
            f"grafana_version={self.grafana_version}, timeout={self.timeout})"
        )


def parse_bool(value: Any, fallback: bool) -> bool:
    """Accept true/1/yes and false/0/no; anything else keeps *fallback*."""
    if isinstance(value, bool):
        return value
    if value is None:
        return fallback
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    return fallback


def parse_float(value: Any, fallback: float) -> float:
    if value is None:
        return fallback
    try:
        return float(value)
    except (TypeError, ValueError):
        log.warning("config.invalid_number", value=value, fallback=fallback)
        return fallback


def _load_yaml_config() -> dict:
    if _CONFIG_FILE.exists():
        with _CONFIG_FILE.open() as f:
            data = yaml.safe_load(f) or {}
        log.info("config.yaml_loaded", path=str(_CONFIG_FILE))
        return data
    return {}


def _keychain_lookup(account: str) -> Optional[str]:
    if not keychain_available():
        return None
    return retrieve_secret(account)


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Resolve settings from `.env`, the environment, Keychain and YAML.

    Real environment variables always win over values in the `.env` file.
    """
    env_path = Path(env_file) if env_file else Path.cwd() / _ENV_FILE_NAME
    if env_path.is_file():
        load_dotenv(env_path, override=False)
        log.info("config.env_loaded", path=str(env_path))
    else:
        log.warning("config.env_missing", path=str(env_path))
        env_path = None

    yaml_cfg = _load_yaml_config()

    url = (
        os.environ.get("GRAFANA_URL")
        or _keychain_lookup(_KEYCHAIN_URL_ACCOUNT)
        or yaml_cfg.get("grafana_url")
        or DEFAULT_GRAFANA_URL
    )
    token = (
        os.environ.get("GRAFANA_API_KEY")
        or os.environ.get("GRAFANA_TOKEN")
        or _keychain_lookup(_KEYCHAIN_TOKEN_ACCOUNT)
        or yaml_cfg.get("grafana_token")
        or ""
    )
    export_directory = (
        os.environ.get("EXPORT_DIRECTORY")
        or yaml_cfg.get("export_directory")
        or DEFAULT_EXPORT_DIRECTORY
    )
    port = int(parse_float(os.environ.get("SERVER_PORT", yaml_cfg.get("server_port")), DEFAULT_SERVER_PORT))
    skip_tls = parse_bool(os.environ.get("SKIP_TLS_VERIFY", yaml_cfg.get("skip_tls_verify")), False)
    version = parse_float(os.environ.get("GRAFANA_VERSION", yaml_cfg.get("grafana_version")), DEFAULT_GRAFANA_VERSION)
    timeout = parse_float(os.environ.get("GRAFANA_TIMEOUT", yaml_cfg.get("timeout")), 30.0)

    settings = Settings(
        grafana_url=url,
        api_token=token,
        export_directory=export_directory,
        server_port=port,
        skip_tls_verify=skip_tls,
        grafana_version=version,
        timeout=timeout,
        env_file=env_path,
    )
    log.info("config.resolved", settings=repr(settings))
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Resolve and return the global Settings singleton."""
    return load_settings()


def config_status(settings: Settings) -> dict[str, Any]:
    """Summarize configuration health for the frontend's setup banner."""
    if settings.env_file is None:
        message = MISSING_ENV_MESSAGE
    elif not settings.api_token:
        message = "GRAFANA_API_KEY is not set. Add it to your .env file."
    else:
        message = ""
    return {"hasEnvFile": settings.env_file is not None, "errorMessage": message}
