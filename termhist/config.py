# termhist/config.py
"""
Configuration gate.

The remote store is enabled only when both an endpoint URL and a credential
are found. Lookup order:

  1. environment (after loading .env): TERMHIST_DB_URL / TERMHIST_DB_TOKEN,
     falling back to TURSO_DATABASE_URL / TURSO_AUTH_TOKEN
  2. JSON config file at TERMHIST_CONFIG (default ~/.termhist/config.json)
     with keys turso_url / turso_token (or url / token)

Anything missing or malformed raises ConfigMissing; the engine turns that into
offline mode, never a startup failure.

Engine knobs (EngineSettings):
  TERMHIST_USERNAME       username to resolve (or "username" in the config file)
  TERMHIST_LOCAL_DB       SQLAlchemy URL of the local buffer
  TERMHIST_SYNC_INTERVAL  periodic sync seconds, 0 disables (default: 60)
  TERMHIST_STRICT_CANCEL  make cancellation authoritative (default: false)
  TERMHIST_SYNC_ISOLATE   attempt every entry on sync (default: false)
  TERMHIST_SOURCE         source tag (default: ink-interface)
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

from termhist.errors import ConfigMissing
from termhist.models import DEFAULT_SOURCE

DEFAULT_CONFIG_DIR = Path.home() / ".termhist"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_LOCAL_DB_URL = f"sqlite:///{DEFAULT_CONFIG_DIR / 'local_history.db'}"


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class RemoteConfig(BaseModel):
    url: str
    token: str
    handshake_timeout: float = 5.0
    ensure_schema: bool = True

    @field_validator("url")
    @classmethod
    def url_must_have_scheme(cls, v):
        v = (v or "").strip()
        if "://" not in v:
            raise ValueError("url must include a scheme, e.g. libsql://db.turso.io")
        return v

    @field_validator("token")
    @classmethod
    def token_not_blank(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("token must not be empty")
        return v


class EngineSettings(BaseModel):
    username: Optional[str] = None
    local_db_url: str = DEFAULT_LOCAL_DB_URL
    sync_interval: float = 60.0
    strict_cancellation: bool = False
    isolate_sync_failures: bool = False
    source: str = DEFAULT_SOURCE


def config_path() -> Path:
    return Path(os.getenv("TERMHIST_CONFIG", str(DEFAULT_CONFIG_PATH))).expanduser()


def read_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Return the config file as a dict; {} if absent. Raises ConfigMissing if unreadable."""
    path = path or config_path()
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigMissing(f"config file {path} is unreadable: {e}") from e
    if not isinstance(data, dict):
        raise ConfigMissing(f"config file {path} must contain a JSON object")
    return data


def load_remote_config(path: Optional[Path] = None) -> RemoteConfig:
    load_dotenv()
    url = os.getenv("TERMHIST_DB_URL") or os.getenv("TURSO_DATABASE_URL")
    token = os.getenv("TERMHIST_DB_TOKEN") or os.getenv("TURSO_AUTH_TOKEN")

    if not (url and token):
        data = read_config_file(path)
        url = url or data.get("turso_url") or data.get("url") or data.get("databaseUrl")
        token = token or data.get("turso_token") or data.get("token") or data.get("authToken")

    if not url or not token:
        raise ConfigMissing("no remote history endpoint/credential configured")
    try:
        return RemoteConfig(url=url, token=token)
    except ValidationError as e:
        raise ConfigMissing(f"remote configuration is malformed: {e}") from e


def load_settings(path: Optional[Path] = None) -> EngineSettings:
    load_dotenv()
    try:
        data = read_config_file(path)
    except ConfigMissing:
        data = {}
    username = os.getenv("TERMHIST_USERNAME") or data.get("username") or data.get("user")
    try:
        interval = float(os.getenv("TERMHIST_SYNC_INTERVAL", "60"))
    except ValueError:
        interval = 60.0
    return EngineSettings(
        username=username or None,
        local_db_url=os.getenv("TERMHIST_LOCAL_DB", DEFAULT_LOCAL_DB_URL),
        sync_interval=max(interval, 0.0),
        strict_cancellation=_truthy(os.getenv("TERMHIST_STRICT_CANCEL")),
        isolate_sync_failures=_truthy(os.getenv("TERMHIST_SYNC_ISOLATE")),
        source=os.getenv("TERMHIST_SOURCE", DEFAULT_SOURCE),
    )
