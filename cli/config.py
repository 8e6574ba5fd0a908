import os
import json
from pathlib import Path
from typing import Any, Dict, Optional

CONFIG_DIR = Path(os.getenv("AUCTION_CLI_HOME", str(Path.home() / ".auction-cli")))
SETTINGS_FILE = CONFIG_DIR / "settings.json"
DEFAULT_SERVER_URL = "http://localhost:8000"


def load_settings() -> Dict[str, Any]:
    """Stored CLI session: token, username, server_url, timezone."""
    if SETTINGS_FILE.exists():
        return json.loads(SETTINGS_FILE.read_text())
    return {}


def update_settings(**values) -> Dict[str, Any]:
    """Merge values into the stored settings; a None value removes the key."""
    settings = load_settings()
    for key, value in values.items():
        if value is None:
            settings.pop(key, None)
        else:
            settings[key] = value
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    SETTINGS_FILE.write_text(json.dumps(settings, indent=2))
    return settings


def save_session(token: str, username: str):
    update_settings(token=token, username=username)


def get_token() -> Optional[str]:
    return load_settings().get("token")


def get_username() -> Optional[str]:
    return load_settings().get("username")


def get_server_url() -> str:
    # Environment wins so scripts can point one call at another server
    return os.getenv("AUCTION_SERVER_URL") or load_settings().get("server_url") or DEFAULT_SERVER_URL


def get_timezone() -> str:
    return load_settings().get("timezone") or os.getenv("TZ") or "UTC"
