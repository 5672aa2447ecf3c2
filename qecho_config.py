"""
qecho config - Settings file plus environment overrides.

    $QECHO_HOME/config.json   (default ~/.echo-cli/config.json)

    {"apiUrl": "https://app.qirvo.ai", "authToken": "...", "userId": "..."}

QECHO_API_URL and QECHO_AUTH_TOKEN override the file; command-line flags
override both.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_API_URL = "https://app.qirvo.ai"
CONFIG_FILE = "config.json"

# JSON key -> attribute
KEYS = {
    "apiUrl": "api_url",
    "authToken": "auth_token",
    "userId": "user_id",
}


def config_dir() -> Path:
    return Path(os.environ.get("QECHO_HOME") or Path.home() / ".echo-cli")


def config_path() -> Path:
    return config_dir() / CONFIG_FILE


@dataclass
class Config:
    api_url: str = DEFAULT_API_URL
    auth_token: str | None = None
    user_id: str | None = None

    def set(self, key: str, value: str):
        """Set by JSON key name (apiUrl, authToken, userId)."""
        if key not in KEYS:
            raise KeyError(f"unknown config key: {key} (expected one of {', '.join(KEYS)})")
        setattr(self, KEYS[key], value)

    def to_dict(self) -> dict:
        return {key: getattr(self, attr) for key, attr in KEYS.items() if getattr(self, attr)}


def load_config(
    path: Path | None = None,
    env: dict | None = None,
    *,
    url: str | None = None,
    token: str | None = None,
) -> Config:
    """Read the config file (missing is fine), then apply environment and flag overrides."""
    path = path or config_path()
    env = os.environ if env is None else env

    data: dict = {}
    if path.exists():
        data = json.loads(path.read_text())

    config = Config(**{
        attr: data[key] for key, attr in KEYS.items()
        if data.get(key)
    })

    if env.get("QECHO_API_URL"):
        config.api_url = env["QECHO_API_URL"]
    if env.get("QECHO_AUTH_TOKEN"):
        config.auth_token = env["QECHO_AUTH_TOKEN"]
    if url:
        config.api_url = url
    if token:
        config.auth_token = token
    return config


def save_config(config: Config, path: Path | None = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2) + "\n")
    # Holds a bearer token
    path.chmod(0o600)
    return path


def clear_config(path: Path | None = None) -> bool:
    """Remove the config file. False if there was nothing to remove."""
    path = path or config_path()
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
