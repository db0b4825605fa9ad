import os
import json
from pathlib import Path
from typing import Optional
import datetime

CONFIG_DIR = Path(os.getenv("AUCTION_CONFIG_DIR", str(Path.home() / ".antique-auction")))
CONFIG_FILE = CONFIG_DIR / "config.json"
TOKEN_FILE = CONFIG_DIR / "token.txt"
SERVER_URL = os.getenv("AUCTION_SERVER_URL", "http://localhost:8000")


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


def get_token() -> Optional[str]:
    """Get stored API token."""
    ensure_config_dir()
    if TOKEN_FILE.exists():
        return TOKEN_FILE.read_text().strip()
    return None


def save_token(token: str):
    """Save API token."""
    ensure_config_dir()
    TOKEN_FILE.write_text(token)


def clear_token():
    ensure_config_dir()
    if TOKEN_FILE.exists():
        TOKEN_FILE.unlink()


def _load_config() -> dict:
    if CONFIG_FILE.exists():
        return json.loads(CONFIG_FILE.read_text())
    return {}


def save_timezone(tz_name: str):
    ensure_config_dir()
    config = _load_config()
    config["timezone"] = tz_name
    CONFIG_FILE.write_text(json.dumps(config, indent=2))


def get_timezone() -> str:
    """Get user timezone from config, or use system local timezone."""
    ensure_config_dir()
    configured_tz = _load_config().get("timezone")
    if configured_tz:
        return configured_tz

    # /etc/localtime is a symlink into a zoneinfo tree on both macOS and Linux
    localtime_path = Path("/etc/localtime")
    if localtime_path.exists():
        parts = localtime_path.resolve().parts
        for zoneinfo_name in ["zoneinfo", "zoneinfo.default"]:
            if zoneinfo_name in parts:
                tz_name = "/".join(parts[parts.index(zoneinfo_name) + 1:])
                if tz_name:
                    return tz_name

    local_tz = datetime.datetime.now().astimezone().tzinfo
    key = getattr(local_tz, "key", None)
    if key:
        return key

    return "UTC"
