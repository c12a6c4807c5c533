import configparser
import os
import sys
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from wa_gateway.core.errors import ConfigError

# Base directory for internal assets
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Determine execution directory (where the exe or script is)
if getattr(sys, 'frozen', False):
    EXEC_DIR = Path(sys.executable).parent
else:
    EXEC_DIR = BASE_DIR

CONFIG_FILE = EXEC_DIR / "config.ini"

# WhatsApp URL
WHATSAPP_URL = "https://web.whatsapp.com"

DEFAULT_CLIENT_ID = "render-stable-client"

# Settings field -> environment variable
ENV_VARS = {
    "store_url": "SESSION_STORE_URL",
    "api_password": "WHATSAPP_API_PASSWORD",
    "port": "PORT",
    "host": "HOST",
    "client_id": "CLIENT_ID",
    "headless": "HEADLESS",
    "browser_executable_path": "BROWSER_EXECUTABLE_PATH",
    "force_fresh_login": "FORCE_FRESH_LOGIN",
    "external_url": "EXTERNAL_URL",
    "relay_url": "RELAY_URL",
    "startup_delay": "STARTUP_DELAY",
    "retry_base_delay": "RETRY_BASE_DELAY",
    "retry_max_delay": "RETRY_MAX_DELAY",
    "retry_max_attempts": "RETRY_MAX_ATTEMPTS",
    "retry_slow_interval": "RETRY_SLOW_INTERVAL",
    "reconnect_settle_delay": "RECONNECT_SETTLE_DELAY",
    "persist_interval": "PERSIST_INTERVAL",
    "keepalive_interval": "KEEPALIVE_INTERVAL",
    "shutdown_timeout": "SHUTDOWN_TIMEOUT",
    "log_level": "LOG_LEVEL",
}

# Settings field -> (config.ini section, key), consulted when the env var is unset
INI_KEYS = {
    "store_url": ("General", "SESSION_STORE_URL"),
    "api_password": ("General", "TOKEN"),
    "port": ("General", "PORT"),
    "client_id": ("General", "CLIENT_ID"),
    "headless": ("General", "HEADLESS"),
    "relay_url": ("General", "SOCKET_URL"),
    "browser_executable_path": ("Browser", "EXECUTABLE_PATH"),
}


class Settings(BaseModel):
    store_url: str
    api_password: Optional[str] = None
    port: int = 3000
    host: str = "0.0.0.0"
    client_id: str = DEFAULT_CLIENT_ID
    headless: bool = True
    browser_executable_path: Optional[str] = None
    force_fresh_login: bool = False
    external_url: Optional[str] = None
    relay_url: Optional[str] = None

    # Timings, in seconds
    startup_delay: float = 10.0
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    retry_max_attempts: int = 6
    retry_slow_interval: float = 30.0
    reconnect_settle_delay: float = 15.0
    persist_interval: float = 300.0
    keepalive_interval: float = 600.0
    shutdown_timeout: float = 10.0

    log_level: str = "INFO"


def load_settings(env: Optional[Mapping[str, str]] = None, config_file: Optional[Path] = None) -> Settings:
    """Build Settings from the environment, then config.ini, then defaults.

    When `env` is None the process environment is used, after loading a
    `.env` file if one is present.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    ini_config = configparser.ConfigParser()
    ini_config.read(config_file or CONFIG_FILE)

    values = {}
    for field, var in ENV_VARS.items():
        raw = env.get(var)
        if not raw and field in INI_KEYS:
            section, key = INI_KEYS[field]
            raw = ini_config.get(section, key, fallback=None)
        if raw is not None and raw.strip():
            values[field] = raw.strip()

    # Render exposes the public hostname under its own name
    if "external_url" not in values and env.get("RENDER_EXTERNAL_URL"):
        values["external_url"] = env["RENDER_EXTERNAL_URL"].strip()

    if not values.get("store_url"):
        raise ConfigError("SESSION_STORE_URL is required (e.g. sqlite:///data/sessions.db)")

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
