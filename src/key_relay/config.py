"""
Environment-driven settings for the relay.

All values are read from a mapping (normally `os.environ`, after the
application has loaded its `.env` file). Numeric values that fail to parse
fall back to their defaults with a warning, the same way the proxy treats
its per-provider concurrency settings.
"""

import os
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

lib_logger = logging.getLogger("key_relay")

API_TYPES = ("openai", "azure")

DEFAULT_API_HOST = "https://api.openai.com"
DEFAULT_API_VERSION = "2023-03-15-preview"
DEFAULT_KEYS_FILE = "keys.json"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_GLOBAL_TIMEOUT = 30.0
DEFAULT_MAX_TOKENS = 1000


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {name}: {value!r}. Using default ({default}).")
        return default
    if parsed < 1:
        lib_logger.warning(f"Invalid value for {name}: {value!r}. Must be >= 1. Using default ({default}).")
        return default
    return parsed


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {name}: {value!r}. Using default ({default}).")
        return default
    if parsed <= 0:
        lib_logger.warning(f"Invalid value for {name}: {value!r}. Must be > 0. Using default ({default}).")
        return default
    return parsed


@dataclass
class RelaySettings:
    api_key: Optional[str] = None
    key_server: Optional[str] = None
    key_server_auth: Optional[str] = None
    keys_file: str = DEFAULT_KEYS_FILE
    api_host: str = DEFAULT_API_HOST
    api_type: str = "openai"
    api_version: str = DEFAULT_API_VERSION
    organization: Optional[str] = None
    azure_deployment_id: Optional[str] = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    global_timeout: float = DEFAULT_GLOBAL_TIMEOUT
    max_tokens: int = DEFAULT_MAX_TOKENS
    models_json: Optional[str] = None

    def __post_init__(self):
        if self.api_type not in API_TYPES:
            raise ValueError(
                f"Unsupported OPENAI_API_TYPE '{self.api_type}'. Expected one of: {', '.join(API_TYPES)}"
            )
        self.api_host = self.api_host.rstrip("/")

    @property
    def key_server_configured(self) -> bool:
        """The key server is only used when both its address and auth token are set."""
        return bool(self.key_server and self.key_server_auth)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelaySettings":
        env = os.environ if env is None else env
        return cls(
            api_key=env.get("OPENAI_API_KEY") or None,
            key_server=env.get("OPENAI_API_KEY_SERVER") or None,
            key_server_auth=env.get("OPENAI_API_KEY_SERVER_AUTH") or None,
            keys_file=env.get("OPENAI_API_KEYS_FILE") or DEFAULT_KEYS_FILE,
            api_host=env.get("OPENAI_API_HOST") or DEFAULT_API_HOST,
            api_type=(env.get("OPENAI_API_TYPE") or "openai").lower(),
            api_version=env.get("OPENAI_API_VERSION") or DEFAULT_API_VERSION,
            organization=env.get("OPENAI_ORGANIZATION") or None,
            azure_deployment_id=env.get("AZURE_DEPLOYMENT_ID") or None,
            max_attempts=_read_int(env, "RELAY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            global_timeout=_read_float(env, "RELAY_GLOBAL_TIMEOUT", DEFAULT_GLOBAL_TIMEOUT),
            max_tokens=_read_int(env, "RELAY_MAX_TOKENS", DEFAULT_MAX_TOKENS),
            models_json=env.get("RELAY_MODELS") or None,
        )
