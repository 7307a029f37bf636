import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:1234"
STATE_FILENAME = "chat_state_v1.json"


class ConfigError(Exception):
    pass


def get_optional_env(name: str, default: str) -> str:
    value = os.environ.get(name, "").strip()
    return value or default


@dataclass
class TransportConfig:
    connect_timeout_s: float = 10.0
    chat_timeout_s: float = 60.0
    title_timeout_s: float = 30.0
    models_timeout_s: float = 10.0
    chat_max_tokens: int = 4096
    title_max_tokens: int = 64
    temperature: float = 0.7


@dataclass
class TetherConfig:
    server_url: str = field(
        default_factory=lambda: get_optional_env("TETHER_SERVER_URL", DEFAULT_SERVER_URL)
    )
    data_dir: str = field(
        default_factory=lambda: get_optional_env(
            "TETHER_DATA_DIR", str(Path("~/.tether").expanduser())
        )
    )
    profiles_path: str | None = field(
        default_factory=lambda: os.environ.get("TETHER_PROFILES_PATH") or None
    )
    default_profile: str | None = field(
        default_factory=lambda: os.environ.get("TETHER_DEFAULT_PROFILE") or None
    )
    user_name: str = field(default_factory=lambda: get_optional_env("TETHER_USER_NAME", ""))
    user_pronouns: str = field(
        default_factory=lambda: get_optional_env("TETHER_USER_PRONOUNS", "")
    )
    save_debounce_s: float = 0.35
    transport: TransportConfig = field(default_factory=TransportConfig)

    @property
    def state_path(self) -> Path:
        return Path(self.data_dir) / STATE_FILENAME

    @property
    def resolved_profiles_path(self) -> Path:
        if self.profiles_path:
            return Path(self.profiles_path).expanduser()
        return Path(self.data_dir) / "profiles.yaml"

    @classmethod
    def from_env(cls) -> "TetherConfig":
        return cls()

    def validate(self) -> None:
        from tether.transport import normalize_base_url

        normalized = normalize_base_url(self.server_url)
        try:
            url = httpx.URL(normalized)
        except httpx.InvalidURL as e:
            raise ConfigError(f"Invalid server URL {self.server_url!r}: {e}") from e
        if not url.host:
            raise ConfigError(f"Invalid server URL {self.server_url!r}: missing host")
        if self.save_debounce_s < 0:
            raise ConfigError("save_debounce_s must be >= 0")
        t = self.transport
        for name in ("connect_timeout_s", "chat_timeout_s", "title_timeout_s", "models_timeout_s"):
            if getattr(t, name) <= 0:
                raise ConfigError(f"transport.{name} must be > 0")
        if t.chat_max_tokens < 1 or t.title_max_tokens < 1:
            raise ConfigError("transport token budgets must be at least 1")
        if not 0.0 <= t.temperature <= 2.0:
            raise ConfigError("transport.temperature must be between 0 and 2")
        logger.debug(f"Configuration validated: server={normalized} data_dir={self.data_dir}")
