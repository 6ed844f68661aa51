"""
LiveSync Configuration Management

Precedence: built-in defaults < ~/.livesync/config.json < LIVESYNC_* environment
variables < command line flags (applied by the CLI).
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Callable, Dict, Optional, Tuple

from livesync.exceptions import ValidationError


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var -> (attribute, converter)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "LIVESYNC_WS_URL": ("ws_url", str),
    "LIVESYNC_API_URL": ("api_base_url", str),
    "LIVESYNC_TOKEN": ("auth_token", str),
    "LIVESYNC_USER_ID": ("user_id", str),
    "LIVESYNC_USER_NAME": ("user_name", str),
    "LIVESYNC_CONNECT_TIMEOUT": ("connect_timeout", float),
    "LIVESYNC_REQUEST_TIMEOUT": ("request_timeout", float),
    "LIVESYNC_HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
    "LIVESYNC_RECONNECT_BASE_DELAY": ("reconnect_base_delay", float),
    "LIVESYNC_MAX_RECONNECT_ATTEMPTS": ("max_reconnect_attempts", int),
    "LIVESYNC_VERBOSE": ("verbose", _as_bool),
}


@dataclass
class SessionConfig:
    """Settings for one LiveSync session"""

    # Channel
    ws_url: str = "ws://localhost:3001"
    client_version: str = "1.0.0"
    connect_timeout: float = 10.0
    request_timeout: float = 10.0

    # Liveness: a ping every interval; this many unanswered pings drop the channel
    heartbeat_interval: float = 30.0
    missed_pong_threshold: int = 2

    # Reconnection: delay before attempt n is base * 2^(n-1)
    reconnect_base_delay: float = 1.0
    max_reconnect_attempts: int = 5

    # HTTP fallback generation and history retrieval
    api_base_url: str = "http://localhost:8000/api"
    fallback_timeout: float = 300.0

    # Identity (filled in at login)
    auth_token: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None

    verbose: bool = False

    config_dir: str = field(default_factory=lambda: str(Path.home() / ".livesync"))
    history_file: str = ".livesync_history"

    def __post_init__(self):
        if not os.path.isabs(self.history_file):
            self.history_file = str(Path(self.config_dir) / self.history_file)
        self.validate()

    def validate(self) -> None:
        """Reject settings the connection manager cannot work with"""
        if self.max_reconnect_attempts < 1:
            raise ValidationError("max_reconnect_attempts must be at least 1", field="max_reconnect_attempts")
        if self.missed_pong_threshold < 1:
            raise ValidationError("missed_pong_threshold must be at least 1", field="missed_pong_threshold")
        for name in ("connect_timeout", "request_timeout", "heartbeat_interval", "reconnect_base_delay"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive", field=name)

    @property
    def default_path(self) -> Path:
        return Path(self.config_dir) / "config.json"

    def load_from_file(self, config_path: str) -> None:
        """Apply known keys from a JSON file; a missing file is ignored"""
        path = Path(config_path).expanduser()
        if not path.exists():
            return

        with open(path) as f:
            data = json.load(f)

        known = {f.name for f in fields(self)}
        for key, value in data.items():
            if key in known:
                setattr(self, key, value)
        self.validate()

    def save_to_file(self, config_path: Optional[str] = None) -> Path:
        """Write the config as JSON, leaving out the auth token"""
        path = Path(config_path).expanduser() if config_path else self.default_path
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.to_dict()
        data.pop("auth_token", None)
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
        return path

    @classmethod
    def load_default(cls) -> "SessionConfig":
        """Defaults, then the user config file, then the environment"""
        config = cls()
        config.load_from_file(str(config.default_path))
        config.apply_env()
        return config

    def apply_env(self) -> None:
        for env_var, (attr, convert) in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if value:
                setattr(self, attr, convert(value))
        self.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
