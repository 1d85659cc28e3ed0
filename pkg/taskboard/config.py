# Taskboard — configuration
# Override via config.yaml, environment variables or CLI args (server only).

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent.parent.parent / "config.yaml"

# Environment variable → field
ENV_OVERRIDES = {
    "TASKBOARD_DB": "db_path",
    "TASKBOARD_API_SECRET": "api_secret",
    "TASKBOARD_LOG_LEVEL": "log_level",
}


@dataclass
class BoardConfig:
    """Runtime configuration for the board server and clients."""

    # Storage
    db_path: str = "~/.local/share/taskboard/board.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 5000
    api_secret: str = ""
    log_level: str = "INFO"

    # Rate limiting: per user, sliding window
    rate_limit_max: int = 100
    rate_limit_window_secs: float = 900.0  # 15 min

    # Live channel
    heartbeat_secs: float = 15.0
    subscriber_queue_size: int = 256

    # Client
    request_timeout: float = 10.0

    def resolve(self):
        """Apply environment overrides and expand ~."""
        for env, attr in ENV_OVERRIDES.items():
            value = os.environ.get(env)
            if value:
                setattr(self, attr, value)
        self.db_path = str(Path(self.db_path).expanduser())
        self.log_level = self.log_level.upper()

    @classmethod
    def load(cls, path: Optional[str] = None) -> "BoardConfig":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        known = {f.name for f in fields(cls)}
        cfg = cls()
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except (yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
        cfg.resolve()
        return cfg
