"""
Taskboard configuration.

Loaded from YAML (config/taskboard.yaml by default); environment variables
override the file so secrets never have to live in it:

    TASKBOARD_DB              SQLite path for the local backend / server
    TASKBOARD_API_URL         board server URL (unset = local SQLite backend)
    TASKBOARD_API_SECRET      shared secret for the board server
    TASKBOARD_INTENT_API_KEY  key for the intent service
"""
import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import ConfigError

CONFIG_PATH = Path(__file__).parent.parent / "config" / "taskboard.yaml"

ENV_OVERRIDES = {
    "TASKBOARD_DB": "db_path",
    "TASKBOARD_API_URL": "api_url",
    "TASKBOARD_API_SECRET": "api_key",
    "TASKBOARD_CLIENT_ID": "client_id",
    "TASKBOARD_INTENT_URL": "intent_api_url",
    "TASKBOARD_INTENT_MODEL": "intent_model",
    "TASKBOARD_INTENT_API_KEY": "intent_api_key",
    "TASKBOARD_LOG_LEVEL": "log_level",
}


@dataclass
class TaskboardConfig:
    """Runtime configuration for the server, the bot and embedded sessions."""

    # Persistence
    db_path: str = "~/.local/share/taskboard/taskboard.db"
    api_url: Optional[str] = None       # None = talk to SQLite directly
    api_key: str = ""
    client_id: str = ""                 # empty = random per process
    request_timeout: float = 10.0

    # Change feed
    poll_interval: float = 2.0

    # Intent service (OpenAI-compatible chat completions)
    intent_api_url: str = "https://api.openai.com/v1"
    intent_model: str = "gpt-4o-mini"
    intent_api_key: str = ""
    intent_timeout: float = 30.0

    # Board server
    server_host: str = "127.0.0.1"
    server_port: int = 3000

    # Telegram bot
    telegram_token_env: str = "TASKBOARD_BOT_TOKEN"
    allowed_users: List[int] = field(default_factory=list)

    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in filesystem paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    def telegram_token(self) -> str:
        token = os.environ.get(self.telegram_token_env)
        if not token:
            raise ConfigError(
                f"Environment variable {self.telegram_token_env} is not set.\n"
                f"Set it:  export {self.telegram_token_env}=your_bot_token"
            )
        return token

    def is_authorized(self, user_id: int) -> bool:
        """Allowlist check; an empty allowlist admits nobody."""
        return str(user_id) in {str(uid) for uid in self.allowed_users}

    @classmethod
    def load(cls, path: Optional[str] = None) -> "TaskboardConfig":
        """Load config from YAML, falling back to defaults, then apply env overrides."""
        cfg_path = Path(path) if path else CONFIG_PATH
        data = {}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
        known = {f.name for f in fields(cls)}
        cfg = cls(**{k: v for k, v in data.items() if k in known})

        for env, attr in ENV_OVERRIDES.items():
            value = os.environ.get(env)
            if value:
                setattr(cfg, attr, value)

        try:
            cfg.poll_interval = float(cfg.poll_interval)
            cfg.intent_timeout = float(cfg.intent_timeout)
            cfg.request_timeout = float(cfg.request_timeout)
            cfg.server_port = int(cfg.server_port)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}")
        cfg.resolve_paths()
        return cfg


def setup_logging(level: str = "INFO", name: str = "taskboard") -> None:
    """Log to stdout with the process name in every line."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=f"%(asctime)s [{name}] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
