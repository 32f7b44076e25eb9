"""
Client configuration.

Stored as JSON under ~/.campus_chat/config.json; CAMPUS_CHAT_* environment
variables take precedence over the file.
"""

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from campus_chat.transport.http import DEFAULT_BASE_URL

CONFIG_DIR = Path.home() / ".campus_chat"
CONFIG_FILE = CONFIG_DIR / "config.json"
ENV_PREFIX = "CAMPUS_CHAT_"


class ChatConfig(BaseModel):
    access_token: Optional[str] = None
    user_id: Optional[str] = None
    user_name: str = "Me"
    base_url: str = DEFAULT_BASE_URL

    @property
    def logged_in(self) -> bool:
        return bool(self.access_token and self.user_id)


def load_config(path: Path = CONFIG_FILE) -> ChatConfig:
    try:
        data = json.loads(path.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        data = {}
    for field in ("access_token", "user_id", "user_name", "base_url"):
        value = os.environ.get(ENV_PREFIX + field.upper())
        if value:
            data[field] = value
    return ChatConfig.model_validate(data)


def save_config(cfg: ChatConfig, path: Path = CONFIG_FILE) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg.model_dump(exclude_none=True), indent=2))
