"""Settings via pydantic-settings with PALAVER_ env prefix.

Credential and host fields use validation_alias to read the same unprefixed
env vars the surrounding tools already use (OLLAMA_HOST, BRAVE_SEARCH_API_KEY,
TELEGRAM_BOT_TOKEN), so a single .env file drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PALAVER_", env_file=".env", extra="ignore")

    agent_id: str = "default"
    log_level: str = "info"

    # Storage
    state_dir: str = "./state"
    workspaces_dir: str = "./workspaces"

    # Model backend (Ollama chat API)
    model: str = "gpt-oss:20b"
    model_base_url: str = Field("http://localhost:11434", validation_alias="OLLAMA_HOST")
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds, local models can be slow

    # Turn loop
    max_rounds: int = 5  # Max model round-trips per turn
    turn_timeout: int = 600  # seconds, enforced by front ends

    # Web search
    web_search_enabled: bool = True
    search_engine: Literal["duckduckgo", "brave"] = "duckduckgo"
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")

    # HTTP front end
    host: str = "0.0.0.0"
    port: int = 3333

    # Telegram bridge
    telegram_bot_token: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_prefix: str = "/ai"
    telegram_allowed_users: str = ""  # Comma-separated Telegram user IDs
    api_url: str = "http://localhost:3333"
    dedup_capacity: int = 300

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_rounds < 1:
            raise ValueError(f"max_rounds must be >= 1 (got {self.max_rounds})")
        if self.dedup_capacity < 1:
            raise ValueError(f"dedup_capacity must be >= 1 (got {self.dedup_capacity})")
        return self

    @property
    def sessions_dir(self) -> str:
        return f"{self.state_dir.rstrip('/')}/sessions"

    @property
    def allowed_user_ids(self) -> set[int]:
        return {int(uid.strip()) for uid in self.telegram_allowed_users.split(",") if uid.strip()}
