from typing import Literal

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()
load_dotenv("config.env")


class Settings(BaseSettings):
    gemini_api_key: str = Field(min_length=1)   # will read from .env
    gemini_model: str = "gemini-2.0-flash"
    chat_provider: Literal["gemini", "mock"] = "gemini"
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    max_output_tokens: int = 1024
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("NODE_ENV", "APP_ENV", "environment"),
    )
    allowed_origins: str = (
        "http://localhost:4028,http://127.0.0.1:4028,"
        "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173"
    )
    max_history_turns: int = 10
    stream_idle_timeout: float = 30.0
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 900
    max_body_bytes: int = 10 * 1024
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"
