# /dmfy/config/settings.py

from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Meta Graph API
    page_access_token: Optional[str] = None
    graph_api_base_url: str = "https://graph.facebook.com"
    graph_api_version: str = "v20.0"
    send_timeout_seconds: float = 5.0

    # Conversation state
    session_ttl_hours: float = 24
    default_tenant_key: str = "default"

    # App Behavior
    environment: str = Field(default="production")
    port: int = 3000

    # Comma-separated; the dashboard is served from another origin.
    cors_allowed_origins: str = Field(default="*")

    # Security / Limits
    api_key: Optional[str] = None
    rate_limit_per_minute: int = 100

    # Observability
    alerting_webhook_url: Optional[str] = None

    # ---------------- Validators ---------------- #

    @field_validator("send_timeout_seconds", "session_ttl_hours")
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]

    @property
    def messages_url(self) -> str:
        return f"{self.graph_api_base_url.rstrip('/')}/{self.graph_api_version}/me/messages"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
