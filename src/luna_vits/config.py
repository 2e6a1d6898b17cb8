"""Centralised configuration via pydantic-settings + .env."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All knobs live here.  Loaded from environment / .env in project root."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Gradio app ──────────────────────────────────────
    gradio_url: str = "http://localhost:7860"
    gradio_hf_token: str = ""
    gradio_auth_username: str = ""
    gradio_auth_password: str = ""
    gradio_endpoint: str = ""
    gradio_processor: str = "bert-vits2"
    gradio_with_null_state: bool = False

    # ── Synthesis ───────────────────────────────────────
    default_language: str = "ZH"
    max_input_length: int = 256
    max_clients: int = 8

    # ── Logging / Metrics ───────────────────────────────
    log_level: str = "INFO"
    metrics_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────
    @property
    def gradio_auth(self) -> tuple[str, str] | None:
        if self.gradio_auth_username:
            return (self.gradio_auth_username, self.gradio_auth_password)
        return None

    @property
    def gradio_endpoint_id(self) -> str | int | None:
        """Endpoint selector: numeric strings become fn indices."""
        value = self.gradio_endpoint.strip()
        if not value:
            return None
        if value.isdigit():
            return int(value)
        return value if value.startswith("/") else f"/{value}"

    @field_validator("gradio_url")
    @classmethod
    def _gradio_url_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError(
                "GRADIO_URL is required. "
                "Set it in .env or as an environment variable."
            )
        return v


def get_settings() -> Settings:
    """Singleton-ish factory; import and call where needed."""
    return Settings()
