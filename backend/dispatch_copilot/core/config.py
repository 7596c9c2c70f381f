"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI-compatible completion service
    openai_api_key: str = ""
    openai_base_url: str | None = None
    llm_model: str = "gpt-4.1-mini"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 800

    # Dispatch assistant loop
    assistant_enabled: bool = True
    assistant_max_iterations: int = 5
    assistant_history_window: int = 10
    assistant_completion_timeout_seconds: float = 30.0
    assistant_turn_timeout_seconds: float = 90.0

    # Application
    log_level: str = "INFO"
    log_format: str = "console"
    dispatch_db_path: str = "./data/dispatch.db"
    auth_enabled: bool = False
    default_org_id: str = "demo-org"
    org_tokens: str = ""

    # Fleet / telemetry
    fleet_provider_timeout_seconds: float = 8.0
    fleet_default_limit: int = 20
    google_maps_api_key: str = ""
    google_geocode_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    geocode_max_per_call: int = 10
    geocode_timeout_seconds: float = 6.0

    def resolved_openai_api_key(self) -> str | None:
        """
        Resolve API key for OpenAI-compatible clients.

        Local endpoints (e.g. Ollama) often do not require a real key, but the
        OpenAI SDK still expects a non-empty value.
        """
        key = (self.openai_api_key or "").strip()
        if key and key != "sk-your-key-here":
            return key
        if self._is_local_base_url():
            return "local-dev"
        return None

    def _is_local_base_url(self) -> bool:
        if not self.openai_base_url:
            return False
        try:
            host = (urlparse(self.openai_base_url).hostname or "").lower()
        except ValueError:
            return False
        return host in {"localhost", "127.0.0.1", "::1"} or host.endswith(".local")

    def bounded_max_iterations(self) -> int:
        return max(1, min(int(self.assistant_max_iterations), 12))

    def bounded_history_window(self) -> int:
        return max(0, int(self.assistant_history_window))


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
