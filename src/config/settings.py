"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Azure Voice Live resource
    azure_resource_name: str
    azure_api_key: str = ""  # Empty = clients must supply a bearer token
    voicelive_endpoint: str = ""  # Empty = derived from resource name
    api_version: str = "2025-10-01"
    default_model: str = "gpt-realtime"

    # Agent mode defaults (overridable per connection)
    agent_id: str = ""
    agent_project_name: str = ""

    # Admission
    # Comma-separated list of exact Origin values; empty = unrestricted
    allowed_origins: str = ""
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 100  # Upgrade attempts per window per IP
    max_connections: int = 100
    trust_forwarded_for: bool = False  # Use X-Forwarded-For behind a reverse proxy

    # Relay
    upstream_connect_timeout: float = 10.0
    upstream_max_frame_bytes: int = 10 * 1024 * 1024
    close_grace_seconds: float = 5.0
    shutdown_grace_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True}

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse comma-separated origins, dropping blanks."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def upstream_base_url(self) -> str:
        if self.voicelive_endpoint:
            return self.voicelive_endpoint.rstrip("/")
        return f"wss://{self.azure_resource_name}.services.ai.azure.com"


@lru_cache
def get_settings() -> Settings:
    return Settings()
