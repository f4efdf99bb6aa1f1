"""
Configuration settings for the PCM protocol advisor
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).resolve().parent / "data"


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Service
    service_name: str = "pcm-advisor"

    # Knowledge base
    kb_scope: str = "pcm"
    kb_path: Optional[str] = None
    metadata_path: Optional[str] = None
    provider_impressions_path: Optional[str] = None

    # Database-backed retrieval (PostgREST-style protocol API)
    use_database_protocols: bool = False
    protocol_api_url: str = ""
    protocol_api_key: str = ""
    protocol_api_timeout: float = 10.0

    # Circuit breaker (seconds)
    circuit_breaker_threshold: int = 3
    circuit_breaker_timeout: float = 60.0
    circuit_breaker_reset_timeout: float = 30.0
    circuit_breaker_half_open_requests: int = 3

    # Protocol cache (seconds)
    protocol_cache_ttl: float = 3600.0

    # Retrieval
    retrieval_default_limit: int = 6
    enable_markdown_context: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @property
    def knowledge_base_file(self) -> Path:
        return Path(self.kb_path) if self.kb_path else DATA_DIR / "knowledge_base.json"

    @property
    def metadata_file(self) -> Path:
        return Path(self.metadata_path) if self.metadata_path else DATA_DIR / "protocol_metadata.json"

    @property
    def provider_impressions_file(self) -> Path:
        if self.provider_impressions_path:
            return Path(self.provider_impressions_path)
        return DATA_DIR / "provider_impressions.json"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
