from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    store_backend: str = "memory"
    database_url: str = "sqlite:///./siteledger.db"
    store_timeout_seconds: float = 5.0
    budget_category: str = "Daily Budget"
    backend_cors_origins: str = "*"

    model_config = SettingsConfigDict(
        env_prefix="SITELEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from a comma-separated string"""
        return [origin.strip() for origin in self.backend_cors_origins.split(",") if origin.strip()]


settings = Settings()
