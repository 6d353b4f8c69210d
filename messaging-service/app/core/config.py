from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List, Optional
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database (optional - stores are unavailable without it, the socket layer still starts)
    DATABASE_URL: Optional[str] = None

    # Redis (optional - push receipt queue and task-update publishing are disabled without it)
    REDIS_URL: Optional[str] = None

    # CORS - Stored as string, parsed via get_cors_origins() method
    CORS_ORIGINS: Optional[str] = None

    def get_cors_origins(self) -> List[str]:
        """Parse CORS_ORIGINS from comma-separated string or JSON array"""
        if not self.CORS_ORIGINS:
            return []
        v = self.CORS_ORIGINS.strip()
        if not v:
            return []
        # Try JSON array first
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # JWT Secret for validating tokens issued by the user service
    JWT_SECRET: str = ""

    # Shared key for service-to-service calls (offer events, user lookups)
    INTERNAL_API_KEY: str = ""

    # User directory
    USER_SERVICE_URL: str = "http://localhost:5000"
    USER_CACHE_TTL_SECONDS: int = 60
    USER_CACHE_MAX_SIZE: int = 5000

    # Expo push provider
    EXPO_ACCESS_TOKEN: Optional[str] = None
    PUSH_TIMEOUT_SECONDS: float = 10.0
    PUSH_BODY_MAX_LENGTH: int = 100  # Content snippet length for message pushes
    PUSH_RECEIPT_INTERVAL_SECONDS: int = 900  # Expo keeps receipts for ~24h

    @field_validator("USER_SERVICE_URL")
    @classmethod
    def clean_service_url(cls, v: str) -> str:
        """Strip trailing slashes so paths can be appended."""
        return v.strip().rstrip("/")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Singleton instance for direct imports
settings = get_settings()
