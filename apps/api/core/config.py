"""
Centralized configuration management with validation.

Every environment variable the API reads is declared on Settings. Values
that other modules derive (the SQLAlchemy URL, the CORS origin list) are
exposed as properties so the derivation lives in one place.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

MIN_SECRET_KEY_LENGTH = 32

DEV_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # --- Database -------------------------------------------------------
    # A full URL wins over the POSTGRES_* parts (sqlite for local runs and tests).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="plan_proposals")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # seconds

    # --- Auth -----------------------------------------------------------
    # Verifies bearer tokens minted by the identity service. Required.
    SECRET_KEY: str = Field(
        default=...,
        description="JWT signing key shared with the identity service (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

    # --- HTTP -----------------------------------------------------------
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_RELOAD: bool = Field(default=False)
    EXPOSE_API_DOCS: bool = Field(default=False)
    # Comma-separated allowed origins; DEBUG allows all.
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # --- Runtime --------------------------------------------------------
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json | text

    # --- Plan proposals (coach surface) ---------------------------------
    # When disabled the routes answer 404.
    PLAN_PROPOSALS_ENABLED: bool = Field(default=True)
    BATCH_MAX_PROPOSALS: int = Field(default=100, ge=1, le=1000)
    MAX_DIFF_OPS: int = Field(default=50, ge=1, le=500)

    # --- Policy profiles ------------------------------------------------
    POLICY_DEFAULT_PROFILE_ID: str = Field(default="default")
    # JSON object {profile_id: {override fields}} layered under stored overrides.
    # Malformed values are ignored with a warning.
    POLICY_OVERRIDES_JSON: Optional[str] = Field(default=None)
    # Best-effort cache refresh when the API starts.
    POLICY_REFRESH_ON_STARTUP: bool = Field(default=True)

    # --- Sentry ---------------------------------------------------------
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.1)

    @field_validator("SECRET_KEY")
    @classmethod
    def _secret_key_strength(cls, v: str) -> str:
        if len(v) < MIN_SECRET_KEY_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_KEY_LENGTH} characters")
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def _log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def cors_origins(self) -> list[str]:
        if self.DEBUG:
            return ["*"]
        if self.CORS_ORIGINS:
            return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return list(DEV_CORS_ORIGINS)


# Global settings instance
settings = Settings()
