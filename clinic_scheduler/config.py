# clinic_scheduler/config.py - Configuration management
from dotenv import load_dotenv

load_dotenv()
import os
from typing import Optional, Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "Clinic Scheduler"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(default="sqlite:///./clinic_scheduler.db", alias="DATABASE_URL")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    booking_rate_limit: str = Field(default="30/minute", alias="BOOKING_RATE_LIMIT")

    # Scheduling
    default_appointment_duration: int = Field(default=30, alias="DEFAULT_APPOINTMENT_DURATION")
    max_recurring_count: int = Field(default=52, alias="MAX_RECURRING_COUNT")

    # Session allowance ledger
    annual_free_session_cap: int = Field(default=500, alias="ANNUAL_FREE_SESSION_CAP")
    capped_benefit_patient_type: str = Field(default="DYES", alias="CAPPED_BENEFIT_PATIENT_TYPE")
    transaction_max_retries: int = Field(default=3, alias="TRANSACTION_MAX_RETRIES")

    # Audit
    audit_institution_id: Optional[str] = Field(default=None, alias="AUDIT_INSTITUTION_ID")

    # --- Pydantic V2 Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("default_appointment_duration", "max_recurring_count", "annual_free_session_cap")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("transaction_max_retries")
    @classmethod
    def validate_retries(cls, v):
        if v < 1:
            raise ValueError("TRANSACTION_MAX_RETRIES must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


class DevelopmentConfig(Settings):
    """Development environment configuration"""
    debug: bool = True
    environment: str = "development"


class ProductionConfig(Settings):
    """Production environment configuration"""
    debug: bool = False
    environment: str = "production"
    log_json: bool = True


class TestingConfig(Settings):
    """Testing environment configuration"""
    debug: bool = True
    environment: str = "testing"
    database_url: str = "sqlite://"
    rate_limit_enabled: bool = False


def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    configs = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig
    }

    config_class = configs.get(env.lower(), Settings)
    return config_class()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings for the environment named by ENVIRONMENT"""
    return get_config_by_env(os.getenv("ENVIRONMENT", "development"))

# Note: Do not instantiate settings at import time.
# Use `get_settings()` instead.
