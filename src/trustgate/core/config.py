"""
TrustGate Core Configuration
Environment driven settings for the MFA credential engine and the risk engine.
"""

import ipaddress
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_list(v: Any) -> Any:
    if isinstance(v, str):
        if v.strip().startswith("["):
            return json.loads(v)
        return [i.strip() for i in v.split(",") if i.strip()]
    return v


class Settings(BaseSettings):
    """
    TrustGate Configuration Settings
    """

    # Application
    APP_NAME: str = "TrustGate"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./trustgate.db"
    DATABASE_ECHO: bool = False

    # Short-lived state (pending SMS codes, device trust history)
    CACHE_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security
    SECRET_ENCRYPTION_KEY: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Path = Path("logs")
    LOG_TO_FILE: bool = True

    # Clock
    TIMEZONE: str = "UTC"

    # Credential engine
    MFA_ISSUER_NAME: str = "TrustGate"
    TOTP_INTERVAL: int = 30
    TOTP_DIGITS: int = 6
    TOTP_VALID_WINDOW: int = 2
    BACKUP_CODE_COUNT: int = 10
    BACKUP_CODE_BYTES: int = 4
    SMS_CODE_TTL_SECONDS: int = 10 * 60
    MFA_LOCKOUT_THRESHOLD: Optional[int] = None

    # Zero-trust policy
    TRUSTED_NETWORKS: Annotated[List[str], NoDecode] = ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]
    BLACKLISTED_IPS: Annotated[List[str], NoDecode] = []
    DEVICE_TRUST_THRESHOLD: float = 0.7
    DEVICE_TRUST_TTL_SECONDS: int = 30 * 24 * 60 * 60
    BEHAVIOR_WINDOW_HOURS: int = 24
    BEHAVIOR_EVENT_SAMPLE: int = 50
    RISK_WINDOW_MINUTES: int = 60
    BUSINESS_HOURS_START: int = 9
    BUSINESS_HOURS_END: int = 18

    # Location enrichment
    GEOLOCATION_API_URL: Optional[str] = None
    GEOLOCATION_TIMEOUT: float = 3.0

    # Analytics
    ANALYTICS_TOP_IPS: int = 10

    @field_validator("TRUSTED_NETWORKS", mode="before")
    @classmethod
    def assemble_trusted_networks(cls, v: Any) -> List[str]:
        v = _split_list(v)
        if not isinstance(v, list):
            raise ValueError(v)
        for network in v:
            ipaddress.ip_network(network, strict=False)
        return v

    @field_validator("BLACKLISTED_IPS", mode="before")
    @classmethod
    def assemble_blacklist(cls, v: Any) -> List[str]:
        v = _split_list(v)
        if not isinstance(v, list):
            raise ValueError(v)
        for address in v:
            ipaddress.ip_address(address)
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("CACHE_BACKEND")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError(f"Unsupported cache backend: {v}")
        return v

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_prefix="TRUSTGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
