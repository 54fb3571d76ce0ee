"""Configuration management for the vArmor policy controller."""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Controller settings, read from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    # Application
    app_name: str = "varmor-policy-controller"
    app_version: str = "0.1.0"
    debug: bool = False

    # Kubernetes
    namespace: str = Field("varmor", description="Namespace the controller runs in")

    # Reconciliation
    workers: int = Field(2, ge=1)
    cache_sync_timeout: float = Field(60.0, description="Seconds; 0 waits forever")
    restart_exist_workloads: bool = False
    enable_defense_in_depth: bool = False
    bpf_exclusive_mode: bool = False
    workload_restart_workers: int = Field(4, ge=1)

    # Redis (status manager mailbox)
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    status_queue_key: str = "varmor:statusmanager:queue"
    status_channel: str = "varmor-status-events"

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_json: bool = False

    # Probes
    liveness_endpoint: str = "http://0.0.0.0:8080/healthz"

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept lowercase level names from the environment."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v):
        if not v:
            raise ValueError("namespace must not be empty")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
