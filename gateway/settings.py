import logging
import os
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from ledger.errors import ConfigError


class DeploymentMode(str, Enum):
    """Who performs the authoritative credit write.

    Fixed for the lifetime of a deployment; the two modes are mutually
    exclusive.
    """

    SECURE_BACKEND = "secure-backend"
    LEGACY = "legacy"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


class Settings(BaseModel):
    jwt_secret: Optional[str] = None
    deployment_mode: DeploymentMode = DeploymentMode.SECURE_BACKEND
    starting_credits: int = Field(default=10, ge=0)
    default_feature_cost: int = Field(default=1, ge=0)
    expose_error_detail: bool = False
    log_level: str = "INFO"
    payment_webhook_secret: Optional[str] = None
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.3-70b-versatile"
    provider_timeout_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> "Settings":
        mode = os.getenv("LEDGER_DEPLOYMENT_MODE", DeploymentMode.SECURE_BACKEND.value)
        try:
            deployment_mode = DeploymentMode(mode.strip().lower())
        except ValueError as e:
            raise ConfigError(f"Unknown LEDGER_DEPLOYMENT_MODE: {mode!r}") from e

        return cls(
            jwt_secret=os.getenv("LEDGER_JWT_SECRET"),
            deployment_mode=deployment_mode,
            starting_credits=_env_int("LEDGER_STARTING_CREDITS", 10),
            default_feature_cost=_env_int("LEDGER_DEFAULT_FEATURE_COST", 1),
            expose_error_detail=_env_bool("LEDGER_EXPOSE_ERROR_DETAIL"),
            log_level=os.getenv("LEDGER_LOG_LEVEL", "INFO"),
            payment_webhook_secret=os.getenv("PAYMENT_WEBHOOK_SECRET"),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
            provider_timeout_seconds=float(_env_int("PROVIDER_TIMEOUT_SECONDS", 60)),
        )

    def require_jwt_secret(self) -> str:
        if not self.jwt_secret:
            raise ConfigError("Server configuration error: LEDGER_JWT_SECRET is missing")
        return self.jwt_secret


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
