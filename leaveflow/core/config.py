import os
import logging
from pydantic import BaseModel, Field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class LeaveSettings(BaseModel):
    # Missing policy: hard failure when true, single-level fallback when false
    strict_policy_lookup: bool = Field(default=_env_flag("LEAVE_STRICT_POLICY_LOOKUP", "false"))
    reject_overlaps: bool = Field(default=_env_flag("LEAVE_REJECT_OVERLAPS", "true"))
    balance_exempt_types: List[str] = Field(
        default_factory=lambda: _env_list("LEAVE_BALANCE_EXEMPT_TYPES", "Unpaid")
    )
    accrual_retry_attempts: int = Field(default=int(os.getenv("ACCRUAL_RETRY_ATTEMPTS", "3")))
    # Shortest rejection comment accepted; 0 lets approvers reject without one
    rejection_min_comment_length: int = Field(default=int(os.getenv("LEAVE_REJECTION_MIN_COMMENT_LENGTH", "10")))


class Config(BaseModel):
    app_name: str = "Leave Workflow Service"
    environment: str = os.getenv("APP_ENV", "development")
    api_prefix: str = "/api"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./leaveflow.db")

    # Auth (tokens are issued by the identity provider; we only verify them)
    secret_key: str = os.getenv("SECRET_KEY", "dev-only-insecure-key-DO-NOT-USE-IN-PROD")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

    # Workflow behaviour
    leave: LeaveSettings = LeaveSettings()

    version: str = "1.0.0"
    request_id_header: str = "X-Request-ID"

    cors_origins: List[str] = Field(
        default_factory=lambda: _env_list(
            "CORS_ORIGINS",
            "http://localhost:3000,http://localhost:3001,"
            "http://127.0.0.1:3000,http://127.0.0.1:3001",
        )
    )


settings = Config()

# --- Startup Validation for Production ---
_logger = logging.getLogger(__name__)
if settings.environment not in ("development", "testing"):
    if "dev-only" in settings.secret_key:
        raise RuntimeError(
            "FATAL: SECRET_KEY must be set for non-development environments. "
            "Set it as an environment variable."
        )
elif "dev-only" in settings.secret_key:
    _logger.warning("Using insecure default SECRET_KEY, only acceptable in development.")
