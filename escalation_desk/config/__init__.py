"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="escalation-desk", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/portal",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Policy ==========
    policy_config_path: Path = Field(
        default=Path("escalation_policy.yaml"),
        description="Path to the role -> capability YAML file"
    )

    # ========== WhatsApp (Twilio) ==========
    twilio_account_sid: Optional[str] = Field(default=None, description="Twilio account SID")
    twilio_auth_token: Optional[str] = Field(default=None, description="Twilio auth token")
    twilio_whatsapp_number: Optional[str] = Field(
        default=None,
        description="Sender WhatsApp number registered with Twilio"
    )
    twilio_content_sid: str = Field(
        default="HXb8745d2932e4f80f72b0733021f10106",
        description="Approved WhatsApp content template SID"
    )
    twilio_api_base_url: str = Field(
        default="https://api.twilio.com/2010-04-01",
        description="Twilio REST API base URL"
    )
    whatsapp_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for WhatsApp API calls",
        ge=0.1,
        le=30
    )
    whatsapp_max_retries: int = Field(
        default=2,
        description="Attempts per recipient before a delivery is recorded as failed",
        ge=1,
        le=5
    )
    notification_sender_name: str = Field(
        default="Escalation Desk",
        description="Sender name shown in outbound messages"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @property
    def whatsapp_configured(self) -> bool:
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_whatsapp_number
        )


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class MatterStatus(str, Enum):
    """Escalation matter lifecycle statuses."""
    OPEN = "OPEN"
    ESCALATED = "ESCALATED"
    ON_HOLD = "ON_HOLD"
    CLOSED = "CLOSED"


class StepAction(str, Enum):
    """Audit vocabulary recorded on matter steps."""
    CREATED = "CREATED"
    ESCALATE = "ESCALATE"
    PROGRESS = "PROGRESS"
    CLOSE = "CLOSE"


class MatterIntent(str, Enum):
    """Caller intents accepted by the lifecycle engine."""
    CREATE = "create"
    ESCALATE = "escalate"
    HOLD = "hold"
    WITHDRAW = "withdraw"
    CLOSE = "close"
    PROGRESS = "progress"
    REMIND = "remind"


class Capability(str, Enum):
    """Capabilities granted to portal roles."""
    RAISE_ESCALATIONS = "raise_escalations"
    RESPOND_ESCALATIONS = "respond_escalations"
    MANAGE_ESCALATIONS = "manage_escalations"
    MANAGE_DAY_CLOSE = "manage_day_close"


class TicketStatus(str, Enum):
    """Ticket statuses the mirror reads and writes."""
    OPEN = "open"
    TRIAGED = "triaged"
    IN_PROGRESS = "in_progress"
    WAITING_USER = "waiting_user"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DeliveryStatus(str, Enum):
    """Outcome of a single notification attempt."""
    SENT = "sent"
    FAILED = "failed"


# ========== Matter rules ==========

MATTER_LEVELS = (1, 2)
MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 200
MAX_NOTE_LENGTH = 2000

HOLD_NOTE_PREFIX = "On hold"
WITHDRAW_NOTE_PREFIX = "Withdrawn by creator"
REMINDER_NOTE_PREFIX = "Reminder"
RESERVED_NOTE_PREFIXES = (HOLD_NOTE_PREFIX, WITHDRAW_NOTE_PREFIX)

DEFAULT_ROLE_CAPABILITIES = {
    "admin": [
        Capability.RAISE_ESCALATIONS,
        Capability.RESPOND_ESCALATIONS,
        Capability.MANAGE_ESCALATIONS,
        Capability.MANAGE_DAY_CLOSE,
    ],
    "team_manager": [Capability.RAISE_ESCALATIONS, Capability.RESPOND_ESCALATIONS],
    "principal": [Capability.RAISE_ESCALATIONS],
    "coordinator": [Capability.RAISE_ESCALATIONS],
    "member": [],
}
