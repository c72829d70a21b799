"""Application configuration for the PEPPOL integration."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration with sane defaults."""

    model_config = SettingsConfigDict(env_prefix="PEPPOL_TOOL_", case_sensitive=False)

    database_url: str = Field(
        "sqlite:///./peppol.db",
        description="SQLAlchemy-compatible connection string.",
    )
    archive_path: Path = Field(
        Path("storage/ubl"),
        description="Root directory for immutable UBL documents.",
    )
    sender_vat_number: Optional[str] = Field(
        None,
        description="VAT number of the sending company, used as the PEPPOL sender.",
    )
    currency: str = Field(
        "EUR",
        description="Default document currency.",
    )
    access_point_url: str = Field(
        "https://api.scrada.be",
        description="Base URL of the access point provider REST API.",
    )
    api_key: Optional[str] = Field(None, description="Access point API key.")
    api_secret: Optional[str] = Field(None, description="Access point API secret.")
    company_id: Optional[str] = Field(
        None,
        description="Company identifier at the access point provider.",
    )
    timeout: float = Field(
        30.0,
        description="Timeout in seconds for each access point request.",
    )
    dispatch_delay_days: int = Field(
        0,
        ge=0,
        description="Days between scheduling and dispatch when no dispatch time is given.",
    )
    max_dispatch_attempts: int = Field(
        3,
        ge=1,
        description="Transmission attempts before a transient failure becomes permanent.",
    )
    retry_delay_minutes: int = Field(
        60,
        ge=0,
        description="Base delay between dispatch retries, multiplied by the attempt number.",
    )
    dispatch_claim_timeout_minutes: int = Field(
        30,
        ge=1,
        description="Minutes after which an unfinished dispatch claim may be taken over.",
    )
    lookup_cache_hours: int = Field(
        168,
        ge=0,
        description="Hours a cached participant lookup stays valid.",
    )
    poll_max_attempts: int = Field(
        5,
        ge=1,
        description="Maximum number of status polls for a sent invoice.",
    )
    poll_retry_hours: Annotated[list[int], NoDecode] = Field(
        default_factory=lambda: [1, 4, 12, 24, 48],
        description="Hours to wait before each subsequent status poll.",
    )
    circuit_failure_threshold: int = Field(
        5,
        ge=1,
        description="Consecutive connector failures that open the circuit.",
    )
    circuit_timeout_seconds: int = Field(
        300,
        ge=0,
        description="Seconds the circuit stays open before a trial call is let through.",
    )
    circuit_success_threshold: int = Field(
        2,
        ge=1,
        description="Successful trial calls needed to close a half-open circuit.",
    )
    allowed_hosts: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["localhost", "127.0.0.1", "testserver"],
        description="Whitelisted host headers accepted by the API.",
    )
    allowed_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Origins allowed for cross-origin requests; empty disables CORS.",
    )
    expose_docs: bool = Field(
        False,
        description="Expose interactive API documentation endpoints.",
    )

    @field_validator("archive_path", mode="before")
    @classmethod
    def _ensure_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value
        return Path(str(value))

    @field_validator("allowed_hosts", "allowed_origins", mode="before")
    @classmethod
    def _split_comma_separated(cls, value: Any):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("poll_retry_hours", mode="before")
    @classmethod
    def _split_hours(cls, value: Any):
        if isinstance(value, str):
            return [int(item) for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Return memoized settings instance."""

    settings = Settings()
    settings.archive_path.mkdir(parents=True, exist_ok=True)
    return settings
