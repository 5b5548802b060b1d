"""Configuration objects and helpers for the ticket watcher."""

from __future__ import annotations

from datetime import date
from typing import List, Optional
from urllib.parse import urlencode

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .classifier import UpstreamVariant
from .date_window import enumerate_dates
from .models import CheckKey, PartyComposition

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables."""

    variant: UpstreamVariant = Field(default=UpstreamVariant.LEGACY, validation_alias="TICKET_WATCH_VARIANT")
    legacy_base_url: str = Field(
        default="https://www.polynesia.com/packages/all/super-ambassador-package?_d=",
        validation_alias="TICKET_WATCH_LEGACY_BASE_URL",
    )
    ticketing_base_url: str = Field(
        default="https://ticketing.polynesia.com/BundleSelect.asp",
        validation_alias="TICKET_WATCH_TICKETING_BASE_URL",
    )
    bundle_id: int = Field(default=101, validation_alias="TICKET_WATCH_BUNDLE_ID")
    pricing_tier_id: int = Field(default=100, validation_alias="TICKET_WATCH_PRICING_TIER_ID")
    relay_url: str = Field(default="https://corsproxy.io/?", validation_alias="TICKET_WATCH_RELAY_URL")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, validation_alias="TICKET_WATCH_USER_AGENT")
    fetch_timeout_seconds: float = Field(default=10.0, ge=1.0, le=15.0, validation_alias="TICKET_WATCH_FETCH_TIMEOUT")

    freshness_seconds: float = Field(default=300.0, gt=0, validation_alias="TICKET_WATCH_FRESHNESS_SECONDS")
    request_pause_seconds: float = Field(default=0.2, ge=0, validation_alias="TICKET_WATCH_REQUEST_PAUSE")
    client_poll_seconds: float = Field(default=60.0, gt=0, validation_alias="TICKET_WATCH_CLIENT_POLL_SECONDS")

    warmup_enabled: bool = Field(default=True, validation_alias="TICKET_WATCH_WARMUP")
    warmup_start: date = Field(default=date(2025, 12, 25), validation_alias="TICKET_WATCH_WARMUP_START")
    warmup_end: date = Field(default=date(2025, 12, 29), validation_alias="TICKET_WATCH_WARMUP_END")
    warmup_party_size: int = Field(default=6, ge=1, validation_alias="TICKET_WATCH_WARMUP_PARTY_SIZE")

    notify_email: Optional[str] = Field(default=None, validation_alias="TICKET_WATCH_NOTIFY_EMAIL")
    smtp_user: Optional[str] = Field(default=None, validation_alias="TICKET_WATCH_SMTP_USER")
    smtp_password: Optional[SecretStr] = Field(default=None, validation_alias="TICKET_WATCH_SMTP_PASSWORD")
    smtp_host: str = Field(default="smtp.gmail.com", validation_alias="TICKET_WATCH_SMTP_HOST")
    smtp_port: int = Field(default=587, validation_alias="TICKET_WATCH_SMTP_PORT")
    telegram_bot_token: Optional[SecretStr] = Field(default=None, validation_alias="TICKET_WATCH_TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(default=None, validation_alias="TICKET_WATCH_TELEGRAM_CHAT_ID")
    rearm_on_failed_send: bool = Field(default=True, validation_alias="TICKET_WATCH_REARM_ON_FAILED_SEND")

    host: str = Field(default="0.0.0.0", validation_alias="TICKET_WATCH_HOST")
    port: int = Field(default=3000, validation_alias=AliasChoices("TICKET_WATCH_PORT", "PORT"))
    server_url: str = Field(default="http://localhost:3000", validation_alias="TICKET_WATCH_SERVER_URL")

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("notify_email", "smtp_user", "telegram_chat_id", mode="before")
    @classmethod
    def blank_as_none(cls, value: Optional[str]) -> Optional[str]:
        """Treat empty environment values as unset."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def booking_url(self, key: CheckKey) -> str:
        """Deep link to the booking page for a key, per upstream variant."""
        if self.variant is UpstreamVariant.TICKETING:
            query = urlencode(
                {
                    "BundleID": self.bundle_id,
                    "PricingTierID": self.pricing_tier_id,
                    "Date": key.date_str,
                    "Adults": key.party.adults,
                    "Children": key.party.children,
                }
            )
            return f"{self.ticketing_base_url}?{query}"
        return f"{self.legacy_base_url}{key.date_str}"

    @property
    def email_configured(self) -> bool:
        return bool(self.notify_email and self.smtp_user and _secret(self.smtp_password))

    @property
    def telegram_configured(self) -> bool:
        return bool(_secret(self.telegram_bot_token) and self.telegram_chat_id)

    @property
    def telegram_api_endpoint(self) -> str:
        """Base Telegram Bot API endpoint."""
        return f"https://api.telegram.org/bot{_secret(self.telegram_bot_token)}"

    def warmup_keys(self) -> List[CheckKey]:
        """Keys seeded into the cache at start-up."""
        party = PartyComposition.from_headcount(self.warmup_party_size)
        return [CheckKey.for_date(day, party) for day in enumerate_dates(self.warmup_start, self.warmup_end)]


def _secret(value: Optional[SecretStr]) -> str:
    return value.get_secret_value() if value is not None else ""
