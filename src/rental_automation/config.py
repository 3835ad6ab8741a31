"""Configuration for the rental automation system."""

import re
from datetime import time
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModeTag(str, Enum):
    """Lifecycle transitions that may carry a configured house mode."""

    CHECKIN = "checkin"
    CHECKOUT = "checkout"
    ARRIVING_SOON = "arriving_soon"


class ExtractionPattern(BaseModel):
    """Regexes pulling the reservation identifier and phone fragment out of a description.

    Each pattern must contain exactly one capture group.
    """

    reservation: str
    phone: str


# Per-platform extraction rules. "default" is used for any platform without its own entry.
DEFAULT_EXTRACTION_PATTERNS: dict[str, ExtractionPattern] = {
    "airbnb": ExtractionPattern(
        reservation=r"/details/([A-Z0-9]+)",
        phone=r"Last 4 Digits\):\s*(\d{4})",
    ),
    "vrbo": ExtractionPattern(
        reservation=r"Reservation ID:\s*([A-Z0-9-]+)",
        phone=r"Phone[^:\n]*:\s*[+\d\s().-]*?(\d{4})\b",
    ),
    "default": ExtractionPattern(
        reservation=r"\b([A-Z]{2,}[A-Z0-9]*\d[A-Z0-9]*)\b",
        phone=r"(?<!\d)(\d{4})(?!\d)",
    ),
}

# Summaries of placeholder blocks that never represent a guest stay
UNAVAILABLE_SUMMARIES = frozenset({
    "not available",
    "airbnb (not available)",
    "blocked",
    "unavailable",
})


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="RENTAL_",
    )

    # Device automation API (e.g. "http://hub.local/apps/api/12")
    device_api_url: str = ""
    device_api_token: str = ""
    device_api_timeout: float = 30.0

    # Locks receiving the guest code, by device id or label
    lock_devices: list[str] = Field(default_factory=list)
    lock_code_slot: str = "3"

    # Calendar feeds keyed by platform tag (e.g. {"airbnb": "https://..."})
    calendar_feeds: dict[str, str] = Field(default_factory=dict)
    calendar_poll_interval: int = 600
    feed_fetch_attempts: int = 5
    feed_retry_interval: int = 30
    allow_empty_feed: bool = False
    extraction_patterns: dict[str, ExtractionPattern] = Field(
        default_factory=lambda: dict(DEFAULT_EXTRACTION_PATTERNS)
    )

    # Check-in / check-out timing
    timezone: str = "America/New_York"
    arrival_time: str = "3:00P"
    departure_time: str = "11:00A"
    arriving_soon_time: Optional[str] = None
    arriving_soon_days_before: int = 0

    # House modes per transition (None = no mode change)
    checkin_mode: Optional[str] = None
    checkout_mode: Optional[str] = None
    arriving_soon_mode: Optional[str] = None
    mode_cooldown_seconds: int = 60

    run_checkout_immediately_if_reservation_is_cancelled_mid_stay: bool = False

    # Lock code programming
    code_set_max_attempts: int = 3
    code_retry_backoff_seconds: float = 30.0
    code_settle_seconds: float = 5.0

    # Persistence
    data_dir: str = "./data"
    store_write_cooldown_seconds: float = 2.0
    store_watch_interval_seconds: float = 5.0

    # Push-style notifications (optional webhook)
    notify_url: Optional[str] = None

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False


class AutomationConfig(BaseModel):
    """Configuration resolved once at start-up and handed to components as plain data."""

    model_config = {"frozen": True}

    timezone: str
    arrival_time: time
    departure_time: time
    arriving_soon_time: Optional[time] = None
    arriving_soon_days_before: int = 0
    modes: dict[ModeTag, Optional[str]] = Field(default_factory=dict)
    lock_devices: tuple[str, ...] = ()
    lock_code_slot: str = "3"
    run_checkout_immediately_if_reservation_is_cancelled_mid_stay: bool = False
    extraction_patterns: dict[str, ExtractionPattern] = Field(
        default_factory=lambda: dict(DEFAULT_EXTRACTION_PATTERNS)
    )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def mode_for(self, tag: ModeTag) -> Optional[str]:
        """Get the configured mode name for a transition, if any."""
        return self.modes.get(tag)

    def pattern_for(self, platform: str) -> ExtractionPattern:
        """Get the extraction rules for a platform, falling back to "default"."""
        pattern = self.extraction_patterns.get(platform.lower())
        if pattern is None:
            pattern = self.extraction_patterns.get(
                "default", DEFAULT_EXTRACTION_PATTERNS["default"]
            )
        return pattern


_TIME_12H = re.compile(r"^(\d{1,2}):(\d{2})(A|P)M?$")
_TIME_24H = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time_of_day(value: str) -> time:
    """Parse a configured time of day.

    Accepts "3:00P", "3:00 PM", "11:00a" and 24-hour "15:00".

    Raises:
        ValueError: If the string is not a recognised time of day
    """
    cleaned = re.sub(r"\s", "", value or "").upper()

    match = _TIME_12H.match(cleaned)
    if match:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3)
        if not 1 <= hour <= 12:
            raise ValueError(f"Could not parse time of day: {value!r}")
        if meridiem == "A" and hour == 12:
            hour = 0
        elif meridiem == "P" and hour < 12:
            hour += 12
    else:
        match = _TIME_24H.match(cleaned)
        if not match:
            raise ValueError(f"Could not parse time of day: {value!r}")
        hour, minute = int(match.group(1)), int(match.group(2))

    if hour > 23 or minute > 59:
        raise ValueError(f"Could not parse time of day: {value!r}")
    return time(hour, minute)


def build_automation_config(settings: "Settings") -> AutomationConfig:
    """Resolve settings into the value object used by the engine."""
    # Fail fast on an unknown timezone
    ZoneInfo(settings.timezone)

    arriving_soon = None
    if settings.arriving_soon_time:
        arriving_soon = parse_time_of_day(settings.arriving_soon_time)

    return AutomationConfig(
        timezone=settings.timezone,
        arrival_time=parse_time_of_day(settings.arrival_time),
        departure_time=parse_time_of_day(settings.departure_time),
        arriving_soon_time=arriving_soon,
        arriving_soon_days_before=settings.arriving_soon_days_before,
        modes={
            ModeTag.CHECKIN: settings.checkin_mode,
            ModeTag.CHECKOUT: settings.checkout_mode,
            ModeTag.ARRIVING_SOON: settings.arriving_soon_mode,
        },
        lock_devices=tuple(settings.lock_devices),
        lock_code_slot=settings.lock_code_slot,
        run_checkout_immediately_if_reservation_is_cancelled_mid_stay=(
            settings.run_checkout_immediately_if_reservation_is_cancelled_mid_stay
        ),
        extraction_patterns={
            platform.lower(): pattern
            for platform, pattern in settings.extraction_patterns.items()
        },
    )


# Global settings instance
settings = Settings()
