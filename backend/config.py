# backend/config.py
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

load_dotenv()

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar.events"]


@dataclass(frozen=True)
class GoogleClientConfig:
    """OAuth client the token store refreshes against."""
    client_id: str
    client_secret: str
    token_uri: str = GOOGLE_TOKEN_URI
    scopes: tuple = tuple(CALENDAR_SCOPES)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class CalendarSyncConfig:
    calendar_id: str = "primary"
    timezone: str = "Asia/Kolkata"
    timeout_seconds: float = 10.0
    match_tolerance: timedelta = timedelta(seconds=2)
    search_window: timedelta = timedelta(hours=24)
    max_candidates: int = 5


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./scribly.db"
    client_url: str = "http://localhost:5173"
    access_token_secret: str = Field(min_length=1)
    refresh_token_secret: str = Field(min_length=1)
    access_token_expire_minutes: int = Field(default=15, gt=0)
    refresh_token_expire_minutes: int = Field(default=60 * 24 * 7, gt=0)
    session_secret_key: Optional[str] = None
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: Optional[str] = None
    calendar_timezone: str = "Asia/Kolkata"
    calendar_id: str = "primary"
    calendar_sync_timeout_seconds: float = Field(default=10.0, gt=0)
    calendar_match_tolerance_seconds: float = Field(default=2.0, gt=0)
    calendar_search_window_hours: float = Field(default=24.0, gt=0)
    oauth_refresh_skew_seconds: int = Field(default=60, ge=0)
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_token_lifetimes(self) -> "Settings":
        if self.access_token_expire_minutes >= self.refresh_token_expire_minutes:
            raise ValueError("Access tokens must expire before refresh tokens.")
        if not self.session_secret_key:
            self.session_secret_key = self.access_token_secret
        return self

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.access_token_expire_minutes)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_expire_minutes)

    @property
    def oauth_refresh_skew(self) -> timedelta:
        return timedelta(seconds=self.oauth_refresh_skew_seconds)

    def google_client(self) -> GoogleClientConfig:
        return GoogleClientConfig(client_id=self.google_client_id, client_secret=self.google_client_secret)

    def calendar_sync(self) -> CalendarSyncConfig:
        return CalendarSyncConfig(
            calendar_id=self.calendar_id,
            timezone=self.calendar_timezone,
            timeout_seconds=self.calendar_sync_timeout_seconds,
            match_tolerance=timedelta(seconds=self.calendar_match_tolerance_seconds),
            search_window=timedelta(hours=self.calendar_search_window_hours),
        )


_ENV_FIELDS = {
    "DATABASE_URL": "database_url",
    "CLIENT_URL": "client_url",
    "ACCESS_TOKEN_SECRET": "access_token_secret",
    "REFRESH_TOKEN_SECRET": "refresh_token_secret",
    "ACCESS_TOKEN_EXPIRE_MINUTES": "access_token_expire_minutes",
    "REFRESH_TOKEN_EXPIRE_MINUTES": "refresh_token_expire_minutes",
    "SESSION_SECRET_KEY": "session_secret_key",
    "GOOGLE_CLIENT_ID": "google_client_id",
    "GOOGLE_CLIENT_SECRET": "google_client_secret",
    "GOOGLE_REDIRECT_URI": "google_redirect_uri",
    "CALENDAR_TIMEZONE": "calendar_timezone",
    "CALENDAR_ID": "calendar_id",
    "CALENDAR_SYNC_TIMEOUT_SECONDS": "calendar_sync_timeout_seconds",
    "CALENDAR_MATCH_TOLERANCE_SECONDS": "calendar_match_tolerance_seconds",
    "CALENDAR_SEARCH_WINDOW_HOURS": "calendar_search_window_hours",
    "OAUTH_REFRESH_SKEW_SECONDS": "oauth_refresh_skew_seconds",
    "LOG_LEVEL": "log_level",
}


def load_settings(environ=None) -> Settings:
    environ = os.environ if environ is None else environ
    values = {field: environ[name] for name, field in _ENV_FIELDS.items() if environ.get(name)}
    if "access_token_secret" not in values or "refresh_token_secret" not in values:
        raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be set in .env file!")
    return Settings(**values)


@lru_cache
def get_settings() -> Settings:
    return load_settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(levelname)-9s %(asctime)s %(name)s: %(message)s",
    )
