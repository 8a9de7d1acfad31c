# backend/models.py
from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel
from datetime import datetime, timezone


def utcnow() -> datetime:
    # Stored timestamps are naive UTC (see naive_utc_field), which is also what google-auth expects for expiry.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc_field(**kwargs):
    """Column declared without tzinfo so the same values round-trip on every backend."""
    return Field(sa_type=DateTime(timezone=False), **kwargs)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    oauth_access_token: Optional[str] = Field(default=None, max_length=2048)
    oauth_refresh_token: Optional[str] = Field(default=None, max_length=2048)
    oauth_token_expiry: Optional[datetime] = naive_utc_field(default=None)
    created_at: datetime = naive_utc_field(default_factory=utcnow)
    updated_at: datetime = naive_utc_field(default_factory=utcnow)

    @property
    def google_linked(self) -> bool:
        return bool(self.oauth_access_token or self.oauth_refresh_token)


class Note(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    content: str
    is_public: bool = Field(default=False, index=True)
    start_time: Optional[datetime] = naive_utc_field(default=None)
    end_time: Optional[datetime] = naive_utc_field(default=None)
    created_at: datetime = naive_utc_field(default_factory=utcnow)
    updated_at: datetime = naive_utc_field(default_factory=utcnow)


class UserRead(SQLModel):
    id: int
    name: str
    email: str
    google_linked: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserRead":
        return cls(id=user.id, name=user.name, email=user.email,
                   google_linked=user.google_linked, created_at=user.created_at)


class NoteRead(SQLModel):
    id: int
    user_id: int
    title: str
    content: str
    is_public: bool
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
