"""Database models for ImgDrop."""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    """Account that owns uploaded images."""
    id: str = Field(primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: Optional[str] = None
    api_key: str = Field(index=True, unique=True)
    level: int = 1
    created_at: datetime = Field(default_factory=datetime.now, sa_type=DateTime)


class ImageRecord(SQLModel, table=True):
    """One uploaded image and its derived thumbnail."""
    id: str = Field(primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    filename: str
    thumb_name: str
    mime: str
    size: int = 0
    width: int = 0
    height: int = 0
    # Local server time; the daily quota counts local calendar days
    created_at: datetime = Field(default_factory=datetime.now, index=True, sa_type=DateTime)
    auto_delete: bool = False
    delete_after_days: Optional[int] = None
    # Insertion order, so records created within the same clock tick keep order
    seq: Optional[int] = Field(default=None, index=True)


class LoginSession(SQLModel, table=True):
    """Server-side login session referenced by the session cookie."""
    token: str = Field(primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=datetime.now, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)


class Setting(SQLModel, table=True):
    """Application settings."""
    key: str = Field(primary_key=True)
    value: str
