"""Enrolled Spotify user.

Rows are created by the OAuth connect flow. The run orchestrator only reads
them; the token manager is the only writer of the token columns.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class User(Base):
    __tablename__ = "users"

    spotify_id: Mapped[str] = mapped_column(Text, primary_key=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, index=True)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)

    # Short-lived credential (migration 0002); '' / -infinity until first refresh
    access_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expiry_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
