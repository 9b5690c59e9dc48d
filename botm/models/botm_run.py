"""Run ledger models.

A BotmRun is one execution of the monthly generation for a date. A
UserBotmRun row is written only after that user's playlist was published,
so its presence is the commit record for the (user, run) pair.
"""

import datetime

from sqlalchemy import Date, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class BotmRun(Base):
    __tablename__ = "botm_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Unique since migration 0003: one run row per run date
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)


class UserBotmRun(Base):
    __tablename__ = "user_botm_runs"

    spotify_id: Mapped[str] = mapped_column(
        Text, ForeignKey("users.spotify_id"), primary_key=True
    )
    botm_run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("botm_runs.id"), primary_key=True
    )
