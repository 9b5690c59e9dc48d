from .base import Base
from .user import User
from .botm_run import BotmRun, UserBotmRun

__all__ = [
    "Base",
    "User",
    "BotmRun",
    "UserBotmRun",
]
