"""Persistence layer."""

from .database import Database
from .users import UserRepository

__all__ = ["Database", "UserRepository"]
