"""Persistence models for engine state."""

from .base import Base, build_engine, get_engine, reset_engine, session_scope
from .repository import SqlStateStore

__all__ = ["Base", "SqlStateStore", "build_engine", "get_engine", "reset_engine", "session_scope"]
