"""Database access for the price cache: declarative base, engine and session factory."""
from .base import Base
from .session import ENGINE as engine
from .session import SessionLocal, get_db, get_sessionmaker, init_db

__all__ = ["Base", "SessionLocal", "engine", "get_db", "get_sessionmaker", "init_db"]
