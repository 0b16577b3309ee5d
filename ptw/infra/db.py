from __future__ import annotations

import os

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ptw.domain import models  # noqa: F401

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ptw.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
AUTO_CREATE_DB = os.getenv("AUTO_CREATE_DB", "true").strip().lower() in {"1", "true", "yes"}


def build_engine(database_url: str | None = None) -> Engine:
    url = database_url or DATABASE_URL
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_recycle=3600,
    )


def create_schema(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def open_session(engine: Engine) -> Session:
    return Session(engine, expire_on_commit=False)


def check_db_ready(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
