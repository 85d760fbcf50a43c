from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import Base


def _connect_args(database_url: str) -> dict[str, str | bool]:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def make_engine(database_url: str, *, echo: bool = False) -> Engine:
    return create_engine(database_url, connect_args=_connect_args(database_url), echo=echo)


def make_session_factory(engine: Engine) -> sessionmaker:
    # Documents leave the transaction that loaded them; keep their attributes.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)
