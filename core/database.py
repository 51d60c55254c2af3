from typing import Any, Dict

from sqlalchemy import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from core.config import get_settings

DATABASE_URL = get_settings().database_url


def make_engine(url: str, echo: bool = False) -> Engine:
    kwargs: Dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        # in-memory sqlite must share one connection across sessions
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine(DATABASE_URL)


def init_db(bind: Engine = engine) -> None:
    # tables must be imported so SQLModel.metadata knows them
    from domains.tracking import model  # noqa: F401

    SQLModel.metadata.create_all(bind)
