import os
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

DB_URL = os.getenv("DATABASE_URL", "sqlite:///./tracechain.db")


def make_engine(url: str = DB_URL):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    connect_args = {"check_same_thread": False}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty database
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, connect_args=connect_args)


engine = make_engine()


class Base(DeclarativeBase):
    pass
