from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    # models must be imported so their tables register on Base.metadata
    from coursepay import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    """Request-scoped session from the factory stored on app.state."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
