from contextlib import contextmanager

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from .errors import ConnectivityError


def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # in-memory databases must share one connection across threads
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=False, pool_pre_ping=True)


def init_db(engine):
    # import for side effect: registers the tables on SQLModel.metadata
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session(engine) -> Session:
    return Session(engine, expire_on_commit=False)


@contextmanager
def store_errors():
    """Translate store outages into ConnectivityError."""
    from sqlalchemy.exc import OperationalError, InterfaceError

    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise ConnectivityError(str(e.orig) if getattr(e, "orig", None) else str(e)) from e
