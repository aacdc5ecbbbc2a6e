from contextlib import contextmanager

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from mcpbridge.config import settings


def _build_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, future=True)
    # FastAPI runs sync handlers in a threadpool; in-memory sqlite needs one shared connection.
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=False, future=True, **kwargs)


engine = _build_engine(settings.database_url)


def init_db() -> None:
    # Import for side effects: registers the tables on SQLModel.metadata.
    from mcpbridge.db import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def reset_db() -> None:
    from mcpbridge.db import models  # noqa: F401

    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)


@contextmanager
def get_db_session() -> Session:
    """
    Simple context manager to get a SQLModel Session.
    Use in non-request code (services).
    """
    with Session(engine, expire_on_commit=False) as session:
        yield session
