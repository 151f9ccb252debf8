import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

DB_URL = os.getenv("DB_URL", "sqlite:///./data/rules.db")  # default: ./data/rules.db (volume montado)


def make_engine(url: str):
    kwargs = {"echo": False, "future": True}
    if url.startswith("sqlite") and ":memory:" in url:
        # single shared connection so every session sees the same in-memory db
        kwargs.update(connect_args={"check_same_thread": False}, poolclass=StaticPool)
    elif url.startswith("sqlite:///"):
        db_dir = os.path.dirname(url[len("sqlite:///"):])
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
    return create_engine(url, **kwargs)


def make_session_factory(engine_):
    return sessionmaker(bind=engine_, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(DB_URL)
SessionLocal = make_session_factory(engine)


def init_db(engine_=None):
    """Create tables if missing."""
    from src.storage.models import Base
    Base.metadata.create_all(engine_ or engine)
