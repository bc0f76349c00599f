import os
import logging
from contextlib import contextmanager

from flask import g
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DB_USER = os.getenv("POSTGRES_USER", "coworks")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "coworks_pass")
DB_NAME = os.getenv("POSTGRES_DB", "coworks")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost")
DB_PORT = os.getenv("POSTGRES_PORT", "5432")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)


def _make_engine(url):
    if url.startswith("sqlite"):
        # a single shared connection keeps in-memory databases alive across sessions
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True, pool_recycle=300)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
Base = declarative_base()


def get_session():
    return SessionLocal()


@contextmanager
def session_scope():
    """Yield a session that commits on success and rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


_initialized = False


def init_tables():
    global _initialized
    if _initialized:
        return
    # models register themselves on Base.metadata when imported
    from shared import models  # noqa: F401
    Base.metadata.create_all(engine)
    logger.info("database schema ready on %s", engine.url.render_as_string(hide_password=True))
    _initialized = True


def reset_tables():
    """Drop and recreate every table. Testing helper."""
    global _initialized
    from shared import models  # noqa: F401
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    _initialized = True


def request_session():
    """Session bound to the current Flask request, closed on teardown."""
    if 'db_session' not in g:
        g.db_session = SessionLocal()
    return g.db_session


def install_session_teardown(app):
    @app.teardown_appcontext
    def _close_session(_exc):
        session = g.pop('db_session', None)
        if session is not None:
            session.close()
