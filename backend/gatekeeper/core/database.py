from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker

# Base class for all database models
Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create the engine for a database URL.

    SQLite connections are shared with the audit worker thread, so the
    same-thread check is disabled for them.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker:
    # autocommit=False: Changes require explicit commit
    # autoflush=False: Don't auto-flush before queries
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    """
    Dependency for getting database session.

    The session factory lives on the application state, so every app
    instance (and every test) talks to its own database.
    The session is closed after the request completes, which also rolls back
    anything left uncommitted by a failed handler.
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
