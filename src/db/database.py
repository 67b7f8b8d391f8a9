"""Generate database sessions"""

from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.db.schema import Base


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    """Create the engine, ensure all tables exist and return a session factory bound to it."""
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        # connection is shared by the event loop and the background sweeps
        connect_args["check_same_thread"] = False
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)

    # Ensure all tables are created
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False)
