"""
Database connection and session management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from presence_cert.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Sessions are handed across threads by the token / recorder stores
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def create_tables() -> None:
    """Create all tables on the configured engine"""
    from presence_cert.db import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
