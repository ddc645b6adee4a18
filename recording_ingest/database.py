from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from recording_ingest.config import settings


def _connect_args(url: str) -> dict:
    # Request handlers and chunk appends share SQLite connections across threads.
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine = create_engine(settings.DATABASE_URL, future=True, connect_args=_connect_args(settings.DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def get_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
