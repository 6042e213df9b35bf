# flashgen/db.py
import os
from typing import Optional, Dict, Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import SQLAlchemyError

from flashgen import monitoring

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./flashgen.db")

def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)

engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    # Create tables if they don't exist
    try:
        import flashgen.models as models  # noqa: F401
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        # don't crash the app at import time; requests will surface the failure
        monitoring.logger.error(f"DB init failed: {e}")


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _insert(db: Session, row):
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except SQLAlchemyError:
        db.rollback()
        raise
    return row


def insert_generation(db: Session, record: Dict[str, Any]):
    """
    Insert a generations row and return the refreshed ORM object.
    record keys: input_text, user_id, model, duration, generated_count
    (acceptance counters default to NULL). Raises SQLAlchemyError on failure.
    """
    from flashgen.models import Generation
    return _insert(db, Generation(**record))


def insert_generation_error(db: Session, record: Dict[str, Any]):
    """
    Insert a generation_errors row.
    record keys: error_code, error_message, input_text, model, user_id, cause.
    """
    from flashgen.models import GenerationError
    return _insert(db, GenerationError(**record))


def get_card_set_for_user(db: Session, card_set_id: str, user_id: str):
    """Return the card set if it exists and belongs to user_id, else None."""
    from flashgen.models import CardSet
    return (
        db.query(CardSet)
        .filter(CardSet.id == card_set_id, CardSet.user_id == user_id)
        .first()
    )


def get_generation_for_user(db: Session, generation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    """
    Return the stored generation as a dict or None.
    """
    from flashgen.models import Generation
    gen = (
        db.query(Generation)
        .filter(Generation.id == generation_id, Generation.user_id == user_id)
        .first()
    )
    if not gen:
        return None
    return {
        "generation_id": gen.id,
        "input_text": gen.input_text,
        "model": gen.model,
        "metadata": {"duration": gen.duration, "generated_count": gen.generated_count},
        "accepted_edited_count": gen.accepted_edited_count,
        "accepted_unedited_count": gen.accepted_unedited_count,
        "created_at": gen.created_at,
        "updated_at": gen.updated_at,
    }
