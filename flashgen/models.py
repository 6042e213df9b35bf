# flashgen/models.py
import uuid
import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from flashgen.db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class CardSet(Base):
    """Read-only here: consulted for the ownership check before generation."""
    __tablename__ = "card_sets"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), index=True, nullable=False)
    input_text = Column(Text, nullable=False)
    model = Column(String(128), nullable=False)
    duration = Column(Integer, nullable=False)
    generated_count = Column(Integer, nullable=False)
    # filled in later by the card-acceptance flows
    accepted_edited_count = Column(Integer, nullable=True)
    accepted_unedited_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class GenerationError(Base):
    __tablename__ = "generation_errors"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), index=True, nullable=False)
    error_code = Column(String(64), nullable=False)
    error_message = Column(Text, nullable=False)
    input_text = Column(Text, nullable=True)
    model = Column(String(128), nullable=False)
    cause = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
