from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Text

from app.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImageRecord(Base):
    __tablename__ = "images"

    id = Column(String(36), primary_key=True)
    file_name = Column(String(255), nullable=False)  # alleen voor weergave
    file_path = Column(String(1024), nullable=False, unique=True, index=True)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(255), nullable=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    original_size = Column(BigInteger, nullable=True)
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    alt_text = Column(String(512), nullable=True)
    uploaded_by = Column(String(255), nullable=True)
    processing_info = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
