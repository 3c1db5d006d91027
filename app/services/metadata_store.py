# app/services/metadata_store.py
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import storage_error
from app.models.image import ImageRecord

logger = structlog.get_logger(__name__)


@dataclass
class ImagePage:
    items: List[ImageRecord]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0


class MetadataStore:
    """ImageRecord persistence; één korte DB-sessie per operatie."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    def create(self, **fields: Any) -> ImageRecord:
        fields.setdefault("id", str(uuid.uuid4()))
        record = ImageRecord(**fields)
        db = self._session()
        try:
            db.add(record)
            db.commit()
            db.refresh(record)
        except SQLAlchemyError as e:
            db.rollback()
            raise storage_error(
                "Could not save image metadata",
                code="metadata_failed",
                details={"file_path": fields.get("file_path")},
            ) from e
        finally:
            db.close()
        logger.info("image_recorded", image_id=record.id, file_path=record.file_path)
        return record

    def find_unique(self, *, id: Optional[str] = None, file_path: Optional[str] = None) -> Optional[ImageRecord]:
        if (id is None) == (file_path is None):
            raise ValueError("pass exactly one of id / file_path")
        db = self._session()
        try:
            q = db.query(ImageRecord)
            q = q.filter(ImageRecord.id == id) if id is not None else q.filter(ImageRecord.file_path == file_path)
            return q.first()
        finally:
            db.close()

    def delete(self, *, id: Optional[str] = None, file_path: Optional[str] = None) -> bool:
        db = self._session()
        try:
            q = db.query(ImageRecord)
            q = q.filter(ImageRecord.id == id) if id is not None else q.filter(ImageRecord.file_path == file_path)
            deleted = q.delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise storage_error("Could not delete image metadata", code="metadata_failed") from e
        finally:
            db.close()
        return bool(deleted)

    def list(self, *, page: int = 1, page_size: int = 20, search: Optional[str] = None) -> ImagePage:
        page = max(1, page)
        page_size = max(1, min(page_size, 100))
        db = self._session()
        try:
            q = db.query(ImageRecord)
            if search:
                like = f"%{search.lower()}%"
                q = q.filter(
                    or_(ImageRecord.file_name.ilike(like), ImageRecord.title.ilike(like))
                )
            total = q.count()
            items = (
                q.order_by(ImageRecord.created_at.desc(), ImageRecord.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
        finally:
            db.close()
        return ImagePage(items=items, total=total, page=page, page_size=page_size)

