# app/services/upload_service.py
"""
Orchestration of the upload paths.

Chunked, single and bulk uploads all end in ``commit``:
detect -> process -> write -> verify -> record. Once bytes are in the blob
store, any later failure removes them again before the error propagates.
Blocking work (blob store, database) runs in worker threads.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from app.core.errors import ErrorCategory, Severity, UploadError, validation_error
from app.core.settings import Settings
from app.infra.memory import MemoryMonitor, MemoryPressure
from app.models.image import ImageRecord
from app.observability.metrics import upload_counter, upload_size_hist
from app.schemas.uploads import ChunkUploadIn, SingleUploadIn
from app.services.chunk_sessions import (
    TERMINAL_STATES,
    ChunkReceipt,
    ChunkSessionManager,
    SessionMeta,
    UploadSession,
    UploadState,
)
from app.services.format_detection import DetectedFormat, detect_format
from app.services.image_strategies import ProcessingResult, StrategyRunner
from app.services.metadata_store import ImagePage, MetadataStore
from app.services.storage import BlobStore
from app.services.storage_writer import StorageWriter
from app.services.verifier import Verifier

logger = structlog.get_logger(__name__)

RESTART_UPLOAD = "restart_upload"


def decode_base64(value: str) -> bytes:
    """Decode base64; een ``data:<mime>;base64,`` prefix wordt geaccepteerd."""
    if value.startswith("data:"):
        _, sep, value = value.partition(",")
        if not sep:
            raise validation_error("Malformed data URL", code="bad_base64")
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise validation_error("Invalid base64 data", code="bad_base64") from e


def _check_file_path(file_path: str) -> None:
    if not file_path or ".." in file_path or "/" in file_path or "\\" in file_path:
        raise validation_error(f"Invalid file path: {file_path!r}", code="bad_file_path")


@dataclass
class UploadResult:
    image_id: str
    file_path: str
    file_name: str
    detected: DetectedFormat
    processing: ProcessingResult
    total_time_ms: int
    warnings: List[str] = field(default_factory=list)

    @property
    def metadata(self) -> Dict[str, Any]:
        p = self.processing
        return {
            "width": p.width,
            "height": p.height,
            "original_size": p.original_size,
            "processed_size": p.processed_size,
            "compression_ratio": p.compression_ratio,
            "strategy": p.strategy,
            "content_type": p.content_type,
            "processing_time_ms": p.processing_time_ms,
            "total_time_ms": self.total_time_ms,
            "detected_format": self.detected.mime,
            "format_confidence": self.detected.confidence,
        }


@dataclass
class ChunkOutcome:
    receipt: ChunkReceipt
    result: Optional[UploadResult] = None


@dataclass
class BulkOutcome:
    results: List[UploadResult]
    errors: List[Dict[str, Any]]


@dataclass
class ImageData:
    record: ImageRecord
    content_type: str
    size: int
    data_url: str


class UploadService:
    def __init__(
        self,
        settings: Settings,
        *,
        sessions: ChunkSessionManager,
        runner: StrategyRunner,
        writer: StorageWriter,
        verifier: Verifier,
        metadata: MetadataStore,
        monitor: MemoryMonitor,
        store: BlobStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.sessions = sessions
        self.runner = runner
        self.writer = writer
        self.verifier = verifier
        self.metadata = metadata
        self.monitor = monitor
        self.store = store
        self._sleep = sleep

    @classmethod
    def build(
        cls, settings: Settings, *, monitor: MemoryMonitor, store: BlobStore, session_factory: sessionmaker
    ) -> "UploadService":
        return cls(
            settings,
            sessions=ChunkSessionManager.from_settings(settings, monitor),
            runner=StrategyRunner.from_settings(settings, monitor),
            writer=StorageWriter.from_settings(settings, store),
            verifier=Verifier.from_settings(settings, store),
            metadata=MetadataStore(session_factory),
            monitor=monitor,
            store=store,
        )

    # ------------------------------------------------------------------
    # chunked
    # ------------------------------------------------------------------
    async def handle_chunk(self, payload: ChunkUploadIn, uploaded_by: Optional[str] = None) -> ChunkOutcome:
        session_id = payload.session_id or uuid.uuid4().hex
        data = decode_base64(payload.data)
        if payload.is_retry:
            logger.info(
                "chunk_retry",
                session_id=session_id,
                chunk_index=payload.chunk_index,
                retry_attempt=payload.retry_attempt,
            )
        meta = SessionMeta(
            file_name=payload.file_name,
            file_type=payload.file_type,
            total_chunks=payload.total_chunks,
            original_chunk_size=payload.original_chunk_size,
        )
        receipt = await self.sessions.receive_chunk(session_id, payload.chunk_index, data, meta)
        if not receipt.complete:
            return ChunkOutcome(receipt)

        buffer, receipt.buffer = receipt.buffer, None
        result = await self.commit(
            buffer,
            file_name=payload.file_name,
            file_type=payload.file_type,
            uploaded_by=uploaded_by,
            session=receipt.session,
            kind="chunked",
        )
        return ChunkOutcome(receipt, result)

    async def recover(self, session_id: str):
        return await self.sessions.recover(session_id)

    # ------------------------------------------------------------------
    # single / bulk
    # ------------------------------------------------------------------
    async def upload_single(
        self, payload: SingleUploadIn, uploaded_by: Optional[str] = None, *, kind: str = "single"
    ) -> UploadResult:
        data = decode_base64(payload.file_content)
        if not data:
            raise validation_error("File is empty", code="empty_file")
        if len(data) > self.settings.max_file_bytes:
            raise UploadError(
                f"File of {len(data)} bytes exceeds the {self.settings.max_file_bytes} byte limit",
                ErrorCategory.size_limit,
                retryable=False,
                code="file_too_large",
                suggestions=["Use the chunked upload", "Reduce the image size"],
            )
        return await self.commit(
            data,
            file_name=payload.file_name,
            file_type=payload.file_type,
            title=payload.title,
            description=payload.description,
            alt_text=payload.alt_text,
            uploaded_by=uploaded_by,
            kind=kind,
        )

    async def upload_bulk(self, items: List[SingleUploadIn], uploaded_by: Optional[str] = None) -> BulkOutcome:
        limit = self.settings.bulk_max_images
        if not 1 <= len(items) <= limit:
            raise validation_error(f"Bulk upload takes 1 to {limit} images, got {len(items)}", code="bad_bulk_size")

        if self.monitor.get_stats().pressure == MemoryPressure.critical:
            raise UploadError(
                "Server memory is critically low; bulk uploads are paused",
                ErrorCategory.memory,
                retryable=True,
                severity=Severity.high,
                code="memory_critical",
                retry_after=300,
                suggestions=["Upload images one at a time", "Try again in a few minutes"],
            )

        results: List[UploadResult] = []
        errors: List[Dict[str, Any]] = []
        for i, item in enumerate(items):
            if i and self.monitor.is_under_pressure():
                self.monitor.emergency_cleanup("bulk_between_images")
                await self._sleep(self.settings.bulk_pause_sec)
            try:
                results.append(await self.upload_single(item, uploaded_by, kind="bulk"))
            except UploadError as exc:
                # per-image fouten verzamelen, niet raisen
                errors.append({"index": i, "file_name": item.file_name, "error": exc.to_dict()})
                logger.warning("bulk_item_failed", index=i, file_name=item.file_name, code=exc.code)

        logger.info("bulk_finished", total=len(items), succeeded=len(results), failed=len(errors))
        return BulkOutcome(results=results, errors=errors)

    # ------------------------------------------------------------------
    # commit
    # ------------------------------------------------------------------
    async def commit(
        self,
        data: bytes,
        *,
        file_name: str,
        file_type: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        alt_text: Optional[str] = None,
        uploaded_by: Optional[str] = None,
        session: Optional[UploadSession] = None,
        kind: str = "single",
    ) -> UploadResult:
        started = time.perf_counter()

        def advance(state: UploadState) -> None:
            if session is not None:
                session.transition(state)

        try:
            detected = detect_format(data, file_name)
            warnings: List[str] = []
            if detected.mime != file_type:
                warnings.append(f"Declared type {file_type} differs from detected {detected.mime}")

            advance(UploadState.processing)
            processed = await self.runner.process(data, detected.mime)
            warnings.extend(processed.warnings)

            advance(UploadState.writing)
            written = await asyncio.to_thread(
                self.writer.write,
                processed.data,
                processed.content_type,
                processed.extension,
                {"strategy": processed.strategy},
            )
        except UploadError as exc:
            self._fail(session, kind, exc)
            raise

        record_task: Optional[asyncio.Future] = None
        try:
            advance(UploadState.verifying)
            await asyncio.to_thread(self.verifier.verify, written.key, written.size)
            total_ms = int((time.perf_counter() - started) * 1000)
            fields = dict(
                file_name=file_name,
                file_path=written.key,
                file_size=written.size,
                mime_type=processed.content_type,
                width=processed.width,
                height=processed.height,
                original_size=len(data),
                title=title,
                description=description,
                alt_text=alt_text,
                uploaded_by=uploaded_by,
                processing_info={
                    "strategy": processed.strategy,
                    "processing_time_ms": processed.processing_time_ms,
                    "total_time_ms": total_ms,
                    "compression_ratio": processed.compression_ratio,
                    "detected_format": detected.mime,
                    "format_confidence": detected.confidence,
                    "warnings": warnings,
                },
            )
            record_task = asyncio.ensure_future(asyncio.to_thread(self.metadata.create, **fields))
            # de worker thread loopt door bij cancel; de uitkomst is nodig voor compensatie
            record = await asyncio.shield(record_task)
            advance(UploadState.completed)
        except BaseException as exc:
            # ook bij cancel: geen blob zonder verificatie + record
            if isinstance(exc, UploadError):
                self._fail(session, kind, exc)
            await asyncio.shield(asyncio.ensure_future(self._compensate(written.key, record_task)))
            raise

        upload_counter.labels(kind=kind, result="success").inc()
        upload_size_hist.observe(len(data))
        logger.info(
            "upload_committed",
            kind=kind,
            image_id=record.id,
            key=written.key,
            strategy=processed.strategy,
            original_size=len(data),
            stored_size=written.size,
            total_ms=total_ms,
        )
        return UploadResult(
            image_id=record.id,
            file_path=written.key,
            file_name=file_name,
            detected=detected,
            processing=processed,
            total_time_ms=total_ms,
            warnings=warnings,
        )

    async def _compensate(self, key: str, record_task: Optional[asyncio.Future]) -> None:
        """Maak een half afgeronde commit ongedaan: eerst het record, dan de blob."""
        if record_task is not None:
            try:
                record = await record_task
            except Exception as exc:
                # aanmaken is zelf mislukt; die fout wordt al door commit gegooid
                logger.debug("record_create_failed", key=key, error=repr(exc))
                record = None
            if record is not None:
                try:
                    await asyncio.to_thread(self.metadata.delete, id=record.id)
                except UploadError as exc:
                    logger.error("record_rollback_failed", image_id=record.id, key=key, code=exc.code)
        await asyncio.to_thread(self.writer.discard, key)

    @staticmethod
    def _fail(session: Optional[UploadSession], kind: str, exc: UploadError) -> None:
        upload_counter.labels(kind=kind, result="error").inc()
        if session is not None:
            if not exc.retryable:
                if session.state not in TERMINAL_STATES:
                    session.transition(UploadState.failed)
            elif exc.suggested_action is None:
                # chunks zijn al vrijgegeven: alleen een volledige herstart helpt
                exc.suggested_action = RESTART_UPLOAD
                exc.suggestions.append("Restart the upload from the first chunk")
        logger.error(
            "upload_failed",
            kind=kind,
            session_id=session.session_id if session else None,
            category=exc.category.value,
            code=exc.code,
            retryable=exc.retryable,
        )

    # ------------------------------------------------------------------
    # images
    # ------------------------------------------------------------------
    async def get_image(self, file_path: str) -> Optional[ImageData]:
        _check_file_path(file_path)
        record = await asyncio.to_thread(self.metadata.find_unique, file_path=file_path)
        if record is None:
            return None
        data = await asyncio.to_thread(self.store.get, file_path)
        encoded = base64.b64encode(data).decode("ascii")
        return ImageData(
            record=record,
            content_type=record.mime_type,
            size=len(data),
            data_url=f"data:{record.mime_type};base64,{encoded}",
        )

    async def delete_image(self, file_path: str) -> bool:
        _check_file_path(file_path)
        record = await asyncio.to_thread(self.metadata.find_unique, file_path=file_path)
        if record is None:
            return False
        try:
            await asyncio.to_thread(self.store.remove, file_path)
        except UploadError as exc:
            # record wordt toch verwijderd; blob blijft als wees achter
            logger.error("blob_delete_failed", key=file_path, code=exc.code, error=exc.message)
        await asyncio.to_thread(self.metadata.delete, file_path=file_path)
        logger.info("image_deleted", image_id=record.id, key=file_path)
        return True

    async def list_images(self, page: int = 1, page_size: int = 20, search: Optional[str] = None) -> ImagePage:
        return await asyncio.to_thread(self.metadata.list, page=page, page_size=page_size, search=search)
