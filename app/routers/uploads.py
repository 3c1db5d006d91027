# app/routers/uploads.py
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.core.security import require_admin
from app.observability.metrics import latency_hist
from app.schemas.uploads import (
    BulkErrorOut,
    BulkSummaryOut,
    BulkUploadIn,
    BulkUploadOut,
    ChunkUploadIn,
    ChunkUploadOut,
    ProcessingMetadataOut,
    RecoveryOut,
    SingleUploadIn,
    SingleUploadOut,
    UploadResultOut,
)
from app.services.upload_service import UploadResult, UploadService

router = APIRouter(prefix="/uploads", tags=["uploads"], dependencies=[Depends(require_admin)])


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service


def _single_out(result: UploadResult) -> SingleUploadOut:
    return SingleUploadOut(
        file_path=result.file_path,
        image_id=result.image_id,
        metadata=ProcessingMetadataOut(**result.metadata),
        warnings=result.warnings,
    )


# -----------------------------------------------------------------------------
# CHUNK: één deel van een grote upload; bij de laatste chunk volgt de commit
# -----------------------------------------------------------------------------
@router.post("/chunk", response_model=ChunkUploadOut)
async def upload_chunk(payload: ChunkUploadIn, service: UploadService = Depends(get_upload_service)):
    started = time.perf_counter()
    outcome = await service.handle_chunk(payload)
    receipt = outcome.receipt

    if receipt.error is not None:
        message = receipt.error.message
    elif receipt.complete:
        message = "Upload complete"
    elif receipt.duplicate:
        message = f"Chunk {payload.chunk_index} already received"
    else:
        message = f"Chunk {payload.chunk_index + 1}/{receipt.total_chunks} received"

    body = ChunkUploadOut(
        success=receipt.accepted or receipt.duplicate,
        complete=receipt.complete,
        session_id=receipt.session_id,
        received_chunks=receipt.received_chunks,
        total_chunks=receipt.total_chunks,
        progress=receipt.progress,
        adaptive_chunk_size=receipt.adaptive_chunk_size,
        suggested_action=receipt.suggested_action,
        memory_pressure=receipt.memory_pressure.value,
        message=message,
        error=receipt.error.to_dict() if receipt.error else None,
        result=(
            UploadResultOut(
                file_path=outcome.result.file_path,
                image_id=outcome.result.image_id,
                metadata=ProcessingMetadataOut(**outcome.result.metadata),
                warnings=outcome.result.warnings,
            )
            if outcome.result
            else None
        ),
    )
    latency_hist.labels(route="/uploads/chunk").observe(time.perf_counter() - started)

    if receipt.error is not None:
        # backpressure: sessie blijft open, client stuurt kleinere chunks
        return JSONResponse(status_code=receipt.error.http_status, content=body.model_dump(mode="json"))
    return body


@router.post("/single", response_model=SingleUploadOut)
async def upload_single(payload: SingleUploadIn, service: UploadService = Depends(get_upload_service)):
    started = time.perf_counter()
    result = await service.upload_single(payload)
    latency_hist.labels(route="/uploads/single").observe(time.perf_counter() - started)
    return _single_out(result)


@router.post("/bulk", response_model=BulkUploadOut)
async def upload_bulk(payload: BulkUploadIn, service: UploadService = Depends(get_upload_service)):
    started = time.perf_counter()
    outcome = await service.upload_bulk(payload.images)
    latency_hist.labels(route="/uploads/bulk").observe(time.perf_counter() - started)
    return BulkUploadOut(
        success=not outcome.errors,
        results=[_single_out(r) for r in outcome.results],
        errors=[BulkErrorOut(**e) for e in outcome.errors],
        summary=BulkSummaryOut(
            total=len(payload.images),
            succeeded=len(outcome.results),
            failed=len(outcome.errors),
        ),
    )


@router.get("/sessions/{session_id}/recovery", response_model=RecoveryOut)
async def session_recovery(session_id: str, service: UploadService = Depends(get_upload_service)):
    report = await service.recover(session_id)
    return RecoveryOut(
        session_id=report.session_id,
        state=report.state.value,
        missing_chunks=report.missing_chunks,
        received_chunks=report.received_chunks,
        total_chunks=report.total_chunks,
        recovery_attempts=report.recovery_attempts,
        max_recovery_attempts=report.max_recovery_attempts,
        adaptive_chunk_size=report.adaptive_chunk_size,
    )
