# app/routers/images.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.security import require_admin
from app.routers.uploads import get_upload_service
from app.schemas.uploads import ImageDataOut, ImageListOut, ImageOut
from app.services.upload_service import UploadService

router = APIRouter(prefix="/images", tags=["images"], dependencies=[Depends(require_admin)])


@router.get("", response_model=ImageListOut)
async def list_images(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=255),
    service: UploadService = Depends(get_upload_service),
):
    result = await service.list_images(page=page, page_size=page_size, search=search)
    return ImageListOut(
        items=[ImageOut.model_validate(r) for r in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )


@router.get("/{file_path}", response_model=ImageDataOut)
async def get_image(file_path: str, service: UploadService = Depends(get_upload_service)):
    image = await service.get_image(file_path)
    if image is None:
        raise HTTPException(status_code=404, detail="image_not_found")
    return ImageDataOut(
        image=ImageOut.model_validate(image.record),
        content_type=image.content_type,
        size=image.size,
        data_url=image.data_url,
    )


@router.delete("/{file_path}")
async def delete_image(file_path: str, service: UploadService = Depends(get_upload_service)) -> dict:
    if not await service.delete_image(file_path):
        raise HTTPException(status_code=404, detail="image_not_found")
    return {"ok": True, "file_path": file_path}
