"""API endpoints for avatar and ad image storage."""
from fastapi import APIRouter, UploadFile, File, Form, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from adimages.db import get_db
from adimages.errors import UnsupportedFormatError
from adimages.schemas import (
    AdImageOut, AdImagesUploadOut, AvatarOut, ConvergenceOut, DeleteAllImagesResponse,
    DeleteImagesResponse, ReorderRequest, SetMainRequest, SetMainResponse, SkippedFileOut,
)
from adimages.service import BatchResult, ImageService, Upload
from adimages.settings import settings
from adimages.storage import StorageAdapter, get_storage_adapter
from adimages.validators import validate_content_type

router = APIRouter(prefix=settings.API_V1_PREFIX)


def get_storage() -> StorageAdapter:
    """Dependency returning the configured storage adapter."""
    return get_storage_adapter()


def get_image_service(
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
) -> ImageService:
    return ImageService(db, storage)


async def read_upload(file: UploadFile) -> Upload:
    return Upload(data=await file.read(), content_type=file.content_type, filename=file.filename)


def batch_out(batch: BatchResult) -> AdImagesUploadOut:
    return AdImagesUploadOut(
        urls=batch.urls,
        skipped=[SkippedFileOut(filename=s.filename, reason=s.reason) for s in batch.skipped],
    )


@router.put("/users/{owner_id}/avatar", response_model=AvatarOut)
async def upload_avatar(
    owner_id: int,
    image: UploadFile = File(...),
    service: ImageService = Depends(get_image_service),
):
    """Upload (or replace) an avatar. A non-image file fails the request."""
    path = await service.save_avatar(owner_id, await read_upload(image))
    return AvatarOut(exists=True, avatar_url=path)


@router.get("/users/{owner_id}/avatar", response_model=AvatarOut)
async def get_avatar(
    owner_id: int,
    service: ImageService = Depends(get_image_service),
):
    if await service.avatar_exists(owner_id):
        return AvatarOut(exists=True, avatar_url=service.avatar_path(owner_id))
    return AvatarOut(exists=False)


@router.delete("/users/{owner_id}/avatar", status_code=status.HTTP_204_NO_CONTENT)
async def delete_avatar(
    owner_id: int,
    service: ImageService = Depends(get_image_service),
):
    await service.delete_avatar(owner_id)


@router.post(
    "/users/{owner_id}/ads/{ad_id}/images",
    response_model=AdImagesUploadOut,
    status_code=status.HTTP_201_CREATED,
)
async def upload_ad_images(
    owner_id: int,
    ad_id: int,
    images: List[UploadFile] = File(...),
    service: ImageService = Depends(get_image_service),
):
    """
    Upload a batch of ad images.

    Non-image entries are skipped and listed in the response; the rest are
    stored in upload order after any images the ad already has.
    """
    uploads = [await read_upload(f) for f in images]
    return batch_out(await service.save_ad_images(owner_id, ad_id, uploads))


@router.patch("/users/{owner_id}/ads/{ad_id}/images", response_model=AdImagesUploadOut)
async def edit_ad_images(
    owner_id: int,
    ad_id: int,
    new_images: List[UploadFile] = File(default=[]),
    delete_image_ids: List[int] = Form(default=[]),
    main_image_id: Optional[int] = Form(default=None),
    image_order: List[int] = Form(default=[]),
    service: ImageService = Depends(get_image_service),
):
    """Edit an ad's images: delete, add, pick the main image, reorder."""
    uploads = [await read_upload(f) for f in new_images]
    batch = await service.edit_ad_images(
        owner_id,
        ad_id,
        new_uploads=uploads,
        delete_ids=delete_image_ids,
        main_image_id=main_image_id,
        image_order=image_order,
    )
    return batch_out(batch)


@router.delete("/users/{owner_id}/ads/{ad_id}/images", response_model=DeleteAllImagesResponse)
async def delete_all_ad_images(
    owner_id: int,
    ad_id: int,
    service: ImageService = Depends(get_image_service),
):
    """Remove every image of an ad; called when the ad itself is destroyed."""
    return DeleteAllImagesResponse(deleted_count=await service.delete_all_ad_images(owner_id, ad_id))


@router.get("/ads/{ad_id}/images", response_model=List[AdImageOut])
async def list_ad_images(
    ad_id: int,
    service: ImageService = Depends(get_image_service),
):
    """Images of an ad ordered by their order value."""
    return [AdImageOut.from_record(image) for image in await service.get_ad_images(ad_id)]


@router.delete("/ads/{ad_id}/images", response_model=DeleteImagesResponse)
async def delete_ad_images(
    ad_id: int,
    ids: List[int] = Query(...),
    service: ImageService = Depends(get_image_service),
):
    """Delete some images of an ad. Ids of other ads are ignored."""
    return DeleteImagesResponse(deleted_ids=await service.delete_ad_images(ad_id, ids))


@router.put("/ads/{ad_id}/images/main", response_model=SetMainResponse)
async def set_main_image(
    ad_id: int,
    request: SetMainRequest,
    service: ImageService = Depends(get_image_service),
):
    return SetMainResponse(changed=await service.set_main_image(ad_id, request.image_id))


@router.put("/ads/{ad_id}/images/order", response_model=List[AdImageOut])
async def reorder_ad_images(
    ad_id: int,
    request: ReorderRequest,
    service: ImageService = Depends(get_image_service),
):
    await service.reorder_images(ad_id, request.image_ids)
    return [AdImageOut.from_record(image) for image in await service.get_ad_images(ad_id)]


@router.post("/images/preview", response_model=ConvergenceOut)
async def preview_image(
    file: UploadFile = File(...),
    service: ImageService = Depends(get_image_service),
):
    """Run size budget convergence on an image without storing it."""
    upload = await read_upload(file)
    verdict = validate_content_type(upload.content_type)
    if not verdict.accepted:
        raise UnsupportedFormatError(verdict.reason, {"filename": upload.filename})

    result = await service.converge_upload(upload)
    return ConvergenceOut(
        size_bytes=result.size_bytes,
        budget_bytes=result.budget_bytes,
        over_budget=result.over_budget,
        width=result.width,
        height=result.height,
        quality=result.quality,
        iterations=len(result.trace),
    )
