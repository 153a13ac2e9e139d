"""Image ingestion service: avatars and ordered ad image sets."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from adimages import registrar
from adimages.addressing import ad_image_path, avatar_path, storage_key
from adimages.errors import (
    BatchAbortedError,
    ConvergenceTimeoutError,
    ImageServiceError,
    StorageIOError,
    UnsupportedFormatError,
    UploadTooLargeError,
)
from adimages.image_utils import ConvergenceResult, transcode
from adimages.models import AdImage
from adimages.settings import settings
from adimages.storage import StorageAdapter
from adimages.validators import validate_content_type

logger = logging.getLogger(__name__)


@dataclass
class Upload:
    """One uploaded file as received from the caller."""
    data: bytes
    content_type: Optional[str]
    filename: Optional[str] = None


@dataclass
class SkippedUpload:
    filename: Optional[str]
    reason: str


@dataclass
class BatchResult:
    urls: List[str] = field(default_factory=list)
    skipped: List[SkippedUpload] = field(default_factory=list)


class ImageService:
    """Validates, converges, stores and registers uploaded images."""

    def __init__(self, db: AsyncSession, storage: StorageAdapter, budget_bytes: Optional[int] = None):
        self.db = db
        self.storage = storage
        self.budget_bytes = budget_bytes or settings.IMAGE_BUDGET_BYTES

    async def converge_upload(self, upload: Upload) -> ConvergenceResult:
        """
        Decode and converge one upload off the event loop.

        Raises:
            UploadTooLargeError: Raw bytes exceed MAX_UPLOAD_BYTES
            UnsupportedFormatError: Bytes cannot be decoded
            ConvergenceTimeoutError: Convergence exceeded CONVERGE_TIMEOUT_SECONDS
        """
        if len(upload.data) > settings.MAX_UPLOAD_BYTES:
            raise UploadTooLargeError(
                f"File size exceeds maximum of {settings.MAX_UPLOAD_BYTES} bytes",
                {"filename": upload.filename, "size_bytes": len(upload.data)},
            )
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(transcode, upload.data, self.budget_bytes),
                timeout=settings.CONVERGE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            raise ConvergenceTimeoutError(
                f"Image conversion exceeded {settings.CONVERGE_TIMEOUT_SECONDS}s",
                {"filename": upload.filename},
            ) from e

    # Avatars

    async def save_avatar(self, owner_id: int, upload: Upload) -> str:
        """Converge and write the owner's avatar, overwriting the previous one."""
        verdict = validate_content_type(upload.content_type)
        if not verdict.accepted:
            raise UnsupportedFormatError(verdict.reason, {"filename": upload.filename})

        result = await self.converge_upload(upload)
        path = avatar_path(owner_id)
        await self.storage.save(storage_key(path), result.data)

        logger.info("Saved avatar for user %d at %s (%d bytes)", owner_id, path, result.size_bytes)
        return path

    def avatar_path(self, owner_id: int) -> str:
        return avatar_path(owner_id)

    async def avatar_exists(self, owner_id: int) -> bool:
        return await self.storage.exists(storage_key(avatar_path(owner_id)))

    async def delete_avatar(self, owner_id: int) -> bool:
        deleted = await self.storage.delete(storage_key(avatar_path(owner_id)))
        if deleted:
            logger.info("Deleted avatar for user %d", owner_id)
        return deleted

    # Ad images

    async def save_ad_images(self, owner_id: int, ad_id: int, uploads: Sequence[Upload]) -> BatchResult:
        """
        Store a batch of ad images.

        Non-image and undecodable entries are skipped without affecting their
        siblings. Any other failure aborts the batch: files it already wrote
        are removed again and BatchAbortedError is raised. Rows for the batch
        are committed together once every file is written.
        """
        batch = BatchResult()
        if not uploads:
            return batch

        async with registrar.ad_lock(ad_id):
            slots = await registrar.batch_slots(self.db, ad_id)
            images: List[AdImage] = []

            for number, upload in enumerate(uploads):
                verdict = validate_content_type(upload.content_type)
                if not verdict.accepted:
                    logger.warning("Skipped non-image file: %s (%s)", upload.filename, upload.content_type)
                    batch.skipped.append(SkippedUpload(upload.filename, verdict.reason))
                    continue

                order, position, is_main = slots.assign(len(images))
                path = ad_image_path(owner_id, ad_id, position)
                try:
                    result = await self.converge_upload(upload)
                    await self.storage.save(storage_key(path), result.data)
                except (UnsupportedFormatError, UploadTooLargeError) as e:
                    logger.warning("Skipped unusable file: %s (%s)", upload.filename, e.message)
                    batch.skipped.append(SkippedUpload(upload.filename, e.message))
                    continue
                except ImageServiceError as e:
                    aborted = [u.filename for u in uploads[number:]]
                    raise await self._rollback_batch(ad_id, batch.urls, e, aborted) from e

                images.append(AdImage(
                    ad_id=ad_id,
                    path=path,
                    position=position,
                    is_main=is_main,
                    order=order,
                    size_bytes=result.size_bytes,
                    width=result.width,
                    height=result.height,
                    quality=result.quality,
                ))
                batch.urls.append(path)
                logger.info("Saved ad image %d for ad %d at %s", position, ad_id, path)

            try:
                await registrar.insert_batch(self.db, ad_id, images)
            except ImageServiceError as e:
                raise await self._rollback_batch(ad_id, batch.urls, e, []) from e

        return batch

    async def _rollback_batch(
        self, ad_id: int, written: List[str], cause: ImageServiceError, aborted: List[Optional[str]]
    ) -> BatchAbortedError:
        """Remove files this batch wrote and describe the aborted batch."""
        logger.error("Aborting image batch for ad %d: %s", ad_id, cause.message, exc_info=cause)

        # A path a committed row owns belongs to another writer's batch
        owned = set(await registrar.existing_paths(self.db, written))
        rolled_back = []
        orphaned = []
        for path in written:
            if path in owned:
                continue
            try:
                await self.storage.delete(storage_key(path))
            except StorageIOError:
                logger.exception("Could not roll back %s; left for reconciliation", path)
                orphaned.append(path)
                continue
            rolled_back.append(path)

        error = BatchAbortedError(
            f"Image batch aborted: {cause.message}",
            {
                "cause": cause.error_code,
                "rolled_back": rolled_back,
                "orphaned": orphaned,
                "aborted": aborted,
            },
        )
        error.retryable = cause.retryable
        return error

    async def get_ad_images(self, ad_id: int) -> List[AdImage]:
        return await registrar.list_images(self.db, ad_id)

    async def get_ad_image_paths(self, ad_id: int) -> List[str]:
        return [image.path for image in await registrar.list_images(self.db, ad_id)]

    async def get_ad_images_count(self, ad_id: int) -> int:
        return await registrar.count_images(self.db, ad_id)

    async def delete_ad_images(self, ad_id: int, image_ids: Sequence[int]) -> List[int]:
        async with registrar.ad_lock(ad_id):
            return await registrar.delete_images(self.db, self.storage, ad_id, image_ids)

    async def delete_all_ad_images(self, owner_id: int, ad_id: int) -> int:
        async with registrar.ad_lock(ad_id):
            return await registrar.delete_all(self.db, self.storage, owner_id, ad_id)

    async def set_main_image(self, ad_id: int, image_id: int) -> bool:
        async with registrar.ad_lock(ad_id):
            return await registrar.set_main(self.db, ad_id, image_id)

    async def reorder_images(self, ad_id: int, image_ids: Sequence[int]) -> None:
        async with registrar.ad_lock(ad_id):
            await registrar.reorder(self.db, ad_id, image_ids)

    async def edit_ad_images(
        self,
        owner_id: int,
        ad_id: int,
        new_uploads: Sequence[Upload] = (),
        delete_ids: Sequence[int] = (),
        main_image_id: Optional[int] = None,
        image_order: Optional[Sequence[int]] = None,
    ) -> BatchResult:
        """Apply an ad edit: deletions, then additions, then main image, then order."""
        if delete_ids:
            await self.delete_ad_images(ad_id, delete_ids)
        batch = await self.save_ad_images(owner_id, ad_id, new_uploads)
        if main_image_id is not None:
            await self.set_main_image(ad_id, main_image_id)
        if image_order:
            await self.reorder_images(ad_id, image_order)
        return batch
