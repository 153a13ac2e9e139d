"""Image metadata registrar: pairs stored files with ad_images rows.

Every mutation of one ad's image set runs under that ad's lock, and the
current max order/position is read in the same session that inserts the
new rows. Writers in other processes are caught after flush and reported
as MetadataConflictError instead of being silently merged.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from adimages.addressing import ad_folder, storage_key
from adimages.errors import MetadataConflictError, MetadataWriteError
from adimages.models import AdImage
from adimages.storage import StorageAdapter

logger = logging.getLogger(__name__)

# ad_id -> [lock, number of holders and waiters]
_ad_locks: Dict[int, list] = {}


@asynccontextmanager
async def ad_lock(ad_id: int) -> AsyncIterator[None]:
    """Serialise metadata mutations for one ad within this process.

    The entry is dropped once nobody holds or waits for it.
    """
    entry = _ad_locks.setdefault(ad_id, [asyncio.Lock(), 0])
    entry[1] += 1
    try:
        async with entry[0]:
            yield
    finally:
        entry[1] -= 1
        if entry[1] == 0:
            del _ad_locks[ad_id]


@dataclass(frozen=True)
class BatchSlots:
    """State of an ad's image set when a create batch starts."""
    max_order: int  # -1 when the ad has no images
    max_position: int  # 0 when the ad has no images
    count: int

    def assign(self, index: int) -> Tuple[int, int, bool]:
        """Return (order, position, is_main) for the index-th accepted file of the batch."""
        order = self.max_order + 1 + index
        position = self.max_position + 1 + index
        is_main = self.count == 0 and index == 0
        return order, position, is_main


async def list_images(db: AsyncSession, ad_id: int) -> List[AdImage]:
    """Images of an ad ordered by order (id breaks ties)."""
    result = await db.execute(
        select(AdImage).where(AdImage.ad_id == ad_id).order_by(AdImage.order, AdImage.id)
    )
    return list(result.scalars().all())


async def count_images(db: AsyncSession, ad_id: int) -> int:
    result = await db.execute(select(func.count(AdImage.id)).where(AdImage.ad_id == ad_id))
    return result.scalar_one()


async def batch_slots(db: AsyncSession, ad_id: int) -> BatchSlots:
    result = await db.execute(
        select(
            func.max(AdImage.order),
            func.max(AdImage.position),
            func.count(AdImage.id),
        ).where(AdImage.ad_id == ad_id)
    )
    max_order, max_position, count = result.one()
    return BatchSlots(
        max_order=-1 if max_order is None else max_order,
        max_position=max_position or 0,
        count=count,
    )


async def _check_invariants(db: AsyncSession, ad_id: int, new_orders: Iterable[int] = ()) -> None:
    """Raise MetadataConflictError if another writer broke the ad's invariants."""
    main_count = (
        await db.execute(
            select(func.count(AdImage.id)).where(AdImage.ad_id == ad_id, AdImage.is_main.is_(True))
        )
    ).scalar_one()
    if main_count > 1:
        raise MetadataConflictError(
            f"Ad {ad_id} has {main_count} main images", {"ad_id": ad_id}
        )

    new_orders = list(new_orders)
    if new_orders:
        duplicated = (
            await db.execute(
                select(AdImage.order)
                .where(AdImage.ad_id == ad_id, AdImage.order.in_(new_orders))
                .group_by(AdImage.order)
                .having(func.count(AdImage.id) > 1)
            )
        ).scalars().all()
        if duplicated:
            raise MetadataConflictError(
                f"Ad {ad_id} has duplicate order values {sorted(duplicated)}",
                {"ad_id": ad_id, "orders": sorted(duplicated)},
            )


async def insert_batch(db: AsyncSession, ad_id: int, images: Sequence[AdImage]) -> None:
    """
    Persist all records of a create batch in one transaction.

    Raises:
        MetadataConflictError: If a concurrent batch took the same order or
            position, or a second main image appeared. Nothing is committed.
    """
    if not images:
        return

    db.add_all(images)
    try:
        await db.flush()
        await _check_invariants(db, ad_id, [image.order for image in images])
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise MetadataConflictError(
            f"Concurrent upload for ad {ad_id} took the same slots", {"ad_id": ad_id}
        ) from e
    except MetadataConflictError:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        raise MetadataWriteError(f"Could not register images for ad {ad_id}: {e}", {"ad_id": ad_id}) from e

    logger.info("Registered %d images for ad %d", len(images), ad_id)


async def existing_paths(db: AsyncSession, paths: Sequence[str]) -> List[str]:
    """Paths among the given ones that some committed row still owns."""
    if not paths:
        return []
    result = await db.execute(select(AdImage.path).where(AdImage.path.in_(list(paths))))
    return list(result.scalars().all())


async def _remove_files(storage: StorageAdapter, images: Sequence[AdImage]) -> None:
    for image in images:
        if not await storage.delete(storage_key(image.path)):
            logger.warning("File already missing for image %d: %s", image.id, image.path)


async def delete_images(
    db: AsyncSession, storage: StorageAdapter, ad_id: int, image_ids: Iterable[int]
) -> List[int]:
    """
    Delete the given images of an ad, files first, then rows.

    Ids that do not belong to the ad are ignored. Missing files are tolerated.

    Returns:
        Ids actually deleted
    """
    image_ids = set(image_ids)
    if not image_ids:
        return []

    result = await db.execute(
        select(AdImage).where(AdImage.ad_id == ad_id, AdImage.id.in_(image_ids))
    )
    images = list(result.scalars().all())
    if not images:
        return []

    await _remove_files(storage, images)

    deleted_ids = [image.id for image in images]
    for image in images:
        await db.delete(image)
    await db.commit()

    logger.info("Deleted images %s of ad %d", deleted_ids, ad_id)
    return deleted_ids


async def delete_all(db: AsyncSession, storage: StorageAdapter, owner_id: int, ad_id: int) -> int:
    """
    Cascade used when an ad is destroyed: every file and row goes.

    After the registered files, the ad's whole folder is swept so files
    left behind by a batch whose rollback failed go too.

    Returns:
        Number of image rows removed
    """
    images = await list_images(db, ad_id)
    await _remove_files(storage, images)

    for image in images:
        await db.delete(image)
    await db.commit()

    swept = await storage.delete_prefix(storage_key(ad_folder(owner_id, ad_id)) + "/")
    if swept:
        logger.warning("Swept %d unregistered files of ad %d", swept, ad_id)

    logger.info("Deleted all %d images of ad %d", len(images), ad_id)
    return len(images)


async def set_main(db: AsyncSession, ad_id: int, image_id: int) -> bool:
    """
    Make image_id the only main image of the ad.

    A target that does not belong to the ad is a silent no-op.

    Returns:
        True if the flags changed hands, False for the no-op case
    """
    images = await list_images(db, ad_id)
    if image_id not in {image.id for image in images}:
        logger.info("Image %d does not belong to ad %d; main image unchanged", image_id, ad_id)
        return False

    for image in images:
        image.is_main = image.id == image_id
    try:
        await db.flush()
        await _check_invariants(db, ad_id)
    except MetadataConflictError:
        await db.rollback()
        raise
    await db.commit()

    logger.info("Image %d is now main for ad %d", image_id, ad_id)
    return True


async def reorder(db: AsyncSession, ad_id: int, image_ids: Sequence[int]) -> Dict[int, int]:
    """
    Set each listed sibling's order to its 0-based index in image_ids.

    Siblings absent from the list keep their order, so a partial list can
    leave duplicate order values; callers are expected to send the full set.
    Foreign ids are ignored; a repeated id keeps its first index.

    Returns:
        Mapping of image id to its new order for the rows that changed
    """
    positions: Dict[int, int] = {}
    for index, image_id in enumerate(image_ids):
        positions.setdefault(image_id, index)

    changed: Dict[int, int] = {}
    for image in await list_images(db, ad_id):
        if image.id in positions:
            image.order = positions[image.id]
            changed[image.id] = image.order

    await db.commit()

    logger.info("Reordered images of ad %d: %s", ad_id, changed)
    return changed
