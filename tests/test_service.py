"""Tests for avatar and ad image ingestion, ordering and main image handling."""
import asyncio

import pytest

from adimages import registrar
from adimages import service as service_module
from adimages.addressing import storage_key
from adimages.errors import (
    BatchAbortedError, ConvergenceTimeoutError, MetadataConflictError, StorageIOError,
    UnsupportedFormatError,
)
from adimages.models import AdImage
from adimages.service import ImageService, Upload
from adimages.storage import LocalStorageAdapter
from conftest import jpeg_upload, text_upload

OWNER = 45
AD = 123


class FailingStorage(LocalStorageAdapter):
    """Local storage whose n-th save fails."""

    def __init__(self, base_path, fail_on):
        super().__init__(base_path)
        self.fail_on = fail_on
        self.saves = 0

    async def save(self, key, data):
        self.saves += 1
        if self.saves == self.fail_on:
            raise StorageIOError(f"disk full writing {key}")
        return await super().save(key, data)


class StuckStorage(FailingStorage):
    """FailingStorage that cannot delete either, so rollbacks leave files behind."""

    async def delete(self, key):
        raise StorageIOError(f"permission denied removing {key}")


async def upload_three(service, ad_id=AD):
    await service.save_ad_images(OWNER, ad_id, [jpeg_upload(f"{n}.jpg") for n in "abc"])
    return await service.get_ad_images(ad_id)


async def test_batch_skips_non_images(service, storage):
    """3 images + 1 text file on an empty ad: 3 rows, orders 0..2, first is main."""
    uploads = [jpeg_upload("a.jpg"), text_upload(), jpeg_upload("b.jpg"), jpeg_upload("c.jpg")]
    batch = await service.save_ad_images(OWNER, AD, uploads)

    assert batch.urls == [
        "/files/45/userAds/123/1.jpeg",
        "/files/45/userAds/123/2.jpeg",
        "/files/45/userAds/123/3.jpeg",
    ]
    assert [s.filename for s in batch.skipped] == ["notes.txt"]

    images = await service.get_ad_images(AD)
    assert [image.order for image in images] == [0, 1, 2]
    assert [image.is_main for image in images] == [True, False, False]
    for image in images:
        assert await storage.exists(storage_key(image.path))
        assert image.size_bytes <= 100 * 1024

    folder = storage.base_path / "files" / "45" / "userAds" / "123"
    assert sorted(p.name for p in folder.iterdir()) == ["1.jpeg", "2.jpeg", "3.jpeg"]


async def test_undecodable_image_is_skipped(service):
    bogus = Upload(data=b"\xff\xd8 broken", content_type="image/jpeg", filename="broken.jpg")
    batch = await service.save_ad_images(OWNER, AD, [bogus, jpeg_upload()])

    assert len(batch.urls) == 1
    assert batch.skipped[0].filename == "broken.jpg"
    images = await service.get_ad_images(AD)
    assert [(i.order, i.is_main) for i in images] == [(0, True)]


async def test_repeated_batches_keep_orders_unique(service):
    await service.save_ad_images(OWNER, AD, [jpeg_upload(), jpeg_upload()])
    second = await service.save_ad_images(OWNER, AD, [jpeg_upload(), jpeg_upload(), jpeg_upload()])

    images = await service.get_ad_images(AD)
    orders = [image.order for image in images]
    assert orders == [0, 1, 2, 3, 4]
    assert sum(image.is_main for image in images) == 1
    assert second.urls[0] == "/files/45/userAds/123/3.jpeg"
    assert len({image.path for image in images}) == 5


async def test_new_batch_after_reorder_and_delete_does_not_reuse_live_paths(service):
    images = await upload_three(service)
    a, b, c = images
    await service.reorder_images(AD, [c.id, b.id, a.id])
    await service.delete_ad_images(AD, [a.id])

    batch = await service.save_ad_images(OWNER, AD, [jpeg_upload()])

    paths = [image.path for image in await service.get_ad_images(AD)]
    assert len(set(paths)) == 3
    assert batch.urls == ["/files/45/userAds/123/4.jpeg"]


async def test_concurrent_batches_for_same_ad(session_factory, storage):
    async with session_factory() as first, session_factory() as second:
        await asyncio.gather(
            ImageService(first, storage).save_ad_images(OWNER, AD, [jpeg_upload(), jpeg_upload()]),
            ImageService(second, storage).save_ad_images(OWNER, AD, [jpeg_upload(), jpeg_upload()]),
        )

    async with session_factory() as check:
        images = await registrar.list_images(check, AD)
    assert sorted(image.order for image in images) == [0, 1, 2, 3]
    assert sum(image.is_main for image in images) == 1


async def test_set_main_moves_flag(service):
    a, b, c = await upload_three(service)

    assert await service.set_main_image(AD, c.id) is True
    assert await service.set_main_image(AD, b.id) is True

    images = await service.get_ad_images(AD)
    assert [image.id for image in images if image.is_main] == [b.id]


async def test_set_main_ignores_foreign_image(service):
    await upload_three(service, ad_id=1)
    other = await upload_three(service, ad_id=2)
    before = [(i.id, i.is_main, i.order) for i in await service.get_ad_images(1)]

    assert await service.set_main_image(1, other[2].id) is False

    after = [(i.id, i.is_main, i.order) for i in await service.get_ad_images(1)]
    assert after == before


async def test_partial_reorder_keeps_absent_orders(service):
    """[B, A] on {A: 0, C: 1, B: 2} gives B=0, A=1 and leaves C at 1."""
    a, b, c = await upload_three(service)
    await service.reorder_images(AD, [a.id, c.id, b.id])

    await service.reorder_images(AD, [b.id, a.id])

    orders = {image.id: image.order for image in await service.get_ad_images(AD)}
    assert orders == {b.id: 0, a.id: 1, c.id: 1}


async def test_reorder_ignores_foreign_ids(service):
    a, b, c = await upload_three(service)
    await service.reorder_images(AD, [c.id, 9999, b.id, a.id])

    orders = {image.id: image.order for image in await service.get_ad_images(AD)}
    assert orders == {c.id: 0, b.id: 2, a.id: 3}


async def test_delete_tolerates_missing_file(service, storage):
    a, b, c = await upload_three(service)
    await storage.delete(storage_key(a.path))

    deleted = await service.delete_ad_images(AD, [a.id])

    assert deleted == [a.id]
    assert [image.id for image in await service.get_ad_images(AD)] == [b.id, c.id]


async def test_delete_ignores_other_ads(service, storage):
    mine = await upload_three(service, ad_id=1)
    theirs = await upload_three(service, ad_id=2)

    deleted = await service.delete_ad_images(1, [mine[0].id, theirs[0].id])

    assert deleted == [mine[0].id]
    assert await service.get_ad_images_count(2) == 3
    assert await storage.exists(storage_key(theirs[0].path))
    assert not await storage.exists(storage_key(mine[0].path))


async def test_delete_all_removes_rows_and_files(service, storage):
    images = await upload_three(service)

    assert await service.delete_all_ad_images(OWNER, AD) == 3

    assert await service.get_ad_images_count(AD) == 0
    for image in images:
        assert not await storage.exists(storage_key(image.path))


async def test_delete_all_sweeps_files_left_by_failed_rollback(db_session, tmp_path):
    root = tmp_path / "storage"
    stuck = ImageService(db_session, StuckStorage(str(root), fail_on=2))

    with pytest.raises(BatchAbortedError) as exc_info:
        await stuck.save_ad_images(OWNER, AD, [jpeg_upload("a.jpg"), jpeg_upload("b.jpg")])
    assert exc_info.value.details["orphaned"] == ["/files/45/userAds/123/1.jpeg"]
    assert (root / "files/45/userAds/123/1.jpeg").is_file()

    service = ImageService(db_session, LocalStorageAdapter(str(root)))
    assert await service.delete_all_ad_images(OWNER, AD) == 0

    assert not (root / "files/45/userAds/123").exists()


async def test_delete_all_keeps_other_ads_files(service, storage):
    await upload_three(service, ad_id=12)
    kept = await upload_three(service, ad_id=123)

    await service.delete_all_ad_images(OWNER, 12)

    for image in kept:
        assert await storage.exists(storage_key(image.path))


async def test_io_failure_aborts_and_rolls_back_batch(db_session, tmp_path):
    storage = FailingStorage(str(tmp_path / "storage"), fail_on=2)
    service = ImageService(db_session, storage)

    with pytest.raises(BatchAbortedError) as exc_info:
        await service.save_ad_images(OWNER, AD, [jpeg_upload("a.jpg"), jpeg_upload("b.jpg"), jpeg_upload("c.jpg")])

    details = exc_info.value.details
    assert details["rolled_back"] == ["/files/45/userAds/123/1.jpeg"]
    assert details["aborted"] == ["b.jpg", "c.jpg"]
    assert details["cause"] == "storage_io_failure"
    assert not await storage.exists("files/45/userAds/123/1.jpeg")
    assert await service.get_ad_images_count(AD) == 0


async def test_convergence_timeout_is_retryable(service, monkeypatch):
    def slow_transcode(data, budget):
        import time
        time.sleep(0.5)

    monkeypatch.setattr(service_module, "transcode", slow_transcode)
    monkeypatch.setattr(service_module.settings, "CONVERGE_TIMEOUT_SECONDS", 0.05)

    with pytest.raises(ConvergenceTimeoutError) as exc_info:
        await service.save_avatar(OWNER, jpeg_upload())
    assert exc_info.value.retryable

    with pytest.raises(BatchAbortedError) as exc_info:
        await service.save_ad_images(OWNER, AD, [jpeg_upload()])
    assert exc_info.value.retryable


async def test_slot_collision_is_a_conflict(db_session):
    db_session.add(AdImage(
        ad_id=AD, path="/files/45/userAds/123/1.jpeg", position=1, is_main=True, order=0,
        size_bytes=1, width=1, height=1, quality=90,
    ))
    await db_session.commit()

    duplicate = AdImage(
        ad_id=AD, path="/files/45/userAds/123/1b.jpeg", position=1, is_main=False, order=1,
        size_bytes=1, width=1, height=1, quality=90,
    )
    with pytest.raises(MetadataConflictError) as exc_info:
        await registrar.insert_batch(db_session, AD, [duplicate])
    assert exc_info.value.retryable
    assert await registrar.count_images(db_session, AD) == 1


async def test_second_main_image_is_a_conflict(db_session):
    rows = [
        AdImage(ad_id=AD, path=f"/files/45/userAds/123/{n}.jpeg", position=n, is_main=True, order=n,
                size_bytes=1, width=1, height=1, quality=90)
        for n in (1, 2)
    ]
    with pytest.raises(MetadataConflictError):
        await registrar.insert_batch(db_session, AD, rows)
    assert await registrar.count_images(db_session, AD) == 0


async def test_edit_applies_delete_add_main_order(service):
    a, b, c = await upload_three(service)

    batch = await service.edit_ad_images(OWNER, AD, new_uploads=[jpeg_upload("d.jpg")], delete_ids=[b.id])
    d = next(i for i in await service.get_ad_images(AD) if i.path == batch.urls[0])
    assert d.order == 3
    assert not d.is_main

    await service.edit_ad_images(OWNER, AD, main_image_id=d.id, image_order=[d.id, c.id, a.id])

    images = await service.get_ad_images(AD)
    assert [image.id for image in images] == [d.id, c.id, a.id]
    assert [image.is_main for image in images] == [True, False, False]
    assert await service.get_ad_image_paths(AD) == [d.path, c.path, a.path]


async def test_avatar_lifecycle(service, storage):
    assert not await service.avatar_exists(OWNER)

    first = await service.save_avatar(OWNER, jpeg_upload(width=300, height=300))
    second = await service.save_avatar(OWNER, jpeg_upload(width=200, height=100, noise=True))

    assert first == second == service.avatar_path(OWNER) == "/files/45/avatar/av.jpeg"
    assert await service.avatar_exists(OWNER)
    avatar_dir = storage.base_path / "files" / "45" / "avatar"
    assert [p.name for p in avatar_dir.iterdir()] == ["av.jpeg"]

    assert await service.delete_avatar(OWNER) is True
    assert not await service.avatar_exists(OWNER)
    assert await service.delete_avatar(OWNER) is False


async def test_avatar_rejects_non_image(service):
    with pytest.raises(UnsupportedFormatError):
        await service.save_avatar(OWNER, text_upload())
    assert not await service.avatar_exists(OWNER)


async def test_ad_locks_are_released(session_factory, storage):
    async with session_factory() as db:
        service = ImageService(db, storage)
        a, b, c = [image.id for image in await upload_three(service)]
        for ad_id in range(1000, 1100):
            assert await service.set_main_image(ad_id, a) is False
        await service.delete_ad_images(AD, [b])
        assert registrar._ad_locks == {}

    async with session_factory() as first, session_factory() as second:
        await asyncio.gather(
            ImageService(first, storage).reorder_images(AD, [c, a]),
            ImageService(second, storage).set_main_image(AD, c),
        )
    assert registrar._ad_locks == {}


async def test_ad_lock_serialises_holders():
    events = []

    async def hold(name):
        async with registrar.ad_lock(AD):
            events.append(f"{name} in")
            await asyncio.sleep(0.01)
            events.append(f"{name} out")

    await asyncio.gather(hold("a"), hold("b"))

    assert events == ["a in", "a out", "b in", "b out"]
    assert AD not in registrar._ad_locks
