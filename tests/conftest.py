"""Shared fixtures: temporary database, storage root and generated images."""
import asyncio
from io import BytesIO

import pytest
from PIL import Image
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from adimages.app import app
from adimages.db import create_tables, get_db
from adimages.endpoints import get_storage
from adimages.service import ImageService, Upload
from adimages.storage import LocalStorageAdapter


def make_image_bytes(width=64, height=48, fmt="JPEG", noise=False, mode="RGB"):
    """Encode a generated image; noise images are hard to compress."""
    if noise:
        img = Image.effect_noise((width, height), 64).convert(mode)
    else:
        img = Image.new(mode, (width, height), color="red" if mode == "RGB" else (255, 0, 0, 128))
    output = BytesIO()
    img.save(output, format=fmt, **({"quality": 90} if fmt == "JPEG" else {}))
    return output.getvalue()


def jpeg_upload(name="photo.jpg", **kwargs):
    return Upload(data=make_image_bytes(**kwargs), content_type="image/jpeg", filename=name)


def text_upload(name="notes.txt"):
    return Upload(data=b"not an image", content_type="text/plain", filename=name)


def _engine(tmp_path):
    # NullPool: no connection outlives the event loop that opened it
    return create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)


@pytest.fixture(scope="function")
async def session_factory(tmp_path):
    """Create a fresh database with tables and return its session factory."""
    engine = _engine(tmp_path)
    await create_tables(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    return LocalStorageAdapter(str(tmp_path / "storage"))


@pytest.fixture
def service(db_session, storage):
    return ImageService(db_session, storage)


@pytest.fixture(scope="function")
def test_client(tmp_path):
    """Create test client with test database and storage root."""
    engine = _engine(tmp_path)
    asyncio.run(create_tables(engine))
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    storage_path = tmp_path / "storage"

    async def override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: LocalStorageAdapter(str(storage_path))

    with TestClient(app) as client:
        client.storage_path = storage_path
        yield client

    app.dependency_overrides.clear()
