import base64
import os

import httpx
import pytest
import pytest_asyncio
from blake3 import blake3
from fastapi.testclient import TestClient

from blob_server.config import QuotaConfig
from blob_server.main import create_app
from blob_server.app.services.storage_manager import StorageManager

MAX_STORAGE_BYTES = 64 * 1024
MAX_UPLOAD_BYTES = 16 * 1024


def expected_id(content: bytes) -> str:
    """Identifier of `content`, computed independently of the server."""
    return base64.urlsafe_b64encode(blake3(content).digest()).rstrip(b"=").decode()


def generate_random_content(size_bytes):
    """Generate random binary content of specified size."""
    return os.urandom(size_bytes)


def stored_files(root):
    """Relative paths of every object file under `root`."""
    return sorted(
        str(p.relative_to(root))
        for p in root.rglob("*")
        if p.is_file() and not p.name.startswith(".") and ".staging" not in p.parts
    )


@pytest.fixture
def blob_root(tmp_path):
    root = tmp_path / "blobs"
    root.mkdir()
    return root


@pytest.fixture
def limits():
    return QuotaConfig(max_storage_bytes=MAX_STORAGE_BYTES, max_upload_bytes=MAX_UPLOAD_BYTES)


@pytest.fixture
def app(blob_root, limits):
    return create_app(blob_root, limits)


@pytest.fixture
def client(app):
    # Entering the client runs the lifespan, which initializes the store.
    with TestClient(app) as client:
        yield client


@pytest_asyncio.fixture
async def storage_manager(blob_root, limits):
    manager = StorageManager(blob_root, limits)
    await manager.initialize()
    return manager


@pytest_asyncio.fixture
async def async_client(app):
    await app.state.storage_manager.initialize()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
