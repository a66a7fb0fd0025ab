"""Shared pytest fixtures."""

import io
import sys

import pytest
import yaml
from PIL import Image
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from imagepipe.config import (
    BucketConfig,
    DatabaseConfig,
    Settings,
    StorageConfig,
)
from imagepipe.db.base import Base
from imagepipe.db.services.access_link_service import AccessLinkIssuer
from imagepipe.db.services.upload_service import UploadOrchestrator
from imagepipe.lib.hooks import HookRegistry, hooks
from imagepipe.lib.storage import StorageManager

SECRET = "test-secret-key"


def make_image(fmt: str = "PNG", size: tuple[int, int] = (1200, 900), color: str = "red") -> bytes:
    """Encode a solid-colour image in *fmt*."""
    buf = io.BytesIO()
    mode = "RGBA" if fmt == "PNG" else "RGB"
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_image("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image("JPEG")


@pytest.fixture
def temp_app_yaml(tmp_path):
    """Create a temporary app.yaml file for testing."""
    config_path = tmp_path / "app.yaml"

    def _create_config(config: dict):
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f)
        return config_path

    return _create_config


@pytest.fixture(autouse=True)
def clean_sys_path():
    """Ensure sys.path is restored after each test."""
    original_path = sys.path.copy()
    yield
    sys.path = original_path


@pytest.fixture
def clean_hooks():
    """Save and restore global hooks state around a test."""
    original_filters = hooks._filters.copy()
    original_actions = hooks._actions.copy()
    yield
    hooks._filters = original_filters
    hooks._actions = original_actions


@pytest.fixture
def storage_config(tmp_path):
    return StorageConfig(
        default="uploads",
        private="private_files",
        base_url="http://testserver",
        call_timeout=5.0,
        buckets={
            "uploads": BucketConfig(local_path=str(tmp_path / "storage" / "uploads"), public=True),
            "private_files": BucketConfig(
                local_path=str(tmp_path / "storage" / "private_files"), public=False
            ),
        },
    )


@pytest.fixture
def settings(tmp_path, storage_config):
    return Settings(
        secret_key=SECRET,
        db=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}", create_all=True),
        storage=storage_config,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def storage(storage_config):
    manager = StorageManager(storage_config, secret_key=SECRET)
    yield manager
    await manager.close()


@pytest.fixture
def hook_registry():
    return HookRegistry()


@pytest.fixture
def orchestrator(settings, storage, hook_registry):
    return UploadOrchestrator.from_settings(settings, storage, hook_registry)


@pytest.fixture
def access_links(settings, storage):
    return AccessLinkIssuer(storage, settings.access, settings.db.call_timeout)


def fake_auth_middleware(app):
    """Stand-in for the host's auth layer: identity from ``x-user-id``/``x-user-role``."""

    async def middleware(scope, receive, send):
        if scope["type"] == "http":
            headers = dict(scope.get("headers") or [])
            user_id = headers.get(b"x-user-id")
            if user_id:
                scope["user"] = {
                    "id": user_id.decode(),
                    "role": headers.get(b"x-user-role", b"staff").decode(),
                }
        await app(scope, receive, send)

    return middleware
