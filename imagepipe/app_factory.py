"""Application factory for imagepipe.

``create_app`` builds the Litestar application with its collaborators
(storage manager, upload orchestrator, access link issuer) hung off
``app.state``. ``create_asgi_app`` wraps it with the storage file server and
observability instrumentation for serving.
"""

from __future__ import annotations

import importlib
import logging
import os
import sys
from pathlib import Path
from typing import Any

from advanced_alchemy.config import EngineConfig
from advanced_alchemy.extensions.litestar import (
    AsyncSessionConfig,
    SQLAlchemyAsyncConfig,
    SQLAlchemyPlugin,
)
from litestar import Litestar
from litestar.middleware import DefineMiddleware
from litestar.types import ASGIApp

from imagepipe.config import Settings, get_settings
from imagepipe.controllers import (
    AccessLinkController,
    ImageController,
    ResourceImagesController,
    health,
)
from imagepipe.db.base import Base
from imagepipe.db.services.access_link_service import AccessLinkIssuer
from imagepipe.db.services.upload_service import UploadOrchestrator
from imagepipe.lib import observability
from imagepipe.lib.exceptions import EXCEPTION_HANDLERS
from imagepipe.lib.hooks import HookRegistry
from imagepipe.lib.storage import StorageManager
from imagepipe.middleware.storage import StorageFilesMiddleware

logger = logging.getLogger(__name__)

# Multipart overhead on top of the largest single file
_BODY_OVERHEAD = 1024 * 1024


def _load_middleware_factory(spec: str):
    """Import a middleware factory from a ``module:name`` spec."""
    if spec.count(":") != 1:
        raise ValueError(f"Invalid middleware spec '{spec}': must be in format 'module:factory'")

    module_path, factory_name = spec.split(":")
    module = importlib.import_module(module_path)
    factory = getattr(module, factory_name)
    if not callable(factory):
        raise TypeError(f"Middleware factory '{spec}' is not callable")
    return factory


def load_middleware(specs: list[str | dict]) -> list:
    """Resolve configured middleware specs.

    Simple::

        middleware:
          - myapp.auth:create_auth_middleware

    With kwargs::

        middleware:
          - factory: myapp.auth:create_auth_middleware
            kwargs:
              header: X-Api-Key
    """
    if not specs:
        return []

    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    middleware = []
    for spec in specs:
        if isinstance(spec, str):
            middleware.append(_load_middleware_factory(spec))
        elif isinstance(spec, dict):
            if "factory" not in spec:
                raise ValueError(f"Middleware dict spec must have 'factory' key: {spec}")
            factory = _load_middleware_factory(spec["factory"])
            kwargs = spec.get("kwargs") or {}
            middleware.append(DefineMiddleware(factory, **kwargs) if kwargs else factory)
        else:
            raise ValueError(
                f"Invalid middleware spec type: {type(spec).__name__}. Must be string or dict."
            )
    return middleware


def create_db_config(settings: Settings) -> SQLAlchemyAsyncConfig:
    if "sqlite" in settings.db.url:
        engine_config = EngineConfig(echo=settings.db.echo)
    else:
        engine_config = EngineConfig(
            pool_size=settings.db.pool_size,
            max_overflow=settings.db.pool_overflow,
            pool_timeout=settings.db.pool_timeout,
            pool_pre_ping=settings.db.pool_pre_ping,
            echo=settings.db.echo,
        )

    return SQLAlchemyAsyncConfig(
        connection_string=settings.db.url,
        metadata=Base.metadata,
        create_all=settings.db.create_all,
        session_config=AsyncSessionConfig(expire_on_commit=False),
        engine_config=engine_config,
    )


def max_request_body(settings: Settings) -> int:
    largest = max((p.max_bytes for p in settings.uploads.policies.values()), default=0)
    return largest * settings.uploads.max_files + _BODY_OVERHEAD


def create_app(
    settings: Settings | None = None,
    middleware: list[Any] | None = None,
    hook_registry: HookRegistry | None = None,
) -> Litestar:
    """Create the Litestar application.

    *middleware* is used instead of the configured ``middleware`` specs when
    given; the authentication layer that populates ``scope["user"]`` is
    expected to come from there.
    """
    settings = settings or get_settings()
    observability.configure(settings)

    db_config = create_db_config(settings)
    storage_manager = StorageManager(settings.storage, secret_key=settings.secret_key)
    orchestrator = UploadOrchestrator.from_settings(settings, storage_manager, hook_registry)
    access_links = AccessLinkIssuer(storage_manager, settings.access, settings.db.call_timeout)

    if middleware is None:
        middleware = load_middleware(settings.middleware)

    async def on_startup(_app: Litestar) -> None:
        observability.instrument_sqlalchemy(db_config.get_engine())

        for name in storage_manager.bucket_names:
            bucket = storage_manager.bucket_config(name)
            if bucket.backend == "local":
                Path(bucket.local_path).mkdir(parents=True, exist_ok=True)

    async def on_shutdown(_app: Litestar) -> None:
        await storage_manager.close()

    app = Litestar(
        route_handlers=[health, ImageController, AccessLinkController, ResourceImagesController],
        on_startup=[on_startup],
        on_shutdown=[on_shutdown],
        plugins=[SQLAlchemyPlugin(config=db_config)],
        middleware=middleware,
        exception_handlers=EXCEPTION_HANDLERS,
        request_max_body_size=max_request_body(settings),
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.storage_manager = storage_manager
    app.state.upload_orchestrator = orchestrator
    app.state.access_links = access_links
    return app


def create_asgi_app(settings: Settings | None = None) -> ASGIApp:
    """The served application: local bucket files under ``/storage`` plus the API."""
    settings = settings or get_settings()
    app = create_app(settings)
    return StorageFilesMiddleware(
        observability.instrument_app(app),
        storage_config=settings.storage,
        secret_key=settings.secret_key,
    )
