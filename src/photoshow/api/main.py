"""Photoshow - FastAPI Application.

This module builds the web application around the cache core.  It defines the
:func:`create_app` factory, all REST API routes, the module-level ``app``
instance and the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
The lifespan handler is the composition root.  On startup it builds every
collaborator exactly once and stores it on ``app.state``:

- **Backing store** selected by ``PHOTOSHOW_CACHE_TYPE`` (file or Redis).
  The choice is fixed for the lifetime of the process.
- **Cache manager** with its short-lived memory layer.
- **Object store** holding the image bytes (a local directory by default).
- **Cache refresher** that rebuilds the cache from the object store in the
  background when it is cold or expired.
- **Generation limit service** counting generations per day.
- **Storage usage monitor** reporting usage against the storage quota.
- **Image provider** turning prompts into image bytes (optional).

Route handlers only translate between HTTP and these collaborators.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/api/health``               Version, cache type, refresh state
GET       ``/api/images``               Cached images, refreshed if stale
GET       ``/api/images/cache``         Combined cache status
POST      ``/api/images/cache/sync``    Rebuild the cache now
PATCH     ``/api/images/{id}``          Update tags or prompt
DELETE    ``/api/images/{file_name}``   Delete an image everywhere
POST      ``/api/generate``             Generate, store and cache an image
GET       ``/api/generation-status``    Today's generation quota
GET       ``/api/config/cache-type``    Active backing store type
GET       ``/api/storage``              Storage usage against the quota
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    photoshow

Direct invocation::

    python -m photoshow.api.main
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from photoshow import __version__
from photoshow.api.models import GenerateRequest, ImageUpdateRequest
from photoshow.core.cache_manager import CacheManager
from photoshow.core.cache_store import CacheStoreBase, create_cache_store
from photoshow.core.config import PhotoshowConfig, config
from photoshow.core.errors import CacheStoreError, ObjectStoreError, ProviderError
from photoshow.core.generation_limit import GenerationLimitService
from photoshow.core.images import format_timestamp, from_storage_object, utc_now
from photoshow.core.object_store import LocalObjectStore, ObjectStore
from photoshow.core.providers import ImageProvider
from photoshow.core.refresh import CacheRefresher
from photoshow.core.storage_usage import StorageUsageMonitor

logger = logging.getLogger(__name__)

GALLERY_URL = "/static/gallery"


def create_app(
    settings: PhotoshowConfig | None = None,
    *,
    cache_store: CacheStoreBase | None = None,
    object_store: ObjectStore | None = None,
    image_provider: ImageProvider | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration to use (the global ``config`` by default).
        cache_store: Backing store to use instead of the configured one.
        object_store: Object store to use instead of the local gallery
            directory.
        image_provider: Provider used by ``POST /api/generate``.  Without
            one, generation requests are answered with 503.

    Returns:
        The configured application.  Collaborators are created when the
        application starts, not here.
    """
    settings = settings or config

    # -----------------------------------------------------------------------
    # Application lifecycle: the composition root.
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the collaborators on startup and release them on shutdown.

        Args:
            app: The FastAPI application instance.

        Yields:
            Control back to the application for the duration of its lifetime.
        """
        # --- Startup -------------------------------------------------------
        store = cache_store if cache_store is not None else create_cache_store(settings)
        objects = (
            object_store
            if object_store is not None
            else LocalObjectStore(settings.gallery_dir, base_url=GALLERY_URL)
        )
        manager = CacheManager(store, memory_ttl_seconds=settings.memory_cache_ttl_seconds)

        app.state.settings = settings
        app.state.cache_manager = manager
        app.state.object_store = objects
        app.state.refresher = CacheRefresher(
            manager, objects, expire_minutes=settings.cache_expire_minutes
        )
        app.state.generation_limit = GenerationLimitService(
            store,
            daily_limit=settings.daily_generation_limit,
            retention_seconds=settings.generation_counter_ttl_seconds,
        )
        app.state.storage_usage = StorageUsageMonitor(
            objects,
            quota_bytes=settings.storage_quota_bytes,
            warning_threshold=settings.storage_warning_threshold,
            ttl_seconds=settings.storage_cache_ttl_seconds,
        )
        app.state.image_provider = image_provider
        logger.info(f"Photoshow {__version__} started with the {manager.cache_type} cache")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        await app.state.refresher.shutdown()
        await manager.close()
        logger.info("Photoshow shut down")

    app = FastAPI(
        title="Photoshow",
        description="Image gallery API with a cached image list and a daily generation quota.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow cross-origin requests so the frontend can be served from a
    # different port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Serve the bytes of locally stored images at ``/static/gallery/...``.
    if object_store is None:
        settings.gallery_dir.mkdir(parents=True, exist_ok=True)
        app.mount(GALLERY_URL, StaticFiles(directory=str(settings.gallery_dir)), name="gallery")

    _register_routes(app)
    return app


def _find_cached(images: list[dict], file_name: str) -> list[dict]:
    """Return cached records that refer to ``file_name`` by any identifier."""
    return [
        image
        for image in images
        if file_name in (image.get("id"), image.get("file_name"), image.get("cloud_file_name"))
    ]


def _register_routes(app: FastAPI) -> None:
    # -----------------------------------------------------------------------
    # Health and configuration.
    # -----------------------------------------------------------------------

    @app.get("/api/health")
    async def health(request: Request) -> dict:
        """Return version, active cache type and background refresh state."""
        state = request.app.state
        return {
            "status": "ok",
            "version": __version__,
            "cacheType": state.cache_manager.cache_type,
            "refresh": state.refresher.status,
        }

    @app.get("/api/config/cache-type")
    async def get_cache_type(request: Request) -> dict:
        """Return the active backing store type.

        The type is chosen once at startup from ``PHOTOSHOW_CACHE_TYPE``;
        changing it requires a restart.
        """
        return {"cacheType": request.app.state.cache_manager.cache_type}

    # -----------------------------------------------------------------------
    # Image cache.
    # -----------------------------------------------------------------------

    @app.get("/api/images")
    async def list_images(request: Request, tag: str | None = None) -> dict:
        """Return cached images, newest first.

        Answers from the cache immediately.  When the cache is cold or
        expired, a background refresh is started and the response says so
        with ``refreshing``.

        Args:
            tag: If provided, return only images carrying this tag.

        Returns:
            Dictionary with ``images``, ``count``, ``isInitialized``,
            ``isExpired``, ``lastUpdated`` and ``refreshing``.
        """
        refresher: CacheRefresher = request.app.state.refresher
        status = await refresher.read_through()

        images = status.images
        if tag:
            images = [image for image in images if tag in (image.get("tags") or [])]

        return {
            "images": images,
            "count": len(images),
            "isInitialized": status.is_initialized,
            "isExpired": status.is_expired,
            "lastUpdated": format_timestamp(status.last_updated),
            "refreshing": refresher.is_refreshing,
        }

    @app.get("/api/images/cache")
    async def get_cache_status(request: Request) -> dict:
        """Return the combined cache status without triggering a refresh."""
        state = request.app.state
        status = await state.cache_manager.get_cache_status(state.settings.cache_expire_minutes)
        return status.to_dict()

    @app.post("/api/images/cache/sync")
    async def sync_cache(request: Request) -> dict:
        """Rebuild the cache from the object store and wait for the result.

        A background refresh already in flight is joined, not duplicated.

        Raises:
            HTTPException: 502 if the object store cannot be listed.
        """
        try:
            merged = await request.app.state.refresher.refresh_now()
        except ObjectStoreError as e:
            logger.error(f"Cache sync failed: {e}")
            raise HTTPException(status_code=502, detail=f"Object store unavailable: {e}") from e

        return {"success": True, "count": len(merged)}

    @app.patch("/api/images/{image_id}")
    async def update_image(image_id: str, req: ImageUpdateRequest, request: Request) -> dict:
        """Update the tags and/or prompt of a cached image.

        Raises:
            HTTPException: 400 if no field was supplied, 404 if the image is
                not in the cache.
        """
        fields = req.changed_fields()
        if not fields:
            raise HTTPException(status_code=400, detail="Nothing to update")

        updated = await request.app.state.cache_manager.update(image_id, fields)
        if not updated:
            raise HTTPException(status_code=404, detail="Image not found")

        return {"success": True, "id": image_id, **fields}

    @app.delete("/api/images/{file_name}")
    async def delete_image(file_name: str, request: Request) -> dict:
        """Delete an image from the object store, then from the cache.

        Raises:
            HTTPException: 404 if neither the object store nor the cache knew
                the image, 502 if the object store delete failed.
        """
        state = request.app.state
        try:
            deleted = await state.object_store.delete_object(file_name)
        except ObjectStoreError as e:
            logger.error(f"Failed to delete {file_name} from the object store: {e}")
            raise HTTPException(status_code=502, detail=str(e)) from e

        matches = _find_cached(await state.cache_manager.get_all(), file_name)
        for image in matches:
            await state.cache_manager.remove(image["id"])

        if not deleted and not matches:
            raise HTTPException(status_code=404, detail="Image not found")

        return {"success": True, "deleted": file_name, "removedFromCache": len(matches)}

    # -----------------------------------------------------------------------
    # Generation.
    # -----------------------------------------------------------------------

    @app.post("/api/generate")
    async def generate_image(req: GenerateRequest, request: Request) -> dict:
        """Generate one image, store it and add it to the cache.

        This endpoint:

        1. Checks today's generation quota.
        2. Asks the image provider for the image bytes.
        3. Uploads the bytes to the object store with prompt and tags.
        4. Adds the new record to the cache.
        5. Counts the generation against today's quota.

        Returns:
            Dictionary with ``success``, ``image``, ``imageUrl`` and the
            updated ``generationStatus``.

        Raises:
            HTTPException: 429 when the daily limit is reached, 503 without
                an image provider, 502 when the provider or the object store
                fails.
        """
        state = request.app.state
        provider: ImageProvider | None = state.image_provider
        if provider is None:
            raise HTTPException(status_code=503, detail="Image generation is not configured")

        limits: GenerationLimitService = state.generation_limit
        limit_status = await limits.check_limit()
        if limit_status.is_limit_exceeded:
            raise HTTPException(
                status_code=429,
                detail={"error": "Daily generation limit reached", **limit_status.to_dict()},
            )

        try:
            data = await provider.generate(req.prompt)
        except ProviderError as e:
            logger.error(f"Image generation failed: {e}")
            raise HTTPException(status_code=502, detail=f"Image generation failed: {e}") from e

        key = f"{uuid.uuid4()}.png"
        metadata: dict[str, Any] = {
            "prompt": req.prompt,
            "tags": req.tags,
            "created_at": format_timestamp(utc_now()),
        }
        try:
            entry = await state.object_store.put_object(key, data, metadata)
        except ObjectStoreError as e:
            logger.error(f"Failed to store generated image {key}: {e}")
            raise HTTPException(status_code=502, detail=f"Failed to store image: {e}") from e

        record = from_storage_object(entry)
        try:
            await state.cache_manager.add_or_update(record)
        except CacheStoreError as e:
            # The image is stored; the next refresh picks it up.
            logger.error(f"Failed to cache generated image {key}: {e}")

        count = await limits.increment()
        return {
            "success": True,
            "image": record,
            "imageUrl": record["url"],
            "generationStatus": {
                "limit": limits.daily_limit,
                "currentCount": count,
                "remaining": max(0, limits.daily_limit - count),
            },
        }

    @app.get("/api/generation-status")
    async def generation_status(request: Request) -> dict:
        """Return today's generation quota."""
        status = await request.app.state.generation_limit.check_limit()
        return {
            "limit": status.limit,
            "currentCount": status.current_count,
            "remaining": status.remaining,
        }

    # -----------------------------------------------------------------------
    # Storage usage.
    # -----------------------------------------------------------------------

    @app.get("/api/storage")
    async def storage_usage(request: Request, refresh: bool = False) -> dict:
        """Return object store usage against the storage quota.

        Args:
            refresh: Recompute even if a fresh report is cached.

        Raises:
            HTTPException: 502 if usage was never computed and the object
                store cannot be listed.
        """
        try:
            return await request.app.state.storage_usage.get_usage(force_refresh=refresh)
        except ObjectStoreError as e:
            logger.error(f"Storage usage unavailable: {e}")
            raise HTTPException(status_code=502, detail=str(e)) from e


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~photoshow.core.config.config` (which
    loads from ``PHOTOSHOW_SERVER_HOST`` and ``PHOTOSHOW_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``photoshow`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "photoshow.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
