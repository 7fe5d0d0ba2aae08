"""ASGI application factory for Postframe.

The Litestar app is wrapped in two raw ASGI middleware layers, outermost
first:

- ``DynamicImagesMiddleware`` answers signed transform requests for uploads
- ``UploadFilesMiddleware`` serves original upload files (or a 404)

A transform request that cannot be fulfilled falls through to the static
layer, so clients always get either a variant or the original.
"""

import logging

from litestar import Litestar
from litestar.types import ASGIApp

from postframe.config import Settings, get_settings
from postframe.lib import observability
from postframe.lib.image_cache import ImageCache, register_cache_invalidation
from postframe.middleware.dynamic_images import DynamicImagesMiddleware
from postframe.middleware.uploads import UploadFilesMiddleware

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> ASGIApp:
    """Create the ASGI application serving uploads and their variants."""
    settings = settings or get_settings()
    observability.configure(settings)

    cache = ImageCache(settings.cache_path)
    register_cache_invalidation(cache)

    async def on_startup(_app: Litestar) -> None:
        """Ensure the upload and cache directories exist."""
        settings.uploads_path.mkdir(parents=True, exist_ok=True)
        cache.cache_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Caching image variants in %s", cache.cache_dir)

    app = Litestar(
        route_handlers=[],
        on_startup=[on_startup],
        debug=settings.debug,
    )

    return DynamicImagesMiddleware(
        UploadFilesMiddleware(
            observability.instrument_app(app),
            uploads_dir=settings.uploads_path,
            uploads_prefix=settings.images.uploads_prefix,
        ),
        secret=settings.secret_key,
        uploads_dir=settings.uploads_path,
        cache=cache,
        uploads_prefix=settings.images.uploads_prefix,
        supported_types=settings.images.supported_types,
    )
