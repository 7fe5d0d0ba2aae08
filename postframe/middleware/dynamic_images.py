"""ASGI middleware that transforms upload images based on query parameters."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from collections.abc import Iterable
from pathlib import Path

from litestar.types import ASGIApp, Receive, Scope, Send

from postframe.lib.hooks import IMAGE_CACHED, hooks
from postframe.lib.image_cache import ImageCache
from postframe.lib.imaging import (
    Fallthrough,
    FallthroughReason,
    TransformResult,
    has_transform_params,
    parse_transform_spec,
    transform_image,
)
from postframe.lib.observability import span
from postframe.lib.signed_url import KEY_PARAM, parse_query, verify
from postframe.middleware.helpers import send_bytes, send_forbidden
from postframe.middleware.uploads import resolve_upload_path

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("image/gif", "image/jpeg", "image/png")


class DynamicImagesMiddleware:
    """Resize, crop and filter uploads on request, caching every variant.

    Requests under ``uploads_prefix`` that carry transform parameters must be
    signed; a bad signature is answered with 403. A cached variant is served
    without decoding anything. Otherwise the source is run through the
    transform pipeline, written to the cache and served.

    Whenever a transform cannot be produced (unsupported type, missing
    source, animated GIF, decode error) the request is passed to the wrapped
    app unchanged, which serves the original file or a 404.

    Query params:

    - ``width`` / ``height`` -- fit inside these dimensions, never upscaling
    - ``crop`` -- ``x1,y1,x2,y2`` box, applied after resizing
    - ``thumbnail`` -- ``w`` or ``w,h`` exact-size centered thumbnail
    - ``rotate`` -- angle between 0 and 360, transparent background
    - ``flip`` -- ``h``, ``v`` or ``both``
    - ``grayscale`` -- any non-empty value
    - ``colorize`` -- ``r,g,b`` percentages, 0 to 100
    - ``blur`` -- blur radius
    - ``colors`` -- reduce the palette to this many colors, dithered
    - ``quality`` -- 1 to 100, lossy formats only
    - ``key`` -- the URL signature
    """

    def __init__(
        self,
        app: ASGIApp,
        secret: str,
        uploads_dir: Path,
        cache: ImageCache,
        uploads_prefix: str = "/uploads/",
        supported_types: Iterable[str] = SUPPORTED_TYPES,
    ) -> None:
        self.app = app
        self._secret = secret
        self.uploads_dir = uploads_dir
        self.cache = cache
        self.uploads_prefix = uploads_prefix
        self.supported_types = frozenset(supported_types)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not scope["path"].startswith(self.uploads_prefix):
            await self.app(scope, receive, send)
            return

        path = scope["path"]
        qs = scope.get("query_string", b"")
        query = qs.decode("latin-1") if isinstance(qs, bytes) else qs
        params = parse_query(query)

        if not has_transform_params(params):
            await self.app(scope, receive, send)
            return

        mime_type = mimetypes.guess_type(path)[0]
        if mime_type not in self.supported_types:
            await self.app(scope, receive, send)
            return

        if not verify(self._request_url(scope, query), self._secret):
            await send_forbidden(send)
            return

        cache_path = self.cache.path_for(path, params.get(KEY_PARAM, ""))
        if await self.cache.exists(cache_path):
            content = await self.cache.read(cache_path)
            await send_bytes(send, content, mime_type)
            return

        result = await self._transform(path, params)
        if isinstance(result, Fallthrough):
            logger.info("Serving %s untransformed (%s) %s", path, result.reason.value, result.detail)
            await self.app(scope, receive, send)
            return

        stored = await self.cache.store(cache_path, result.data)
        await send_bytes(send, result.data, mime_type)

        if stored:
            try:
                await hooks.do_action(IMAGE_CACHED, path=path, cache_path=cache_path)
            except Exception:
                logger.warning("image_cached action failed for %s", path, exc_info=True)

    async def _transform(self, path: str, params: dict[str, str]) -> TransformResult:
        source = resolve_upload_path(path, self.uploads_prefix, self.uploads_dir)
        if source is None or not await asyncio.to_thread(source.is_file):
            return Fallthrough(FallthroughReason.SOURCE_MISSING, path)

        spec = parse_transform_spec(params)
        with span("image.transform", path=path, operations=len(spec)):
            return await transform_image(source, spec)

    @staticmethod
    def _request_url(scope: Scope, query: str) -> str:
        raw_path = scope.get("raw_path")
        url = raw_path.decode("latin-1") if raw_path else scope["path"]
        # Some servers include the query in raw_path
        url = url.split("?", 1)[0]
        if query:
            url = f"{url}?{query}"
        return url
