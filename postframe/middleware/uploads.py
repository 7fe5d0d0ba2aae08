"""ASGI middleware that serves original upload files."""

from __future__ import annotations

import asyncio
import mimetypes
from pathlib import Path

from litestar.types import ASGIApp, Receive, Scope, Send

from postframe.middleware.helpers import send_bytes, send_not_found


def resolve_upload_path(path: str, uploads_prefix: str, uploads_dir: Path) -> Path | None:
    """Map a decoded request path onto a location inside *uploads_dir*.

    Returns ``None`` for paths outside the uploads namespace or paths that
    try to escape it. The returned path may not exist.
    """
    if not path.startswith(uploads_prefix):
        return None

    relative = path[len(uploads_prefix):]
    if not relative or ".." in relative.split("/") or "\x00" in relative:
        return None

    root = uploads_dir.resolve()
    try:
        resolved = (root / relative).resolve()
    except (OSError, ValueError):
        return None

    if not resolved.is_relative_to(root):
        return None

    return resolved


class UploadFilesMiddleware:
    """Serve ``{uploads_prefix}*`` straight from disk, before Litestar's router.

    Missing files get a plain-text 404; every other path goes to the
    wrapped app.
    """

    def __init__(self, app: ASGIApp, uploads_dir: Path, uploads_prefix: str = "/uploads/") -> None:
        self.app = app
        self.uploads_dir = uploads_dir
        self.uploads_prefix = uploads_prefix

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not scope["path"].startswith(self.uploads_prefix):
            await self.app(scope, receive, send)
            return

        resolved = resolve_upload_path(scope["path"], self.uploads_prefix, self.uploads_dir)
        if resolved is None or not await asyncio.to_thread(resolved.is_file):
            await send_not_found(send)
            return

        media_type = mimetypes.guess_type(str(resolved))[0] or "application/octet-stream"
        content = await asyncio.to_thread(resolved.read_bytes)
        await send_bytes(send, content, media_type)
