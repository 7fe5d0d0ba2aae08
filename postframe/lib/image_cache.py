"""Flat, content-addressed disk cache for transformed images.

Cache filenames look like ``{path_hash}.{key}{ext}``:

- ``path_hash`` is the first 10 hex chars of ``sha256(path)``, where path is
  relative to the site root (e.g. ``/uploads/2017/03/image.jpg``).
- ``key`` is the signed URL key, or an empty string.
- ``ext`` is the lowercase source extension, including its leading dot.

Every variant of one upload shares the ``path_hash`` prefix, so purging an
upload is a single ``{path_hash}.*`` glob.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tempfile
from pathlib import Path, PurePosixPath

from postframe.lib.hooks import AFTER_UPLOAD_DELETE, HookRegistry, hooks

logger = logging.getLogger(__name__)

PATH_HASH_LENGTH = 10


def path_hash(path: str) -> str:
    """Truncated SHA-256 of a site-root-relative path."""
    return hashlib.sha256(path.encode()).hexdigest()[:PATH_HASH_LENGTH]


def cache_filename(path: str, key: str = "") -> str:
    """Derive the cache filename for a decoded request path and signing key."""
    extension = PurePosixPath(path).suffix.lower()
    return f"{path_hash(path)}.{key}{extension}"


class ImageCache:
    """Read, write and purge cached variants under a single directory."""

    def __init__(self, cache_dir: Path) -> None:
        self._cache_dir = cache_dir

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def path_for(self, path: str, key: str = "") -> Path:
        return self._cache_dir / cache_filename(path, key)

    async def exists(self, cache_path: Path) -> bool:
        return await asyncio.to_thread(cache_path.is_file)

    async def read(self, cache_path: Path) -> bytes:
        return await asyncio.to_thread(cache_path.read_bytes)

    async def store(self, cache_path: Path, data: bytes) -> bool:
        """Persist a variant. Returns ``False`` if the write failed."""
        try:
            await asyncio.to_thread(self._write_atomic, cache_path, data)
        except OSError:
            logger.warning("Failed to cache image variant %s", cache_path, exc_info=True)
            return False
        return True

    async def invalidate(self, path: str) -> int:
        """Delete every cached variant derived from *path*.

        Returns the number of files removed.
        """
        return await asyncio.to_thread(self._purge, path_hash(path))

    async def clear(self) -> int:
        """Delete every cached variant."""
        return await asyncio.to_thread(self._purge, "")

    # -- internal helpers --

    @staticmethod
    def _write_atomic(cache_path: Path, data: bytes) -> None:
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=cache_path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, cache_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _purge(self, prefix: str) -> int:
        if not self._cache_dir.is_dir():
            return 0
        pattern = f"{prefix}.*" if prefix else "*"
        removed = 0
        for entry in self._cache_dir.glob(pattern):
            if entry.is_file():
                entry.unlink(missing_ok=True)
                removed += 1
        return removed


def register_cache_invalidation(cache: ImageCache, registry: HookRegistry = hooks):
    """Purge an upload's cached variants whenever the upload is deleted.

    Returns the registered action so callers can remove it again.
    """

    async def invalidate_upload_variants(upload) -> None:
        try:
            removed = await cache.invalidate(upload.path)
        except OSError:
            logger.warning("Failed to purge cached variants of %s", upload.path, exc_info=True)
            return
        logger.debug("Purged %d cached variants of %s", removed, upload.path)

    registry.add_action(AFTER_UPLOAD_DELETE, invalidate_upload_variants)
    return invalidate_upload_variants
