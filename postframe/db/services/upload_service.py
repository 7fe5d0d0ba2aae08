"""Upload service: lookup, create and delete upload records."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from pathlib import Path, PurePosixPath
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postframe.db.models.upload import Upload
from postframe.lib.hooks import AFTER_UPLOAD_DELETE, BEFORE_UPLOAD_DELETE, hooks
from postframe.lib.imaging import detect_image_content_type, read_image_dimensions
from postframe.middleware.uploads import resolve_upload_path

logger = logging.getLogger(__name__)


class UploadExistsError(Exception):
    """Raised when an upload already exists at the requested path."""


class InvalidUploadPathError(ValueError):
    """Raised for upload paths that would land outside the site root."""


def upload_file_path(site_root: Path, path: str) -> Path:
    """Location on disk of an upload's site-root-relative path.

    Raises ``InvalidUploadPathError`` if the path escapes *site_root*.
    """
    resolved = resolve_upload_path(path, "/", site_root)
    if resolved is None:
        raise InvalidUploadPathError(f"Upload path {path!r} is outside the site root")
    return resolved


async def get_upload_by_path(db_session: AsyncSession, path: str) -> Upload | None:
    result = await db_session.execute(select(Upload).where(Upload.path == path))
    return result.scalar_one_or_none()


async def get_upload_by_id(db_session: AsyncSession, upload_id: UUID) -> Upload | None:
    result = await db_session.execute(select(Upload).where(Upload.id == upload_id))
    return result.scalar_one_or_none()


async def create_upload(
    db_session: AsyncSession,
    site_root: Path,
    path: str,
    data: bytes,
    mime_type: str | None = None,
) -> Upload:
    """Write *data* to *path* under the site root and record it.

    Pixel dimensions are read for raster images so responsive variants can
    be generated later.
    """
    target = upload_file_path(site_root, path)
    if await get_upload_by_path(db_session, path) is not None:
        raise UploadExistsError(f"An upload already exists at {path!r}")

    mime_type = (
        mime_type
        or detect_image_content_type(data)
        or mimetypes.guess_type(path)[0]
        or "application/octet-stream"
    )
    dimensions = read_image_dimensions(data)
    width, height = dimensions if dimensions else (None, None)

    await asyncio.to_thread(_write_file, target, data)

    upload = Upload(
        path=path,
        filename=PurePosixPath(path).name,
        mime_type=mime_type,
        size=len(data),
        width=width,
        height=height,
    )
    db_session.add(upload)
    await db_session.commit()
    await db_session.refresh(upload)
    return upload


async def delete_upload(
    db_session: AsyncSession,
    site_root: Path,
    upload_id: UUID,
) -> bool:
    """Delete an upload record and its file.

    Fires ``after_upload_delete`` so derived artifacts (cached image
    variants) can be purged.
    """
    upload = await get_upload_by_id(db_session, upload_id)
    if not upload:
        return False

    await hooks.do_action(BEFORE_UPLOAD_DELETE, upload)

    await db_session.delete(upload)
    await db_session.commit()

    try:
        target = upload_file_path(site_root, upload.path)
    except InvalidUploadPathError:
        logger.warning("Not removing file for upload %s outside the site root", upload.path)
    else:
        await asyncio.to_thread(target.unlink, missing_ok=True)

    await hooks.do_action(AFTER_UPLOAD_DELETE, upload)

    return True


class DatabaseUploadLookup:
    """:class:`~postframe.lib.srcset.UploadLookup` backed by the uploads table."""

    def __init__(self, session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]]) -> None:
        self._session_factory = session_factory

    async def find_by_path(self, path: str) -> Upload | None:
        async with self._session_factory() as session:
            return await get_upload_by_path(session, path)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
