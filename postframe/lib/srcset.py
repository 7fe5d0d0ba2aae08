"""Signed dynamic image URLs and responsive ``srcset`` injection."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

from postframe.lib.hooks import SRCSET_WIDTHS, hooks
from postframe.lib.signed_url import encode_component, sign


class UploadRecord(Protocol):
    """The upload fields read when building responsive variants."""

    path: str
    mime_type: str
    width: int | None
    height: int | None


@runtime_checkable
class UploadLookup(Protocol):
    """Interface for resolving an upload record from its stored path."""

    async def find_by_path(self, path: str) -> UploadRecord | None:
        """Return the upload stored at *path*, or ``None``."""
        ...


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ResponsiveImages:
    """Builds signed transform URLs for images on this site.

    Args:
        app_url: The site's public URL. Only URLs on its hostname (or
            relative URLs) are ever signed.
        secret: The URL signing secret.
        uploads_prefix: Path prefix of the uploads namespace.
        step: Width interval between ``srcset`` variants.
    """

    def __init__(
        self,
        app_url: str,
        secret: str,
        uploads_prefix: str = "/uploads/",
        step: int = 200,
    ) -> None:
        self._hostname = urlsplit(app_url).hostname
        self._secret = secret
        self._uploads_prefix = uploads_prefix
        self._step = step

    def generate_url(self, url: str, params: Mapping[str, Any] | None = None) -> str:
        """Append transform params to *url* and sign it.

        URLs pointing at another hostname are returned unchanged.
        """
        parts = urlsplit(url)
        if parts.hostname and parts.hostname != self._hostname:
            return url

        query = parts.query
        for name, value in (params or {}).items():
            pair = f"{encode_component(name)}={encode_component(_format_value(value))}"
            query = f"{query}&{pair}" if query else pair

        # Requests reach the pipeline without a host, so sign the relative form
        signed = urlsplit(sign(urlunsplit(("", "", parts.path, query, "")), self._secret))
        return urlunsplit(parts._replace(query=signed.query))

    def variant_widths(self, width: int) -> list[int]:
        """Widths at every step strictly below the original width."""
        return list(range(self._step, width, self._step))

    async def inject_srcset(self, html: str, lookup: UploadLookup) -> str:
        """Add a ``srcset`` to every ``<img>`` that points at a known upload.

        Lookups run concurrently; the first failing lookup fails the call.
        """
        soup = BeautifulSoup(html, "html.parser")
        pending = []

        for img in soup.find_all("img"):
            src = img.get("src") or ""
            parts = urlsplit(src)
            if not parts.path.startswith(self._uploads_prefix):
                continue
            if parts.hostname and parts.hostname != self._hostname:
                continue
            pending.append(self._add_srcset(img, src, parts.path, lookup))

        await asyncio.gather(*pending)
        return str(soup)

    async def _add_srcset(self, img: Tag, src: str, path: str, lookup: UploadLookup) -> None:
        upload = await lookup.find_by_path(path)
        if upload is None or not upload.width or upload.width < self._step:
            return

        widths = await hooks.apply_filters(SRCSET_WIDTHS, self.variant_widths(upload.width), upload)
        if not widths:
            return

        img["srcset"] = ", ".join(
            f"{self.generate_url(src, {'width': width})} {width}w" for width in widths
        )
