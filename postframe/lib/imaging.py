"""On-the-fly image transforms using Pillow.

Query parameters are parsed once into a :class:`TransformSpec`, an ordered
tuple of typed operations. :func:`render_transform` then runs those
operations against an :class:`ImageJob` and returns either
:class:`Transformed` bytes or a :class:`Fallthrough` explaining why the
request should be handed to the next ASGI app untouched.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

from PIL import Image, ImageFilter, ImageOps

logger = logging.getLogger(__name__)

# Recognised query parameters, in pipeline order
TRANSFORM_PARAMS = (
    "width",
    "height",
    "crop",
    "thumbnail",
    "rotate",
    "flip",
    "grayscale",
    "colorize",
    "blur",
    "colors",
    "quality",
)

_FORMAT_TO_CONTENT_TYPE = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}

_INT_PATTERN = re.compile(r"\s*([+-]?\d+)")


class ImageProcessingError(Exception):
    """Raised when an image cannot be transformed."""


class AnimatedImageError(ImageProcessingError):
    """Raised for multi-frame sources, which are never transformed."""


# -- operations --


@dataclass(frozen=True)
class Resize:
    width: int | None
    height: int | None


@dataclass(frozen=True)
class Crop:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class Thumbnail:
    width: int
    height: int


@dataclass(frozen=True)
class Rotate:
    angle: int


@dataclass(frozen=True)
class Flip:
    horizontal: bool
    vertical: bool


@dataclass(frozen=True)
class Grayscale:
    pass


@dataclass(frozen=True)
class Colorize:
    """Per-channel colorize amounts, already inverted (``100 - requested``)."""

    red: int
    green: int
    blue: int


@dataclass(frozen=True)
class Blur:
    radius: int


@dataclass(frozen=True)
class Colors:
    count: int


@dataclass(frozen=True)
class Quality:
    value: int


Operation = Union[Resize, Crop, Thumbnail, Rotate, Flip, Grayscale, Colorize, Blur, Colors, Quality]


@dataclass(frozen=True)
class TransformSpec:
    """The validated set of operations requested by a query string."""

    operations: tuple[Operation, ...] = ()

    def __len__(self) -> int:
        return len(self.operations)


# -- results --


class FallthroughReason(str, Enum):
    SOURCE_MISSING = "source_missing"
    ANIMATED = "animated"
    PROCESSING_FAILED = "processing_failed"


@dataclass(frozen=True)
class Transformed:
    data: bytes
    content_type: str


@dataclass(frozen=True)
class Fallthrough:
    reason: FallthroughReason
    detail: str = ""


TransformResult = Union[Transformed, Fallthrough]


@dataclass
class ImageJob:
    """Mutable state threaded through the pipeline stages."""

    image: Image.Image
    format: str
    quality: int | None = None


# -- query parsing --


def parse_int(value: str | None) -> int | None:
    """Parse a leading integer, ignoring trailing garbage (``"300px"`` -> 300)."""
    if value is None:
        return None
    match = _INT_PATTERN.match(value)
    if match is None:
        return None
    return int(match.group(1))


def has_transform_params(params: Mapping[str, str]) -> bool:
    """Whether the query names at least one transform parameter."""
    return any(name in params for name in TRANSFORM_PARAMS)


def _positive(value: str | None) -> int | None:
    number = parse_int(value)
    if number is None or number <= 0:
        return None
    return number


def _parse_resize(params: Mapping[str, str]) -> Resize | None:
    width = _positive(params.get("width"))
    height = _positive(params.get("height"))
    if width is None and height is None:
        return None
    return Resize(width=width, height=height)


def _parse_crop(params: Mapping[str, str]) -> Crop | None:
    if not params.get("crop"):
        return None
    coords = [parse_int(part) for part in params["crop"].split(",")]
    if len(coords) < 4 or any(c is None for c in coords[:4]):
        return None
    x1, y1, x2, y2 = coords[:4]
    width = abs(x2 - x1)
    height = abs(y2 - y1)
    if width <= 0 or height <= 0:
        return None
    return Crop(x=min(x1, x2), y=min(y1, y2), width=width, height=height)


def _parse_thumbnail(params: Mapping[str, str]) -> Thumbnail | None:
    if not params.get("thumbnail"):
        return None
    args = params["thumbnail"].split(",")
    width = _positive(args[0]) if args[0] else None
    height = _positive(args[1]) if len(args) > 1 and args[1] else width
    if not width and not height:
        return None
    return Thumbnail(width=width or height, height=height or width)


def _parse_rotate(params: Mapping[str, str]) -> Rotate | None:
    angle = parse_int(params.get("rotate"))
    if angle is None or not 0 < angle < 360:
        return None
    return Rotate(angle=angle)


def _parse_flip(params: Mapping[str, str]) -> Flip | None:
    value = params.get("flip")
    if value == "h":
        return Flip(horizontal=True, vertical=False)
    if value == "v":
        return Flip(horizontal=False, vertical=True)
    if value == "both":
        return Flip(horizontal=True, vertical=True)
    return None


def _parse_grayscale(params: Mapping[str, str]) -> Grayscale | None:
    return Grayscale() if params.get("grayscale") else None


def _parse_colorize(params: Mapping[str, str]) -> Colorize | None:
    if not params.get("colorize"):
        return None
    parts = params["colorize"].split(",")
    amounts = []
    for index in range(3):
        requested = parse_int(parts[index]) if index < len(parts) else None
        amounts.append(100 - (requested or 0))
    if any(not 0 <= amount <= 100 for amount in amounts):
        return None
    return Colorize(red=amounts[0], green=amounts[1], blue=amounts[2])


def _parse_blur(params: Mapping[str, str]) -> Blur | None:
    radius = _positive(params.get("blur"))
    return Blur(radius=radius) if radius else None


def _parse_colors(params: Mapping[str, str]) -> Colors | None:
    count = _positive(params.get("colors"))
    return Colors(count=count) if count else None


def _parse_quality(params: Mapping[str, str]) -> Quality | None:
    value = parse_int(params.get("quality"))
    if value is None or not 1 <= value <= 100:
        return None
    return Quality(value=value)


_PARSERS: tuple[Callable[[Mapping[str, str]], Operation | None], ...] = (
    _parse_resize,
    _parse_crop,
    _parse_thumbnail,
    _parse_rotate,
    _parse_flip,
    _parse_grayscale,
    _parse_colorize,
    _parse_blur,
    _parse_colors,
    _parse_quality,
)


def parse_transform_spec(params: Mapping[str, str]) -> TransformSpec:
    """Turn raw query parameters into an ordered :class:`TransformSpec`.

    Values that fail validation are dropped rather than reported.
    """
    operations = []
    for parser in _PARSERS:
        operation = parser(params)
        if operation is not None:
            operations.append(operation)
    return TransformSpec(operations=tuple(operations))


# -- stages --


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info


def _filterable(img: Image.Image) -> Image.Image:
    """Convert palette/bilevel images to a mode Pillow can filter."""
    if img.mode in ("P", "1", "PA"):
        return img.convert("RGBA" if _has_alpha(img) else "RGB")
    return img


def _apply_resize(job: ImageJob, op: Resize) -> None:
    src_w, src_h = job.image.size
    max_w = op.width or src_w
    max_h = op.height or src_h

    # Never upscale
    if max_w >= src_w and max_h >= src_h:
        return

    ratio = min(max_w / src_w, max_h / src_h)
    size = (max(1, round(src_w * ratio)), max(1, round(src_h * ratio)))
    job.image = job.image.resize(size, Image.LANCZOS)


def _apply_crop(job: ImageJob, op: Crop) -> None:
    width, height = job.image.size
    box = (
        max(op.x, 0),
        max(op.y, 0),
        min(op.x + op.width, width),
        min(op.y + op.height, height),
    )
    if box[2] <= box[0] or box[3] <= box[1]:
        return
    job.image = job.image.crop(box)


def _apply_thumbnail(job: ImageJob, op: Thumbnail) -> None:
    src_w, src_h = job.image.size

    if src_w < src_h:
        # Portrait: match the width, trim the height
        size = (op.width, max(1, round(src_h * op.width / src_w)))
    else:
        # Landscape or square: match the height, trim the width
        size = (max(1, round(src_w * op.height / src_h)), op.height)

    img = job.image.resize(size, Image.LANCZOS)
    left = (size[0] - op.width) // 2
    top = (size[1] - op.height) // 2
    box = (
        max(left, 0),
        max(top, 0),
        min(left + op.width, size[0]),
        min(top + op.height, size[1]),
    )
    job.image = img.crop(box)


def _apply_rotate(job: ImageJob, op: Rotate) -> None:
    img = job.image if job.image.mode == "RGBA" else job.image.convert("RGBA")
    # Pillow rotates counter-clockwise
    job.image = img.rotate(-op.angle, resample=Image.BICUBIC, expand=True, fillcolor=(0, 0, 0, 0))


def _apply_flip(job: ImageJob, op: Flip) -> None:
    if op.horizontal:
        job.image = ImageOps.mirror(job.image)
    if op.vertical:
        job.image = ImageOps.flip(job.image)


def _apply_grayscale(job: ImageJob, op: Grayscale) -> None:
    if _has_alpha(job.image):
        job.image = job.image.convert("RGBA").convert("LA")
    else:
        job.image = job.image.convert("L")


def _apply_colorize(job: ImageJob, op: Colorize) -> None:
    alpha = None
    if _has_alpha(job.image):
        rgba = job.image.convert("RGBA")
        alpha = rgba.getchannel("A")
        rgb = rgba.convert("RGB")
    else:
        rgb = job.image.convert("RGB")

    bands = []
    for band, amount in zip(rgb.split(), (op.red, op.green, op.blue)):
        factor = (100 - amount) / 100
        bands.append(band.point(lambda value, f=factor: round(value * f)))

    colored = Image.merge("RGB", bands)
    if alpha is not None:
        colored.putalpha(alpha)
    job.image = colored


def _apply_blur(job: ImageJob, op: Blur) -> None:
    job.image = _filterable(job.image).filter(ImageFilter.GaussianBlur(op.radius))


def _apply_colors(job: ImageJob, op: Colors) -> None:
    count = min(op.count, 256)
    if _has_alpha(job.image):
        job.image = job.image.convert("RGBA").quantize(
            colors=count,
            method=Image.Quantize.FASTOCTREE,
            dither=Image.Dither.FLOYDSTEINBERG,
        )
    else:
        job.image = job.image.convert("RGB").quantize(
            colors=count,
            dither=Image.Dither.FLOYDSTEINBERG,
        )


def _apply_quality(job: ImageJob, op: Quality) -> None:
    job.quality = op.value


_STAGES: dict[type, Callable[[ImageJob, Operation], None]] = {
    Resize: _apply_resize,
    Crop: _apply_crop,
    Thumbnail: _apply_thumbnail,
    Rotate: _apply_rotate,
    Flip: _apply_flip,
    Grayscale: _apply_grayscale,
    Colorize: _apply_colorize,
    Blur: _apply_blur,
    Colors: _apply_colors,
    Quality: _apply_quality,
}


def _flatten(img: Image.Image) -> Image.Image:
    """Composite transparency onto white for formats without alpha."""
    if img.mode in ("RGB", "L"):
        return img
    if _has_alpha(img):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def encode_image(job: ImageJob) -> bytes:
    """Serialize the job's image in its source format."""
    img = job.image
    save_kwargs: dict = {}

    if job.format == "JPEG":
        img = _flatten(img)
        if job.quality is not None:
            save_kwargs["quality"] = job.quality
    elif img.mode == "CMYK":
        img = img.convert("RGB")

    buf = io.BytesIO()
    img.save(buf, format=job.format, **save_kwargs)
    return buf.getvalue()


def count_frames(img: Image.Image) -> int:
    return getattr(img, "n_frames", 1)


def render_transform(source: Path, spec: TransformSpec) -> TransformResult:
    """Run every operation in *spec* against *source*, in order.

    Blocking; use :func:`transform_image` from async code.
    """
    try:
        with Image.open(source) as img:
            if count_frames(img) > 1:
                raise AnimatedImageError("Unable to process images with animation.")

            img.load()
            job = ImageJob(image=img, format=img.format or "PNG")
            for operation in spec.operations:
                _STAGES[type(operation)](job, operation)

            data = encode_image(job)
            content_type = _FORMAT_TO_CONTENT_TYPE.get(job.format, "application/octet-stream")
    except AnimatedImageError as exc:
        return Fallthrough(FallthroughReason.ANIMATED, str(exc))
    except (ImageProcessingError, OSError, ValueError, EOFError, Image.DecompressionBombError) as exc:
        return Fallthrough(FallthroughReason.PROCESSING_FAILED, str(exc))
    except Exception as exc:
        logger.exception("Unexpected error transforming %s", source)
        return Fallthrough(FallthroughReason.PROCESSING_FAILED, repr(exc))

    return Transformed(data=data, content_type=content_type)


async def transform_image(source: Path, spec: TransformSpec) -> TransformResult:
    """Run :func:`render_transform` in a worker thread."""
    return await asyncio.to_thread(render_transform, source, spec)


# -- upload helpers --


def detect_image_content_type(data: bytes) -> str | None:
    """Detect image content type from magic bytes.

    Returns ``None`` if the data does not match a known image signature.
    """
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return None


def read_image_dimensions(data: bytes) -> tuple[int, int] | None:
    """Return ``(width, height)`` for raster image bytes, or ``None``."""
    if detect_image_content_type(data) is None:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (OSError, ValueError, Image.DecompressionBombError):
        return None
