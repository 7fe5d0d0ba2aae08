"""Tests for the dynamic image ASGI middleware."""

import io
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import pytest
from PIL import Image

from postframe.lib import imaging
from postframe.lib.hooks import IMAGE_CACHED, hooks
from postframe.lib.image_cache import ImageCache, cache_filename
from postframe.lib.signed_url import sign
from postframe.middleware.dynamic_images import DynamicImagesMiddleware
from postframe.middleware.uploads import UploadFilesMiddleware

SECRET = "s3cret"


async def _fallback_app(scope, receive, send):
    await send({
        "type": "http.response.start",
        "status": 200,
        "headers": [(b"content-type", b"text/plain")],
    })
    await send({"type": "http.response.body", "body": b"fallthrough"})


def _scope(url: str) -> dict:
    parts = urlsplit(url)
    return {
        "type": "http",
        "method": "GET",
        "path": parts.path,
        "raw_path": parts.path.encode(),
        "query_string": parts.query.encode(),
        "headers": [],
    }


class Response:
    def __init__(self, messages):
        self.status = messages[0]["status"]
        self.headers = dict(messages[0]["headers"])
        self.body = b"".join(m.get("body", b"") for m in messages[1:])

    @property
    def image(self) -> Image.Image:
        return Image.open(io.BytesIO(self.body))


@pytest.fixture
def cache(cache_dir):
    return ImageCache(cache_dir)


@pytest.fixture
def fallthrough_middleware(uploads_dir, cache):
    return DynamicImagesMiddleware(_fallback_app, secret=SECRET, uploads_dir=uploads_dir, cache=cache)


@pytest.fixture
def site_middleware(uploads_dir, cache):
    """Full stack: dynamic images in front of static upload serving."""
    return DynamicImagesMiddleware(
        UploadFilesMiddleware(_fallback_app, uploads_dir=uploads_dir),
        secret=SECRET,
        uploads_dir=uploads_dir,
        cache=cache,
    )


async def _request(app, url: str) -> Response:
    messages = []

    async def send(message):
        messages.append(message)

    await app(_scope(url), None, send)
    return Response(messages)


def _key(url: str) -> str:
    return parse_qs(urlsplit(url).query)["key"][0]


class TestPassThrough:
    @pytest.mark.asyncio
    async def test_non_upload_path(self, fallthrough_middleware):
        response = await _request(fallthrough_middleware, "/blog/post?width=300")
        assert response.body == b"fallthrough"

    @pytest.mark.asyncio
    async def test_no_query(self, fallthrough_middleware, make_image):
        path = make_image("a.jpg")
        response = await _request(fallthrough_middleware, path)
        assert response.body == b"fallthrough"

    @pytest.mark.asyncio
    async def test_only_unrecognised_params(self, fallthrough_middleware, make_image):
        path = make_image("a.jpg")
        response = await _request(fallthrough_middleware, f"{path}?v=2")
        assert response.body == b"fallthrough"

    @pytest.mark.asyncio
    async def test_unsupported_type_is_not_authorised_or_transformed(self, fallthrough_middleware, uploads_dir):
        (uploads_dir / "logo.svg").write_text("<svg/>")
        response = await _request(fallthrough_middleware, "/uploads/logo.svg?width=10")
        assert response.body == b"fallthrough"

    @pytest.mark.asyncio
    async def test_lifespan_scope(self, fallthrough_middleware):
        seen = []

        async def app(scope, receive, send):
            seen.append(scope["type"])

        middleware = DynamicImagesMiddleware(
            app, secret=SECRET, uploads_dir=fallthrough_middleware.uploads_dir, cache=fallthrough_middleware.cache
        )
        await middleware({"type": "lifespan"}, None, None)
        assert seen == ["lifespan"]


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_missing_key_is_forbidden(self, site_middleware, make_image):
        path = make_image("2020/01/photo.jpg")
        response = await _request(site_middleware, f"{path}?width=300")
        assert response.status == 403
        assert response.body == b""

    @pytest.mark.asyncio
    async def test_bad_key_is_forbidden(self, site_middleware, make_image):
        path = make_image("2020/01/photo.jpg")
        response = await _request(site_middleware, f"{path}?width=300&key=deadbeef")
        assert response.status == 403

    @pytest.mark.asyncio
    async def test_tampered_params_are_forbidden(self, site_middleware, make_image):
        path = make_image("2020/01/photo.jpg")
        signed = sign(f"{path}?width=300", SECRET)
        response = await _request(site_middleware, signed.replace("width=300", "width=900"))
        assert response.status == 403

    @pytest.mark.asyncio
    async def test_previously_issued_key_is_accepted(self, site_middleware, make_image, cache_dir):
        path = make_image("a.jpg", size=(1000, 800))
        key = "631647211ec109c2935fba71df3b18c8bd19395559815beaecc384738cef456c"

        response = await _request(site_middleware, f"{path}?width=300&key={key}")

        assert response.status == 200
        assert response.image.size == (300, 240)
        assert (cache_dir / cache_filename(path, key)).is_file()

    @pytest.mark.asyncio
    async def test_forbidden_even_when_source_missing(self, site_middleware):
        response = await _request(site_middleware, "/uploads/nope.jpg?width=300")
        assert response.status == 403


class TestTransform:
    @pytest.mark.asyncio
    async def test_resize_writes_cache_and_serves(self, site_middleware, make_image, cache_dir, clean_hooks):
        cached = []
        hooks.add_action(IMAGE_CACHED, lambda **kwargs: cached.append(kwargs["cache_path"]))

        path = make_image("2020/01/photo.jpg", size=(1000, 800))
        url = sign(f"{path}?width=300", SECRET)

        response = await _request(site_middleware, url)

        assert response.status == 200
        assert response.headers[b"content-type"] == b"image/jpeg"
        assert response.headers[b"content-length"] == str(len(response.body)).encode()
        width, height = response.image.size
        assert width <= 300 and height <= 240
        assert width / height == pytest.approx(1000 / 800, rel=0.01)

        cache_file = cache_dir / cache_filename(path, _key(url))
        assert cache_file.name.endswith(".jpg")
        assert cache_file.read_bytes() == response.body
        assert cached == [cache_file]

    @pytest.mark.asyncio
    async def test_second_request_is_served_from_cache(self, site_middleware, make_image):
        path = make_image("2020/01/photo.jpg", size=(1000, 800))
        url = sign(f"{path}?width=300", SECRET)

        first = await _request(site_middleware, url)
        with patch.object(imaging, "render_transform", wraps=imaging.render_transform) as render:
            second = await _request(site_middleware, url)

        assert render.call_count == 0
        assert second.status == 200
        assert second.body == first.body

    @pytest.mark.asyncio
    async def test_different_params_use_different_cache_files(self, site_middleware, make_image, cache_dir):
        path = make_image("a.png", size=(100, 100))
        blur_2 = sign(f"{path}?blur=2", SECRET)
        blur_4 = sign(f"{path}?blur=4", SECRET)

        await _request(site_middleware, blur_2)
        await _request(site_middleware, blur_4)

        assert _key(blur_2) != _key(blur_4)
        assert sorted(p.name for p in cache_dir.iterdir()) == sorted(
            [cache_filename(path, _key(blur_2)), cache_filename(path, _key(blur_4))]
        )

    @pytest.mark.asyncio
    async def test_no_upscale(self, site_middleware, make_image):
        path = make_image("small.png", size=(100, 50))
        response = await _request(site_middleware, sign(f"{path}?width=500", SECRET))
        assert response.image.size == (100, 50)

    @pytest.mark.asyncio
    async def test_cache_write_failure_still_serves(self, site_middleware, make_image, cache_dir):
        path = make_image("a.png", size=(400, 200))
        with patch.object(ImageCache, "_write_atomic", side_effect=OSError("disk full")):
            response = await _request(site_middleware, sign(f"{path}?width=100", SECRET))
        assert response.status == 200
        assert response.image.size == (100, 50)
        assert not cache_dir.exists() or list(cache_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failing_cached_action_still_serves(self, site_middleware, make_image, cache_dir, clean_hooks):
        def broken(**kwargs):
            raise RuntimeError("listener down")

        hooks.add_action(IMAGE_CACHED, broken)
        path = make_image("a.png", size=(400, 200))
        url = sign(f"{path}?width=100", SECRET)

        response = await _request(site_middleware, url)

        assert response.status == 200
        assert response.image.size == (100, 50)
        assert (cache_dir / cache_filename(path, _key(url))).is_file()

    @pytest.mark.asyncio
    async def test_encoded_path(self, site_middleware, uploads_dir):
        Image.new("RGB", (300, 300)).save(uploads_dir / "my photo.png")
        signed = sign("/uploads/my%20photo.png?width=30", SECRET)
        scope = _scope(signed)
        scope["path"] = "/uploads/my photo.png"
        messages = []

        async def send(message):
            messages.append(message)

        await site_middleware(scope, None, send)
        assert Response(messages).image.size == (30, 30)


class TestFallthrough:
    @pytest.mark.asyncio
    async def test_missing_source_falls_back_to_404(self, site_middleware):
        response = await _request(site_middleware, sign("/uploads/missing.jpg?width=300", SECRET))
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_animated_gif_served_unmodified(self, site_middleware, make_animated_gif, cache_dir):
        path = make_animated_gif("anim.gif")

        transformed = await _request(site_middleware, sign(f"{path}?width=10&grayscale=1", SECRET))
        original = await _request(site_middleware, path)

        assert transformed.status == original.status == 200
        assert transformed.body == original.body
        assert transformed.headers == original.headers
        assert not cache_dir.exists() or list(cache_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_undecodable_source_served_unmodified(self, site_middleware, uploads_dir):
        (uploads_dir / "broken.png").write_bytes(b"not really a png")
        response = await _request(site_middleware, sign("/uploads/broken.png?width=10", SECRET))
        assert response.status == 200
        assert response.body == b"not really a png"

    @pytest.mark.asyncio
    async def test_traversal_attempt_is_not_transformed(self, fallthrough_middleware):
        response = await _request(fallthrough_middleware, sign("/uploads/../secret.png?width=10", SECRET))
        assert response.body == b"fallthrough"
