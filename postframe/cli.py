"""CLI commands for Postframe."""

import asyncio
import base64
import re
import secrets
import sys
from pathlib import Path

import click

from postframe.config import get_settings, set_config_path


@click.group()
@click.version_option(package_name="postframe")
@click.option(
    "-f",
    "--config-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Use this YAML config instead of app.yaml",
)
def cli(config_file):
    """Postframe - signed, cached image transforms for site uploads."""
    if config_file is not None:
        set_config_path(config_file)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8080, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Restart when source files change")
@click.option("--workers", default=1, type=int, help="Number of worker processes")
@click.option(
    "--log-level",
    default="info",
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Logging level",
)
def serve(host, port, reload, workers, log_level):
    """Serve uploads and their transformed variants."""
    import signal

    from hypercorn.asyncio import serve as hypercorn_serve
    from hypercorn.config import Config

    settings = get_settings()
    settings.uploads_path.mkdir(parents=True, exist_ok=True)
    settings.cache_path.mkdir(parents=True, exist_ok=True)
    click.echo(f"Serving {settings.images.uploads_prefix} from {settings.uploads_path}")
    click.echo(f"Caching variants in {settings.cache_path}")

    config = Config()
    config.application_path = "postframe.asgi:app"
    config.bind = [f"{host}:{port}"]
    config.loglevel = log_level.upper()
    config.include_server_header = False

    if reload or workers > 1:
        from hypercorn.run import run

        config.use_reloader = reload
        config.workers = 1 if reload else workers
        run(config)
        return

    from postframe.asgi import app

    async def _serve():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await hypercorn_serve(app, config, shutdown_trigger=stop.wait)

    asyncio.run(_serve())


_SECRET_FORMATS = {
    "urlsafe": secrets.token_urlsafe,
    "hex": secrets.token_hex,
    "base64": lambda length: base64.b64encode(secrets.token_bytes(length)).decode("ascii"),
}


def _set_env_value(env_path: Path, name: str, value: str) -> None:
    """Set ``NAME=value`` in a dotenv file, replacing an existing entry."""
    content = env_path.read_text() if env_path.exists() else ""
    line = f"{name}={value}"
    pattern = re.compile(rf"^{re.escape(name)}=.*$", re.MULTILINE)

    content, replaced = pattern.subn(line, content, count=1)
    if not replaced:
        if content and not content.endswith("\n"):
            content += "\n"
        content += line + "\n"
    env_path.write_text(content)


@cli.command()
@click.option(
    "--write",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Store the secret as SECRET_KEY in this .env file",
)
@click.option(
    "--format",
    "fmt",
    default="urlsafe",
    type=click.Choice(sorted(_SECRET_FORMATS)),
    help="Encoding of the generated secret",
)
@click.option("--length", default=32, type=int, help="Number of random bytes")
def secret(write, fmt, length):
    """Generate a URL signing secret.

    Changing the secret invalidates every signed URL already issued.
    """
    key = _SECRET_FORMATS[fmt](length)
    if write is None:
        click.echo(key)
        return

    _set_env_value(write, "SECRET_KEY", key)
    click.echo(f"SECRET_KEY written to {write}")


def _parse_params(values: tuple[str, ...]) -> dict[str, str]:
    params = {}
    for value in values:
        name, sep, param = value.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {value!r}", param_hint="--param")
        params[name] = param
    return params


def _responsive_images():
    from postframe.lib.srcset import ResponsiveImages

    settings = get_settings()
    return ResponsiveImages(
        app_url=settings.app_url,
        secret=settings.secret_key,
        uploads_prefix=settings.images.uploads_prefix,
        step=settings.images.srcset_step,
    )


@cli.command()
@click.argument("url")
@click.option("-p", "--param", "params", multiple=True, help="Transform parameter as NAME=VALUE")
def sign(url, params):
    """Print a signed dynamic image URL.

    Example: postframe sign /uploads/2020/01/photo.jpg -p width=300
    """
    click.echo(_responsive_images().generate_url(url, _parse_params(params)))


@cli.command()
@click.argument("url")
def verify(url):
    """Check the signature of a dynamic image URL."""
    from postframe.lib.signed_url import verify as verify_url

    if verify_url(url, get_settings().secret_key):
        click.echo("valid")
    else:
        click.echo("invalid", err=True)
        sys.exit(1)


@cli.command()
@click.argument("html_file", type=click.File("r"))
def srcset(html_file):
    """Add responsive srcset attributes to the <img> tags in HTML_FILE.

    Use "-" to read from stdin. The result is written to stdout.
    """
    from postframe.db.services.upload_service import DatabaseUploadLookup
    from postframe.db.session import build_db_config

    db_config = build_db_config(get_settings())
    lookup = DatabaseUploadLookup(db_config.get_session)
    html = asyncio.run(_responsive_images().inject_srcset(html_file.read(), lookup))
    click.echo(html)


@cli.command("add-upload")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("path")
def add_upload(source, path):
    """Copy SOURCE to PATH (e.g. /uploads/2020/01/photo.jpg) and record it."""
    from postframe.db.services.upload_service import (
        InvalidUploadPathError,
        UploadExistsError,
        create_upload,
    )
    from postframe.db.session import build_db_config, create_tables

    settings = get_settings()
    db_config = build_db_config(settings)

    async def _run():
        await create_tables(db_config)
        async with db_config.get_session() as session:
            return await create_upload(session, settings.site_root_path, path, source.read_bytes())

    try:
        upload = asyncio.run(_run())
    except (InvalidUploadPathError, UploadExistsError) as exc:
        raise click.ClickException(str(exc)) from exc

    size = f"{upload.width}x{upload.height}" if upload.width else "no dimensions"
    click.echo(f"Added {upload.path} ({upload.mime_type}, {size})")


@cli.command("delete-upload")
@click.argument("path")
def delete_upload(path):
    """Delete the upload at PATH along with its cached variants."""
    from postframe.db.services.upload_service import delete_upload as delete, get_upload_by_path
    from postframe.db.session import build_db_config
    from postframe.lib.image_cache import ImageCache, register_cache_invalidation

    settings = get_settings()
    db_config = build_db_config(settings)
    register_cache_invalidation(ImageCache(settings.cache_path))

    async def _run() -> bool:
        async with db_config.get_session() as session:
            upload = await get_upload_by_path(session, path)
            if upload is None:
                return False
            return await delete(session, settings.site_root_path, upload.id)

    if not asyncio.run(_run()):
        raise click.ClickException(f"No upload found at {path}")
    click.echo(f"Deleted {path}")


@cli.command("purge-cache")
@click.argument("path", required=False)
@click.option("--all", "purge_all", is_flag=True, help="Remove every cached variant")
def purge_cache(path, purge_all):
    """Remove cached variants of the upload at PATH."""
    from postframe.lib.image_cache import ImageCache

    if not path and not purge_all:
        raise click.UsageError("Give an upload PATH or --all")

    cache = ImageCache(get_settings().cache_path)
    removed = asyncio.run(cache.clear() if purge_all else cache.invalidate(path))
    click.echo(f"Removed {removed} cached variant{'s' if removed != 1 else ''}")


def main():
    cli()


if __name__ == "__main__":
    main()
