"""ASGI entry point: ``hypercorn postframe.asgi:app``."""

from postframe.app_factory import create_app

app = create_app()
