"""Shared pytest fixtures."""

import sys
from pathlib import Path

import pytest
import yaml
from PIL import Image

from postframe.lib.hooks import hooks

SECRET = "test-secret"


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def temp_app_yaml(tmp_path):
    """Create a temporary app.yaml file for testing."""
    config_path = tmp_path / "app.yaml"

    def _create_config(config: dict):
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f)
        return config_path

    return _create_config


@pytest.fixture(autouse=True)
def clean_sys_path():
    """Ensure sys.path is restored after each test."""
    original_path = sys.path.copy()
    yield
    sys.path = original_path


@pytest.fixture
def clean_hooks():
    """Save and restore hooks state around a test."""
    original_filters = {k: list(v) for k, v in hooks._filters.items()}
    original_actions = {k: list(v) for k, v in hooks._actions.items()}
    yield
    hooks._filters.clear()
    hooks._filters.update(original_filters)
    hooks._actions.clear()
    hooks._actions.update(original_actions)


@pytest.fixture
def site_root(tmp_path) -> Path:
    root = tmp_path / "site"
    (root / "uploads").mkdir(parents=True)
    return root


@pytest.fixture
def uploads_dir(site_root) -> Path:
    return site_root / "uploads"


@pytest.fixture
def cache_dir(site_root) -> Path:
    return site_root / "cache" / "images"


@pytest.fixture
def make_image(uploads_dir):
    """Factory writing a solid-colour image under the uploads directory.

    Returns the site-root-relative path, e.g. ``/uploads/2020/01/photo.jpg``.
    """

    def _make(relative: str, size=(1000, 800), color=(200, 40, 40), mode="RGB", fmt=None) -> str:
        target = uploads_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        Image.new(mode, size, color).save(target, format=fmt)
        return f"/uploads/{relative}"

    return _make


@pytest.fixture
def make_animated_gif(uploads_dir):
    """Factory writing a two-frame GIF under the uploads directory."""

    def _make(relative: str, size=(120, 80)) -> str:
        target = uploads_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        frames = [Image.new("P", size, 1), Image.new("P", size, 2)]
        frames[0].putpalette([0, 0, 0, 255, 0, 0, 0, 255, 0] + [0] * (768 - 9))
        frames[1].putpalette([0, 0, 0, 255, 0, 0, 0, 255, 0] + [0] * (768 - 9))
        frames[0].save(target, save_all=True, append_images=frames[1:], duration=100, loop=0)
        return f"/uploads/{relative}"

    return _make
