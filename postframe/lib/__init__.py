from postframe.lib.hooks import hooks, action, filter
from postframe.lib.image_cache import ImageCache
from postframe.lib.srcset import ResponsiveImages, UploadLookup

__all__ = [
    "ImageCache",
    "ResponsiveImages",
    "UploadLookup",
    "hooks",
    "action",
    "filter",
]
