"""
Extension-based content type lookup for image resources.

The table is consulted before stored metadata: a confident guess from the
file extension wins, stored headers are the fallback.
"""

from __future__ import annotations

import posixpath
from urllib.parse import urlsplit

IMAGE_CONTENT_TYPES: dict[str, str] = {
    "apng": "image/apng",
    "avif": "image/avif",
    "bmp": "image/bmp",
    "gif": "image/gif",
    "ico": "image/x-icon",
    "cur": "image/x-icon",
    "jfif": "image/jpeg",
    "jpe": "image/jpeg",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "pjp": "image/jpeg",
    "pjpeg": "image/jpeg",
    "png": "image/png",
    "svg": "image/svg+xml",
    "svgz": "image/svg+xml",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "webp": "image/webp",
}


def guess_content_type(path: str | None) -> str | None:
    """Guess the MIME type from a URL or filename extension.

    Accepts a bare extension ("png"), a dotted one (".png"), a path or a
    full URL; query strings and fragments are ignored.

    Returns:
        The MIME type, or None when the extension is unknown or missing.
    """
    if not path or not isinstance(path, str):
        return None

    if "://" in path:
        path = urlsplit(path).path
    else:
        path = path.split("?", 1)[0].split("#", 1)[0]

    # Prefixing "x." makes a bare extension parse as one
    extension = posixpath.splitext("x." + path)[1].lower().lstrip(".")
    return IMAGE_CONTENT_TYPES.get(extension)
