"""Maps a submitted URL to the fetch strategy that should handle it."""

import posixpath
import urllib.parse
from typing import Optional

from .constants import DIRECT_FILE_EXTENSIONS, DIRECT_FILE_METHODS
from .exceptions import ClassificationError
from .jobs import JobKind


def _url_path(url: str) -> str:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme in ('', 'file') or len(parsed.scheme) == 1:
        # Local paths, including Windows drive letters parsed as a scheme.
        return url.lower()
    return urllib.parse.unquote(parsed.path).lower()


def _has_scheme(url: str) -> bool:
    parsed = urllib.parse.urlparse(url)
    return bool(parsed.scheme) and (bool(parsed.netloc) or parsed.scheme in ('magnet', 'file'))


def classify_url(url: str, resolved_kind: Optional[str] = None, resolved_method: Optional[str] = None) -> JobKind:
    """
    Decides which fetch strategy applies to a URL.

    Rule order: magnet scheme, then a torrent-metadata path, then a
    direct-file hint from an upstream probe. Without any hint, a path ending
    in a well-known file extension is also treated as a direct file.
    Everything else goes to the media extractor, which fails gracefully for
    unsupported pages.

    Args:
        url: The raw URL string as submitted.
        resolved_kind: Optional kind reported by the URL resolver.
        resolved_method: Optional download mechanism reported by the URL resolver.

    Returns:
        The JobKind to use.

    Raises:
        ClassificationError: If the URL is empty or not a URL at all.
    """
    if url is None or not url.strip():
        raise ClassificationError("URL is required")
    url = url.strip()

    if url.lower().startswith('magnet:'):
        return JobKind.MAGNET

    path = _url_path(url)
    kind_hint = (resolved_kind or '').strip().lower()
    method_hint = (resolved_method or '').strip().lower()

    if path.endswith('.torrent') or kind_hint in ('torrent', 'torrent-file'):
        return JobKind.TORRENT
    if not _has_scheme(url):
        raise ClassificationError(f"Not a supported URL: {url}")
    if kind_hint == 'magnet':
        return JobKind.MAGNET

    if method_hint in DIRECT_FILE_METHODS or kind_hint in ('file', 'direct'):
        return JobKind.FILE
    if not kind_hint and not method_hint:
        extension = posixpath.splitext(path)[1]
        if extension in DIRECT_FILE_EXTENSIONS:
            return JobKind.FILE
    return JobKind.MEDIA
