"""
Triage of external tool error text.

Tools mix real failures with debug output, deprecation notices and warnings
on the same stream. Nothing matched by `is_diagnostic_noise` may ever become
a job's user-facing error; `classify_failure` maps what is left onto the
error taxonomy in `multifetch.exceptions`.
"""

import re
from typing import Iterable, List, Optional, Tuple, Type

from ..exceptions import AccessError, FetchError, ResourceError, TransientFetchError

NOISE_MARKERS = (
    '[debug]', 'PO Token', 'formats=missing_pot', 'Invoking hlsnative downloader',
    'ios client https formats require', 'deprecated', 'Deprecated', 'DeprecationWarning',
)
WARNING_PREFIXES = ('warning:', '[warning]')

ACCESS_DENIED_MARKERS = ('HTTP Error 403', '403: Forbidden', '403 Forbidden', ' 403 ')
BAD_OPTION_MARKERS = ('no such option', 'unrecognized arguments')

FORBIDDEN_MESSAGE = (
    "HTTP 403: Forbidden. The site blocked the download. "
    "Try updating yt-dlp or providing cookies."
)

# (pattern, message, exception class); first match wins.
FAILURE_SIGNATURES: List[Tuple[re.Pattern, str, Type[FetchError]]] = [
    (re.compile(r"Sign in to confirm|requires authentication|login required|HTTP Error 401", re.I),
     "Authentication required. Configure a cookies file in the settings.", AccessError),
    (re.compile(r"Cookies are needed", re.I),
     "Cookies required. This site needs a cookies file for authentication.", AccessError),
    (re.compile(r"\bDRM\b", re.I),
     "DRM protected content cannot be downloaded.", AccessError),
    (re.compile(r"Private video", re.I),
     "Private video. It requires authentication to access.", AccessError),
    (re.compile(r"not available in your country|geo[- ]?restrict|blocked in your country", re.I),
     "This content is geo-restricted and not available from your location.", AccessError),
    (re.compile(r"Unsupported URL", re.I),
     "Unsupported URL. The site is not supported by the media extractor.", AccessError),
    (re.compile(r"No space left on device|not enough space|disk full|errorCode=9\b", re.I),
     "Not enough disk space to complete the download.", ResourceError),
    (re.compile(r"Permission denied|Access is denied|Read-only file system|EACCES|errorCode=16\b", re.I),
     "Permission denied while writing the download. Check the download directory.", ResourceError),
]


def is_diagnostic_noise(line: Optional[str]) -> bool:
    """True for debug, deprecation and warning chatter that is never an error."""
    if not line or not line.strip():
        return True
    stripped = line.strip()
    if stripped.lower().startswith(WARNING_PREFIXES):
        return True
    return any(marker in stripped for marker in NOISE_MARKERS)


def filter_noise(text: Optional[str]) -> Optional[str]:
    """Drops noise lines from a multi-line message. Returns None if nothing remains."""
    if not text:
        return None
    kept = [line for line in text.splitlines() if not is_diagnostic_noise(line)]
    cleaned = '\n'.join(line.strip() for line in kept).strip()
    return cleaned or None


def is_access_denied(text: str) -> bool:
    return any(marker in text for marker in ACCESS_DENIED_MARKERS)


def is_bad_option(text: str) -> bool:
    return any(marker in text for marker in BAD_OPTION_MARKERS)


def extract_error_message(lines: Iterable[str], exit_code: Optional[int] = None) -> str:
    """
    Picks the most useful error line from captured tool output.

    Prefers ``ERROR:`` lines (the last one), then aria2c's ``Exception:`` /
    ``errorCode`` lines, then the last non-noise line, then the exit code.
    """
    candidates = [line.strip() for line in lines if not is_diagnostic_noise(line)]
    for line in reversed(candidates):
        if line.startswith('ERROR:'):
            message = line[6:].strip()
            return message[:300] + "..." if len(message) > 300 else message
    for line in reversed(candidates):
        if 'Exception:' in line or 'errorCode=' in line:
            return line[:300]
    if candidates:
        return candidates[-1][:300]
    return f"Process exited with code {exit_code}" if exit_code is not None else "Unknown error"


def classify_failure(text: str, fallback: Optional[str] = None) -> FetchError:
    """
    Maps raw error text onto the taxonomy.

    Args:
        text: Error text, typically the captured stderr of the failing attempt.
        fallback: Message to use for transient failures; defaults to the
            best line found in ``text``.

    Returns:
        An exception instance ready to be raised.
    """
    if is_access_denied(text):
        return AccessError(FORBIDDEN_MESSAGE)
    for pattern, message, error_class in FAILURE_SIGNATURES:
        if pattern.search(text):
            return error_class(message)
    message = fallback or extract_error_message(text.splitlines())
    return TransientFetchError(message)
