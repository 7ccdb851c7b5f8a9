"""
Probes a URL before submission to decide which download mechanism fits it.

The probe asks the media extractor first (it is faster than guessing from
HTTP headers for the sites it supports), then falls back to an HTTP HEAD
request that follows redirects and inspects the content type and length.
"""

import asyncio
import json
import logging
import re
import sys
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import aiohttp

from .constants import (
    DIRECT_FILE_EXTENSIONS, LARGE_FILE_THRESHOLD, MEDIA_HOSTS, REQUEST_HEADERS,
    SUBPROCESS_CREATION_FLAGS,
)
from .exceptions import DownloadCancelledError, URLExtractionError

_LIKELY_VIDEO = re.compile(r'\b(youtube|youtu\.be|vimeo|dailymotion|twitch|tiktok|instagram|facebook|twitter|reddit)\b', re.IGNORECASE)


@dataclass
class Resolution:
    """The outcome of probing one URL."""
    original_url: str
    resolved_url: str
    method: str
    kind: str
    title: Optional[str] = None
    reason: str = ''
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    error: Optional[str] = None


class URLResolver:
    """
    Resolves URLs to a (method, kind) pair using yt-dlp and HTTP HEAD probes.
    """
    PROBE_TIMEOUT = 15
    HEAD_TIMEOUT = 30
    MAX_REDIRECTS = 10

    def __init__(self, yt_dlp_path: Optional[Path], session: Optional[aiohttp.ClientSession] = None):
        """
        Initializes the URLResolver.

        Args:
            yt_dlp_path: The path to the yt-dlp executable, or None to skip the media probe.
            session: Optional shared aiohttp session; one is created per call otherwise.
        """
        self.yt_dlp_path = yt_dlp_path
        self.session = session
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr or not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str], timeout: float) -> Tuple[str, str]:
        """
        A wrapper for running a short-lived yt-dlp command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            URLExtractionError: On any failure (e.g., timeout, non-zero exit code).
            DownloadCancelledError: If the task is cancelled.
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')
        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise URLExtractionError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.warning(f"yt-dlp probe timed out: {command[-1]}")
            raise URLExtractionError("URL probe timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise URLExtractionError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process: process.kill()
            raise DownloadCancelledError("URL probe cancelled.")

        if process.returncode != 0:
            raise URLExtractionError(self._parse_yt_dlp_error(stderr))
        return stdout, stderr

    async def probe_media(self, url: str) -> Optional[Resolution]:
        """
        Asks yt-dlp whether it can extract the URL.

        Returns:
            A media Resolution, or None when yt-dlp does not support the page.
        """
        if not self.yt_dlp_path:
            return None
        command = [str(self.yt_dlp_path), '--dump-json', '--no-warnings', '--skip-download', '--playlist-items', '1', url]
        try:
            stdout, _ = await self._run_command(command, timeout=self.PROBE_TIMEOUT)
        except URLExtractionError as e:
            self.logger.debug(f"yt-dlp does not support {url}: {e}")
            return None

        first_line = next((line for line in stdout.splitlines() if line.strip()), '')
        try:
            info = json.loads(first_line)
        except json.JSONDecodeError:
            return None
        return Resolution(
            original_url=url, resolved_url=url, method='yt-dlp', kind='media',
            title=info.get('title'), reason=f"Supported by yt-dlp ({info.get('extractor_key', 'generic')})",
        )

    async def _head(self, session: aiohttp.ClientSession, url: str) -> Tuple[str, str, Optional[int]]:
        timeout = aiohttp.ClientTimeout(total=self.HEAD_TIMEOUT)
        async with session.head(url, headers=REQUEST_HEADERS, timeout=timeout,
                                allow_redirects=True, max_redirects=self.MAX_REDIRECTS) as response:
            response.raise_for_status()
            length = response.headers.get('content-length')
            return (str(response.url), response.headers.get('content-type', ''),
                    int(length) if length and length.isdigit() else None)

    @staticmethod
    def analyze(url: str, content_type: str, content_length: Optional[int]) -> Tuple[str, str, str]:
        """
        Chooses (method, kind, reason) from what the server reported.
        """
        lowered_url = url.lower()
        content = (content_type or '').lower()
        path = urllib.parse.urlparse(lowered_url).path

        if path.endswith('.torrent') or 'application/x-bittorrent' in content:
            return 'aria2c', 'torrent', 'Torrent file detected'
        if content.startswith('video/') or content.startswith('audio/'):
            return 'aria2c', 'file', f"Media content type: {content_type}"
        if content_length and content_length > LARGE_FILE_THRESHOLD:
            return 'aria2c', 'file', f"Large file detected ({round(content_length / 1024 / 1024)}MB)"
        for extension in DIRECT_FILE_EXTENSIONS:
            if path.endswith(extension):
                return 'aria2c', 'file', f"File extension detected: {extension}"
        if content.startswith('application/octet-stream') or 'attachment' in content:
            return 'aria2c', 'file', 'Direct file URL pattern detected'
        return 'yt-dlp', 'media', 'Default to yt-dlp for web content'

    async def resolve(self, url: str) -> Resolution:
        """
        Resolves a URL to the download mechanism that should handle it.

        Never raises for network failures; falls back to a best guess instead.
        """
        url = url.strip()
        if url.lower().startswith('magnet:'):
            return Resolution(url, url, 'aria2c', 'magnet', title='Magnet Link Download', reason='Magnet URI detected')

        media = await self.probe_media(url)
        if media is not None:
            return media

        try:
            if self.session is not None:
                final_url, content_type, content_length = await self._head(self.session, url)
            else:
                async with aiohttp.ClientSession() as session:
                    final_url, content_type, content_length = await self._head(session, url)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            is_media_host = bool(_LIKELY_VIDEO.search(url)) or urllib.parse.urlparse(url).hostname in MEDIA_HOSTS
            self.logger.warning(f"Failed to resolve {url}: {e}")
            return Resolution(
                url, url,
                method='yt-dlp' if is_media_host else 'aria2c',
                kind='media' if is_media_host else 'file',
                reason=f"Resolution failed, falling back ({e})",
                error=str(e),
            )

        method, kind, reason = self.analyze(final_url, content_type, content_length)
        self.logger.info(f"URL resolved: {url} -> {final_url}, method: {method}, kind: {kind}")
        return Resolution(url, final_url, method, kind, reason=reason,
                          content_type=content_type, content_length=content_length)
