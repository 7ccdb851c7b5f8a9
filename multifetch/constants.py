"""
Defines application-wide constants, paths, and utility functions.

This module centralizes paths, subprocess behavior, and the fixed tables used
by the URL classifier and the fetch strategies.
"""

import sys
import subprocess
from pathlib import Path
from typing import FrozenSet

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'multifetch').
    APP_PATH = Path(__file__).resolve().parent.parent

USER_DATA_DIR: Path = Path.home() / '.multifetch'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
STATE_FILE: Path = USER_DATA_DIR / 'downloads-state.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DEFAULT_DOWNLOAD_DIR: Path = Path.home() / 'Downloads' / 'multifetch'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Scheduling ---
TORRENT_CONCURRENCY_CAP = 2
STATE_SCHEMA_VERSION = 1

# --- Request profiles ---
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
}
BROWSER_ACCEPT_LANGUAGE = 'en-US,en;q=0.9'
ARIA2_USER_AGENT = 'aria2/1.37.0'
DHT_ENTRY_POINTS = ('router.bittorrent.com:6881', 'dht.transmissionbt.com:6881')

# --- URL classification tables ---
DIRECT_FILE_EXTENSIONS: FrozenSet[str] = frozenset({
    '.zip', '.rar', '.7z', '.tar', '.gz', '.bz2', '.xz', '.tgz',
    '.exe', '.msi', '.dmg', '.pkg', '.deb', '.rpm', '.apk', '.appimage',
    '.iso', '.img', '.bin',
    '.pdf', '.epub', '.mobi', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.mp3', '.flac', '.wav', '.aac', '.ogg', '.m4a', '.opus',
    '.mp4', '.mkv', '.avi', '.mov', '.wmv', '.webm', '.m4v',
    '.jpg', '.jpeg', '.png', '.gif', '.webp',
})
DIRECT_FILE_METHODS: FrozenSet[str] = frozenset({'aria2c', 'aria2', 'file', 'direct', 'http'})
MEDIA_HOSTS: FrozenSet[str] = frozenset({
    'youtube.com', 'youtu.be', 'vimeo.com', 'dailymotion.com', 'twitch.tv',
    'tiktok.com', 'twitter.com', 'x.com', 'instagram.com', 'facebook.com',
    'soundcloud.com', 'bandcamp.com', 'reddit.com', 'bilibili.com',
})
LARGE_FILE_THRESHOLD = 50 * 1024 * 1024  # 50 MB

# --- Resume detection ---
PARTIAL_FILE_SUFFIXES: FrozenSet[str] = frozenset({'.part', '.ytdl', '.aria2', '.tmp', '.temp'})
SIDECAR_SUFFIXES: FrozenSet[str] = frozenset({'.json', '.torrent'})
