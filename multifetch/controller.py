"""
Defines the main AppController class, which wires settings, tool discovery and
the download engine together.
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .config import ConfigManager, Settings
from .constants import STATE_FILE
from .dependencies import DependencyManager
from .engine import DownloadEngine
from .fetchers.base import FetchStrategy
from .fetchers.file import FileStrategy
from .fetchers.media import MediaStrategy
from .fetchers.torrent import TorrentStrategy
from .jobs import JobKind
from .persistence import StatePersistence
from .resolver import URLResolver


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_manager: ConfigManager, config: Settings, state_path: Path = STATE_FILE):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded application settings.
            state_path: Where the download queue is persisted.
        """
        self.config_manager = config_manager
        self.config = config
        self.state_path = state_path
        self.logger = logging.getLogger(__name__)

        self.dep_manager = DependencyManager({
            'yt-dlp': config.yt_dlp_path,
            'aria2c': config.aria2c_path,
            'ffmpeg': config.ffmpeg_path,
        })
        self.engine: Optional[DownloadEngine] = None
        self.resolver: Optional[URLResolver] = None

    def build_strategies(self) -> Dict[JobKind, FetchStrategy]:
        """Creates one strategy per job kind from the discovered tool paths."""
        yt_dlp = [str(self.dep_manager.yt_dlp_path)] if self.dep_manager.yt_dlp_path else None
        aria2c = [str(self.dep_manager.aria2c_path)] if self.dep_manager.aria2c_path else None
        media = MediaStrategy(yt_dlp, self.dep_manager.ffmpeg_path)
        file = FileStrategy(aria2c)
        torrent = TorrentStrategy(aria2c)
        return {
            JobKind.MEDIA: media,
            JobKind.FILE: file,
            JobKind.TORRENT: torrent,
            JobKind.MAGNET: torrent,
        }

    async def start(self) -> DownloadEngine:
        """Runs startup checks, then restores and starts the download engine."""
        await self.dep_manager.initialize()
        self.resolver = URLResolver(self.dep_manager.yt_dlp_path)
        persistence = StatePersistence(self.state_path, self.config.save_debounce)
        self.engine = DownloadEngine(self.config, self.build_strategies(), persistence)
        await self.engine.start()
        return self.engine

    async def shutdown(self):
        self.logger.info("Application closing.")
        if self.engine is not None:
            await self.engine.shutdown()

    async def submit(self, url: str, resolve: bool = False, **options: Any) -> str:
        """
        Queues a URL, optionally probing it first to pick the download mechanism.

        Raises:
            ClassificationError: If the URL cannot be queued.
        """
        assert self.engine is not None, "start() must be called first"
        if resolve and self.resolver is not None:
            resolution = await self.resolver.resolve(url)
            self.logger.info(f"{url}: {resolution.reason}")
            options.setdefault('resolved_kind', resolution.kind)
            options.setdefault('resolved_method', resolution.method)
            if resolution.title:
                options.setdefault('title', resolution.title)
            url = resolution.resolved_url
        return self.engine.submit(url, **options)

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings."""
        try:
            new_settings = Settings.model_validate({**self.config.model_dump(), **new_settings_data})
            self.config_manager.save(new_settings)
            self.config = new_settings
            if self.engine is not None:
                self.engine.apply_settings(new_settings)
            return True, "Settings have been saved."
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            return False, f"Error in field '{field}': {msg}"
