"""Locates the external download tools and reports their versions."""
import sys
import shutil
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS

# Tool name -> flag that prints its version.
TOOLS: Dict[str, str] = {'yt-dlp': '--version', 'aria2c': '--version', 'ffmpeg': '-version'}
VERSION_TIMEOUT = 15.0

# Job types that cannot run while a tool is missing.
REQUIRED_BY = {
    'yt-dlp': "media downloads",
    'aria2c': "file downloads and aria2c torrents",
}


@dataclass
class ToolInfo:
    name: str
    path: Optional[Path] = None
    source: str = 'missing'  # 'configured', 'local', 'PATH' or 'missing'
    version: Optional[str] = None


class DependencyManager:
    """Finds yt-dlp, aria2c and FFmpeg without blocking the event loop."""

    def __init__(self, overrides: Optional[Dict[str, Optional[Path]]] = None):
        """
        Args:
            overrides: Tool paths from the settings, keyed by tool name. A
                configured path that does not exist falls back to discovery.
        """
        self.overrides = overrides or {}
        self.logger = logging.getLogger(__name__)
        self.tools: Dict[str, ToolInfo] = {name: ToolInfo(name) for name in TOOLS}

    @property
    def yt_dlp_path(self) -> Optional[Path]:
        return self.tools['yt-dlp'].path

    @property
    def aria2c_path(self) -> Optional[Path]:
        return self.tools['aria2c'].path

    @property
    def ffmpeg_path(self) -> Optional[Path]:
        return self.tools['ffmpeg'].path

    async def initialize(self):
        found = await asyncio.gather(*(asyncio.to_thread(self._locate, name) for name in TOOLS))
        for info in found:
            self.tools[info.name] = info
            self.logger.info(f"{info.name}: {info.path or 'not found'} ({info.source})")
        for name, purpose in REQUIRED_BY.items():
            if self.tools[name].path is None:
                self.logger.warning(f"{name} was not found; {purpose} will fail until it is installed.")

    def _locate(self, name: str) -> ToolInfo:
        configured = self.overrides.get(name)
        if configured:
            if configured.exists():
                return ToolInfo(name, configured, 'configured')
            self.logger.warning(f"Configured path for {name} does not exist: {configured}")

        bundled = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
        if bundled.exists():
            return ToolInfo(name, bundled, 'local')
        on_path = shutil.which(name)
        if on_path:
            return ToolInfo(name, Path(on_path), 'PATH')
        return ToolInfo(name)

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Runs a tool with its version flag and returns the first line printed."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        flag = TOOLS.get(executable_path.stem.lower(), '--version')
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS
        try:
            process = await asyncio.create_subprocess_exec(
                str(executable_path), flag,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.DEVNULL, **kwargs)
        except OSError as e:
            self.logger.debug(f"Cannot run {executable_path}: {e}")
            return "Cannot execute"
        try:
            async with asyncio.timeout(VERSION_TIMEOUT):
                output, _ = await process.communicate()
        except TimeoutError:
            process.kill()
            await process.wait()
            return "Version check timed out"
        if process.returncode != 0:
            return "Cannot execute"
        lines = output.decode('utf-8', 'replace').strip().splitlines()
        return lines[0] if lines else "Unknown version"

    async def check_versions(self) -> Dict[str, ToolInfo]:
        """Fills in the version of every located tool."""
        versions = await asyncio.gather(*(self.get_version(info.path) for info in self.tools.values()))
        for info, version in zip(self.tools.values(), versions):
            info.version = version if info.path else None
        return self.tools
