"""
Embedded BitTorrent engine backed by libtorrent.

Imported only when the ``embedded`` engine is selected, so libtorrent stays
an optional dependency. libtorrent calls that block (waiting for alerts) run
in worker threads; everything else is cheap and runs on the event loop.
"""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Optional

import libtorrent as lt

from ..exceptions import ResourceError, TransientFetchError
from .torrent import TorrentCounters, TorrentFile, TorrentMetadata, TorrentSession

ALERT_WAIT_MS = 500
UPDATE_INTERVAL = 1.0
TOP_PRIORITY = 7


class LibtorrentSession(TorrentSession):
    """One libtorrent session holding a single torrent."""

    def __init__(self, source: str, save_dir: Path, listen_interfaces: str = '0.0.0.0:6881'):
        """
        Args:
            source: A magnet URI or the path of a local ``.torrent`` file.
            save_dir: Where payload files are written.
        """
        self.source = source
        self.save_dir = save_dir
        self.listen_interfaces = listen_interfaces
        self.session: Optional["lt.session"] = None
        self.handle: Optional["lt.torrent_handle"] = None
        self._closed = False
        self.logger = logging.getLogger(__name__)

    async def start(self):
        settings = {
            'listen_interfaces': self.listen_interfaces,
            'enable_dht': True,
            'enable_lsd': True,
            'enable_upnp': True,
            'enable_natpmp': True,
            'alert_mask': lt.alert.category_t.error_notification | lt.alert.category_t.status_notification,
        }
        self.session = lt.session(settings)
        if self.source.startswith('magnet:'):
            params = lt.parse_magnet_uri(self.source)
        else:
            params = lt.add_torrent_params()
            params.ti = await asyncio.to_thread(lt.torrent_info, self.source)
        params.save_path = str(self.save_dir)
        self.handle = self.session.add_torrent(params)
        self.logger.debug(f"Added torrent to embedded session: {self.source[:80]}")

    async def _pump_alerts(self):
        assert self.session is not None
        await asyncio.to_thread(self.session.wait_for_alert, ALERT_WAIT_MS)
        for alert in self.session.pop_alerts():
            if isinstance(alert, lt.file_error_alert):
                raise ResourceError(f"File error: {alert.message()}")
            if isinstance(alert, lt.torrent_error_alert):
                raise TransientFetchError(f"Torrent error: {alert.message()}")
            self.logger.debug(f"libtorrent: {alert.message()}")

    async def wait_metadata(self) -> TorrentMetadata:
        """Waits until the file list is known. Bounded by the caller's timeout."""
        assert self.handle is not None
        while not self.handle.status().has_metadata:
            await self._pump_alerts()
        info = self.handle.torrent_file()
        storage = info.files()
        files = [TorrentFile(storage.file_path(i), storage.file_size(i)) for i in range(storage.num_files())]
        return TorrentMetadata(
            name=info.name(),
            total_size=info.total_size(),
            files=files,
            info_hash=str(self.handle.info_hash()),
            announce=[tracker.url for tracker in info.trackers()],
            piece_length=info.piece_length(),
            num_pieces=info.num_pieces(),
        )

    def prime_files(self, count: int, head_bytes: int):
        """Asks for the first bytes of the first few files right away."""
        assert self.handle is not None
        storage = self.handle.torrent_file().files()
        for index in range(min(count, storage.num_files())):
            size = storage.file_size(index)
            if size <= 0:
                continue
            request = storage.map_file(index, 0, min(head_bytes, size))
            self.handle.piece_priority(request.piece, TOP_PRIORITY)
            self.handle.set_piece_deadline(request.piece, 0)

    async def updates(self) -> AsyncIterator[TorrentCounters]:
        assert self.handle is not None
        loop = asyncio.get_running_loop()
        next_sample = loop.time()
        while not self._closed:
            await self._pump_alerts()
            if loop.time() < next_sample:
                continue
            next_sample = loop.time() + UPDATE_INTERVAL
            status = self.handle.status()
            yield TorrentCounters(
                file_downloaded=list(self.handle.file_progress()),
                download_rate=float(status.download_rate),
                upload_rate=float(status.upload_rate),
                peers=status.num_peers,
                seeds=status.num_seeds,
                uploaded=status.all_time_upload,
            )

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self.session is not None and self.handle is not None:
            try:
                self.session.remove_torrent(self.handle)
            except RuntimeError as e:
                self.logger.warning(f"Error removing torrent from session: {e}")
        self.handle = None
        self.session = None
