"""
Extracts structured progress from single lines of external tool output.

Two grammars are understood: the media extractor / downloader style
(``[download]  42.0% of 10MiB at 1.2MiB/s ETA 00:08``) and the segmented
downloader's BitTorrent-capable summary style
(``[#2089b0 12MiB/40MiB(30%) CN:8 SD:3 DL:1.2MiB UL:20KiB ETA:23s]``).
Every field is optional and extracted independently. None of these functions
raise on unrecognized input; they return an empty `ProgressUpdate` instead.
"""

import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern

from .jobs import DownloadJob, JobStatus

_SIZE_UNIT = r'(?:[KMGT]i?B|B)'

MEDIA_PERCENT_PATTERNS: List[Pattern] = [
    re.compile(r'^\[download\]\s+(\d+(?:\.\d+)?)%'),
    re.compile(r'^(\d+(?:\.\d+)?)%\s'),
    re.compile(r'\((\d+(?:\.\d+)?)%\)'),
]
MEDIA_SPEED_PATTERNS: List[Pattern] = [
    re.compile(r'\bat\s+~?\s*([\d.]+\s*' + _SIZE_UNIT + r'/s)'),
    re.compile(r'([\d.]+(?:[KMGT])?iB/s)'),
    re.compile(r'(\d+(?:\.\d+)?[KMGT]?B/s)'),
]
MEDIA_ETA_PATTERNS: List[Pattern] = [
    re.compile(r'ETA\s+([\d:]+)'),
]
MEDIA_SIZE_PATTERNS: List[Pattern] = [
    re.compile(r'\bof\s+~?\s*([\d.]+\s*' + _SIZE_UNIT + r')'),
    re.compile(r'([\d.]+' + _SIZE_UNIT + r')\s+at\b'),
    re.compile(r'/\s*([\d.]+' + _SIZE_UNIT + r')'),
]

ARIA2_PERCENT = re.compile(r'\((\d+(?:\.\d+)?)%\)')
ARIA2_SIZE = re.compile(r'([\d.]+' + _SIZE_UNIT + r')/([\d.]+' + _SIZE_UNIT + r')')
ARIA2_PEERS = re.compile(r'\bCN:(\d+)')
ARIA2_SEEDS = re.compile(r'\bSD:(\d+)')
ARIA2_DL = re.compile(r'\bDL:([\d.]+' + _SIZE_UNIT + r')(/s)?')
ARIA2_UL = re.compile(r'\bUL:([\d.]+' + _SIZE_UNIT + r')(?:\(([\d.]+' + _SIZE_UNIT + r')\))?(/s)?')
ARIA2_ETA = re.compile(r'\bETA:(\w+)')
TRACKER_SEEDERS = re.compile(r'seeders?[:\s]+(\d+)', re.IGNORECASE)
TRACKER_LEECHERS = re.compile(r'leechers?[:\s]+(\d+)', re.IGNORECASE)
TRACKER_PEERS = re.compile(r'\bpeers?[:\s]+(\d+)', re.IGNORECASE)

DESTINATION_PATTERNS: List[Pattern] = [
    re.compile(r'\[download\] Destination: (.+)$'),
    re.compile(r'\[Merger\] Merging formats into "(.+)"$'),
    re.compile(r'\[ExtractAudio\] Destination: (.+)$'),
]
POSTPROCESS_MARKERS = ('[ffmpeg]', '[Merger]', 'Merging formats', 'Deleting original file',
                       'Post-processing', '[ExtractAudio]', '[FixupM4a]', '[EmbedThumbnail]', '[Metadata]')
ALREADY_DOWNLOADED_MARKERS = ('has already been downloaded', 'already exists')
METADATA_MARKERS = ('metadata', 'Metadata', 'METADATA')
ARIA2_MARKERS = ('CN:', 'DL:', 'SD:', '[#', 'SEEDING')


@dataclass
class ProgressUpdate:
    """Fields extracted from one line. Unset fields stay None."""
    progress: Optional[float] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    size: Optional[str] = None
    downloaded: Optional[str] = None
    peers: Optional[int] = None
    seeds: Optional[int] = None
    leechers: Optional[int] = None
    upload_speed: Optional[str] = None
    ratio: Optional[float] = None
    destination: Optional[str] = None
    postprocessing: Optional[bool] = None
    already_downloaded: Optional[bool] = None
    seeding: Optional[bool] = None
    metadata_ready: Optional[bool] = None

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def __bool__(self) -> bool:
        return bool(self.as_dict())


def _first(patterns: List[Pattern], line: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(line)
        if match:
            return match.group(1)
    return None


def _clamp_percent(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if value < 0 or value > 100:
        return None
    return value


def _as_rate(value: str) -> str:
    value = value.replace(' ', '')
    return value if value.endswith('/s') else f"{value}/s"


def parse_media_progress(line: str) -> ProgressUpdate:
    """
    Parses one line emitted by the media extractor or a plain HTTP downloader.

    Args:
        line: A single line of tool output.

    Returns:
        A ProgressUpdate with whatever fields could be found.
    """
    update = ProgressUpdate()
    if not line:
        return update
    line = line.strip()

    for pattern in DESTINATION_PATTERNS:
        match = pattern.search(line)
        if match:
            update.destination = match.group(1).strip().strip('"')
            break

    if any(marker in line for marker in ALREADY_DOWNLOADED_MARKERS):
        update.already_downloaded = True
        update.progress = 100.0
        return update

    if any(marker in line for marker in POSTPROCESS_MARKERS):
        update.postprocessing = True

    # Destination and merge lines carry a file name, which may contain '%'.
    if update.destination:
        return update
    percent = _clamp_percent(_first(MEDIA_PERCENT_PATTERNS, line))
    if percent is None:
        return update
    update.progress = percent

    speed = _first(MEDIA_SPEED_PATTERNS, line)
    if speed and 'Unknown' not in speed:
        update.speed = speed.replace(' ', '')
    eta = _first(MEDIA_ETA_PATTERNS, line)
    if eta:
        update.eta = eta
    size = _first(MEDIA_SIZE_PATTERNS, line)
    if size:
        update.size = size.replace(' ', '')
    return update


def parse_aria2_progress(line: str) -> ProgressUpdate:
    """
    Parses one summary line from the segmented downloader.

    Args:
        line: A single line of tool output.

    Returns:
        A ProgressUpdate; ``SEEDING`` lines report 100% and ``seeding=True``.
    """
    update = ProgressUpdate()
    if not line:
        return update
    line = line.strip()

    if 'SEEDING' in line:
        update.seeding = True
        update.progress = 100.0
    else:
        update.progress = _clamp_percent(_first([ARIA2_PERCENT], line))

    size_match = ARIA2_SIZE.search(line)
    if size_match:
        update.downloaded = size_match.group(1)
        update.size = size_match.group(2)

    peers_match = ARIA2_PEERS.search(line)
    if peers_match:
        update.peers = int(peers_match.group(1))
    else:
        tracker_peers = TRACKER_PEERS.search(line)
        if tracker_peers:
            update.peers = int(tracker_peers.group(1))

    seeds_match = ARIA2_SEEDS.search(line) or TRACKER_SEEDERS.search(line)
    if seeds_match:
        update.seeds = int(seeds_match.group(1))
    leechers_match = TRACKER_LEECHERS.search(line)
    if leechers_match:
        update.leechers = int(leechers_match.group(1))

    dl_match = ARIA2_DL.search(line)
    if dl_match:
        update.speed = _as_rate(dl_match.group(1))
    ul_match = ARIA2_UL.search(line)
    if ul_match:
        update.upload_speed = _as_rate(ul_match.group(1))

    eta_match = ARIA2_ETA.search(line)
    if eta_match:
        update.eta = eta_match.group(1)

    if any(marker in line for marker in METADATA_MARKERS):
        update.metadata_ready = True
    return update


def is_aria2_line(line: str) -> bool:
    return any(marker in line for marker in ARIA2_MARKERS)


def parse_progress(line: str) -> ProgressUpdate:
    """Parses a line with whichever grammar it looks like."""
    if is_aria2_line(line):
        return parse_aria2_progress(line)
    return parse_media_progress(line)


def apply_progress(job: DownloadJob, update: ProgressUpdate) -> bool:
    """
    Copies an update onto a job.

    Progress never moves backwards while the job is downloading; a fresh
    retry resets it through `DownloadJob.reset_transient` instead.

    Returns:
        True if any observable field changed.
    """
    changed = False
    if update.progress is not None:
        new_progress = round(update.progress, 2)
        moving_back = job.status == JobStatus.DOWNLOADING and new_progress < job.progress
        if not moving_back and new_progress != job.progress:
            job.progress = new_progress
            changed = True

    for attr in ('speed', 'eta', 'size'):
        value = getattr(update, attr)
        if value is not None and value != getattr(job, attr):
            setattr(job, attr, value)
            changed = True

    if update.destination:
        title = Path(update.destination).stem
        if title and title != job.title:
            job.title = title
            changed = True

    torrent = job.torrent
    if torrent is not None:
        for attr in ('peers', 'seeds', 'leechers', 'upload_speed', 'ratio'):
            value = getattr(update, attr)
            if value is not None and value != getattr(torrent, attr):
                setattr(torrent, attr, value)
                changed = True
    return changed


# --- Rate and size helpers ---

_UNIT_MULTIPLIERS = {
    '': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3, 'T': 1024 ** 4,
}
_RATE_PATTERN = re.compile(r'([\d.]+)\s*([KMGT]?)(i?)B(?:/s)?', re.IGNORECASE)


def parse_rate(text: Optional[str]) -> float:
    """
    Converts a display rate such as '1.2MiB/s' or '300KB/s' into bytes per second.

    Decimal and binary prefixes are both treated as powers of 1024, which is
    how the tools themselves print them.
    """
    if not text:
        return 0.0
    match = _RATE_PATTERN.search(text)
    if not match:
        return 0.0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0.0
    return number * _UNIT_MULTIPLIERS[match.group(2).upper()]


def format_bytes(num_bytes: float) -> str:
    for unit in ('B', 'KiB', 'MiB', 'GiB'):
        if abs(num_bytes) < 1024 or unit == 'GiB':
            return f"{num_bytes:.0f} {unit}" if unit == 'B' else f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f} GiB"


def format_rate(bytes_per_second: float) -> str:
    if bytes_per_second <= 0:
        return '0 B/s'
    return f"{format_bytes(bytes_per_second)}/s"


def format_duration(seconds: Optional[float]) -> Optional[str]:
    """Formats seconds as MM:SS or HH:MM:SS, the way the media tool prints ETAs."""
    if seconds is None or seconds < 0:
        return None
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"
