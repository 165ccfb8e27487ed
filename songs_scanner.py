"""Song scanning and catalog reconciliation for UltraStar karaoke libraries."""
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from catalog import CatalogStore
from media_probe import MediaProbeError, probe_duration
from ultrastar import Line, LocalSource, Note, PlayerChange, TxtParseError, TxtSong, parse_txt_song


LOGGER = logging.getLogger(__name__)


DESCRIPTION_EXTS = [".txt"]

SUPPORTED_AUDIO_EXTS = [
    ".ogg",
    ".mp3",
    ".wav",
    ".m4a",
    ".aac",
    ".flac",
    ".opus",
]

SongParser = Callable[[Path], TxtSong]
DurationProbe = Callable[[Path], float]


class ExtractionError(Exception):
    """A description file could not be turned into a catalog record."""

    reason = "extraction failed"

    def __init__(self, path, detail: Optional[str] = None) -> None:
        self.path = Path(path)
        self.detail = detail
        message = f"{self.reason}: {detail}" if detail else self.reason
        super().__init__(f"{self.path}: {message}")


class PathResolutionError(ExtractionError):
    reason = "cannot resolve path"


class SongParseError(ExtractionError):
    reason = "cannot parse song"


class UnsupportedRemoteAssetError(ExtractionError):
    reason = "remote asset not supported"

    def __init__(self, path, field_name: str, url: str) -> None:
        self.field_name = field_name
        self.url = url
        super().__init__(path, f"{field_name} {url}")


class MediaProbeFailure(ExtractionError):
    reason = "cannot probe audio"


@dataclass
class CatalogRecord:
    path: bytes
    title: str
    artist: str
    language: Optional[str]
    year: Optional[int]
    duration: float
    lyrics: str
    player_count: int
    cover_path: Optional[bytes]
    audio_path: bytes

    def to_document(self) -> Dict[str, object]:
        return asdict(self)


def canonical_path(path) -> Path:
    return Path(path).resolve(strict=True)


def normalize_asset_path(path, strip_components: int) -> bytes:
    """Drop ``strip_components`` leading components and return raw bytes.

    The root of an absolute path counts as the first component, so stripping
    one component from ``/srv/songs/a.mp3`` yields ``srv/songs/a.mp3``.
    """

    if strip_components < 0:
        raise ValueError("strip_components must not be negative")
    parts = Path(path).parts[strip_components:]
    if not parts:
        return b""
    return os.fsencode(os.path.join(*parts))


def count_players(lines: Iterable[Line]) -> int:
    for line in lines:
        for note in line.notes:
            if isinstance(note, PlayerChange) and note.player == 2:
                return 2
    return 1


def assemble_lyrics(lines: Iterable[Line]) -> str:
    texts = []
    for line in lines:
        if not line.has_text:
            continue
        texts.append("".join(note.text for note in line.notes if isinstance(note, Note)).strip())
    return "\n".join(texts)


def _optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def extract_song(
    description_path,
    strip_components: int = 0,
    *,
    parser: SongParser = parse_txt_song,
    probe: DurationProbe = probe_duration,
) -> CatalogRecord:
    """Build the catalog record for one description file.

    Raises a subclass of :class:`ExtractionError` describing why the file
    cannot be cataloged. Nothing is retried.
    """

    try:
        full_path = canonical_path(description_path)
    except (OSError, RuntimeError) as exc:
        raise PathResolutionError(description_path, getattr(exc, "strerror", None) or str(exc)) from exc

    try:
        song = parser(full_path)
    except (TxtParseError, ValueError) as exc:
        raise SongParseError(full_path, str(exc)) from exc

    header = song.header
    if not isinstance(header.audio, LocalSource):
        raise UnsupportedRemoteAssetError(full_path, "audio", header.audio.url)

    try:
        duration = probe(header.audio.path)
    except (MediaProbeError, OSError) as exc:
        raise MediaProbeFailure(full_path, str(exc)) from exc

    cover_path: Optional[bytes] = None
    if header.cover is not None:
        if not isinstance(header.cover, LocalSource):
            raise UnsupportedRemoteAssetError(full_path, "cover", header.cover.url)
        cover_path = normalize_asset_path(header.cover.path, strip_components)

    return CatalogRecord(
        path=os.fsencode(full_path),
        title=header.title.strip(),
        artist=header.artist.strip(),
        language=_optional_text(header.language),
        year=header.year,
        duration=float(duration),
        lyrics=assemble_lyrics(song.lines),
        player_count=count_players(song.lines),
        cover_path=cover_path,
        audio_path=normalize_asset_path(header.audio.path, strip_components),
    )


class SongScanner:
    def __init__(
        self,
        store: CatalogStore,
        songs_dir: Path,
        strip_components: int = 0,
        *,
        parser: SongParser = parse_txt_song,
        probe: DurationProbe = probe_duration,
    ) -> None:
        if strip_components < 0:
            raise ValueError("strip_components must not be negative")
        self.store = store
        self.songs_dir = Path(songs_dir)
        self.strip_components = strip_components
        self.parser = parser
        self.probe = probe
        self._scan_lock = threading.Lock()

    def extract(self, description_path: Path) -> CatalogRecord:
        return extract_song(
            description_path,
            self.strip_components,
            parser=self.parser,
            probe=self.probe,
        )

    def walk(self, summary: Optional[Dict[str, float]] = None) -> List[CatalogRecord]:
        """Extract every description file below ``songs_dir``.

        Records come back in walk order. Files that cannot be extracted are
        logged and counted in ``summary['errors']``; directory enumeration
        errors propagate.
        """

        if summary is None:
            summary = {}
        summary.setdefault('errors', 0)
        records: List[CatalogRecord] = []
        visited: Set[Tuple[int, int]] = set()
        self._walk_dir(self.songs_dir, records, visited, summary)
        return records

    def _walk_dir(
        self,
        directory: Path,
        records: List[CatalogRecord],
        visited: Set[Tuple[int, int]],
        summary: Dict[str, float],
    ) -> None:
        stat = os.stat(directory)
        identity = (stat.st_dev, stat.st_ino)
        if identity in visited:
            LOGGER.warning("Skipping %s: directory already visited through another link", directory)
            return
        visited.add(identity)

        with os.scandir(directory) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name)

        for entry in entries:
            # Directories and symlinks pointing at directories both recurse.
            if entry.is_dir(follow_symlinks=True):
                self._walk_dir(Path(entry.path), records, visited, summary)
                continue
            if not entry.is_file(follow_symlinks=False):
                continue
            if os.path.splitext(entry.name)[1].lower() not in DESCRIPTION_EXTS:
                continue

            try:
                records.append(self.extract(Path(entry.path)))
            except ExtractionError as exc:
                LOGGER.error("%s", exc)
                summary['errors'] += 1

    def scan(self) -> Dict[str, float]:
        """Scan the songs directory and reconcile the catalog in one transaction."""

        start_time = time.perf_counter()
        with self._scan_lock:
            summary = self._scan_impl()
        summary['duration_seconds'] = round(time.perf_counter() - start_time, 3)
        return summary

    def _scan_impl(self) -> Dict[str, float]:
        summary: Dict[str, float] = {
            'added': 0,
            'removed': 0,
            'total': 0,
            'errors': 0,
            'write_failures': 0,
        }

        self.store.ensure_schema()

        # The server caps transaction lifetime, so probing happens before it opens.
        records = self.walk(summary)
        LOGGER.debug("Extracted %d songs below %s", len(records), self.songs_dir)

        with self.store.transaction() as txn:
            existing_keys = txn.existing_keys()

            observed_keys: Set[bytes] = set()
            for record in records:
                if txn.upsert(record.to_document()) == 1:
                    observed_keys.add(record.path)
                else:
                    LOGGER.warning("%s: Failed inserting into catalog", os.fsdecode(record.path))
                    summary['write_failures'] += 1

            added = len(observed_keys - existing_keys)
            to_remove = existing_keys - observed_keys

            removed = 0
            if to_remove:
                LOGGER.info("Trying to remove %d songs...", len(to_remove))
                for path in sorted(to_remove):
                    deleted = txn.delete(path)
                    if deleted != 1:
                        LOGGER.warning("%s: Failed removing from catalog", os.fsdecode(path))
                    removed += deleted

        summary['added'] = added
        summary['removed'] = removed
        summary['total'] = len(existing_keys) - removed + added
        LOGGER.info("%d new songs, %d removed", added, removed)
        LOGGER.info("Catalog now contains %d songs.", summary['total'])
        return summary

    def start_watcher(
        self,
        callback: Optional[Callable[[], None]] = None,
        debounce_seconds: float = 1.0,
    ) -> "LibraryWatcher":
        handler = SongChangeHandler(callback or self.scan, debounce_seconds)
        observer = Observer()
        observer.daemon = True
        observer.schedule(handler, str(self.songs_dir), recursive=True)
        observer.start()
        return LibraryWatcher(observer, handler)


class SongChangeHandler(FileSystemEventHandler):
    """Turns a burst of library changes into one delayed callback."""

    WATCHED_EXTS = DESCRIPTION_EXTS + SUPPORTED_AUDIO_EXTS
    # Opening a file is not a change; the scan itself opens every description.
    FILE_EVENT_TYPES = (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED)
    DIRECTORY_EVENT_TYPES = (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED)

    def __init__(self, callback: Callable[[], None], debounce_seconds: float = 1.0) -> None:
        super().__init__()
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def is_relevant(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return event.event_type in self.DIRECTORY_EVENT_TYPES
        if event.event_type not in self.FILE_EVENT_TYPES:
            return False
        for path in (event.src_path, getattr(event, 'dest_path', '')):
            if path and os.path.splitext(os.fsdecode(path))[1].lower() in self.WATCHED_EXTS:
                return True
        return False

    def on_any_event(self, event: FileSystemEvent) -> None:
        if self.is_relevant(event):
            LOGGER.debug("Library change: %s %s", event.event_type, event.src_path)
            self.schedule()

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self.callback)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class LibraryWatcher:
    def __init__(self, observer: Observer, handler: SongChangeHandler) -> None:
        self.observer = observer
        self.handler = handler

    def stop(self) -> None:
        self.handler.cancel()
        self.observer.stop()
        self.observer.join(timeout=5)
