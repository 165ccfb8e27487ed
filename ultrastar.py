"""Parser for UltraStar karaoke description files (``.txt``)."""
from __future__ import annotations

import codecs
import enum
import logging
import os
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse


LOGGER = logging.getLogger(__name__)


ENCODINGS = ["utf-8-sig", "cp1252", "latin-1"]

REMOTE_SCHEMES = {"http", "https", "ftp"}

REQUIRED_HEADERS = ("TITLE", "ARTIST", "BPM")

_HEADER_RE = re.compile(r"^#([^:]+):(.*)$")
_NOTE_RE = re.compile(r"^([:*FRG])\s*(-?\d+)\s+(\d+)\s+(-?\d+)(?:\s(.*))?$")
_LINE_BREAK_RE = re.compile(r"^-\s*(-?\d+)(?:\s+(-?\d+))?\s*$")
_PLAYER_RE = re.compile(r"^P\s*(\d+)\s*$")


class TxtParseError(ValueError):
    def __init__(self, message: str, *, line_no: Optional[int] = None) -> None:
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message)
        self.line_no = line_no


class NoteKind(enum.Enum):
    REGULAR = ":"
    GOLDEN = "*"
    FREESTYLE = "F"
    RAP = "R"
    GOLDEN_RAP = "G"


@dataclass(frozen=True)
class LocalSource:
    path: Path


@dataclass(frozen=True)
class RemoteSource:
    url: str


Source = Union[LocalSource, RemoteSource]


@dataclass
class Note:
    kind: NoteKind
    start: int
    duration: int
    pitch: int
    text: str


@dataclass
class PlayerChange:
    player: int


@dataclass
class Line:
    start: int
    notes: List[Union[Note, PlayerChange]] = field(default_factory=list)

    @property
    def has_text(self) -> bool:
        return any(isinstance(note, Note) for note in self.notes)


@dataclass
class TxtHeader:
    title: str
    artist: str
    bpm: float
    audio: Source
    gap: Optional[float] = None
    cover: Optional[Source] = None
    background: Optional[Source] = None
    video: Optional[Source] = None
    language: Optional[str] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    edition: Optional[str] = None
    unknown: Dict[str, str] = field(default_factory=dict)


@dataclass
class TxtSong:
    header: TxtHeader
    lines: List[Line]


def read_txt(path: Path) -> str:
    raw_bytes = path.read_bytes()
    *strict, fallback = ENCODINGS
    if raw_bytes.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        strict.insert(0, "utf-16")
    # latin-1 maps every byte, so it is only tried last.
    encoding, text = fallback, None
    for candidate in strict:
        try:
            text = raw_bytes.decode(candidate)
        except UnicodeDecodeError:
            continue
        encoding = candidate
        break
    if text is None:
        text = raw_bytes.decode(fallback)
    if not encoding.startswith("utf"):
        LOGGER.debug("Decoded %s using non-UTF encoding %s", path, encoding)
    return unicodedata.normalize("NFC", text.lstrip("\ufeff"))


def parse_source(value: str, base_dir: Path) -> Source:
    """Classify an asset reference as remote URL or local file.

    Local references are resolved against ``base_dir`` (the directory of the
    description file) and returned as absolute paths with symlinks resolved
    where they exist.
    """

    try:
        parsed = urlparse(value)
        if parsed.scheme.lower() in REMOTE_SCHEMES and parsed.netloc:
            return RemoteSource(url=value)
        # realpath rejects embedded NUL bytes with ValueError.
        return LocalSource(path=Path(os.path.realpath(base_dir / value)))
    except ValueError as exc:
        raise TxtParseError(f"invalid asset reference {value!r}: {exc}") from exc


def _parse_float(key: str, value: str, line_no: int) -> float:
    try:
        return float(value.replace(",", "."))
    except ValueError:
        raise TxtParseError(f"invalid #{key} value {value!r}", line_no=line_no) from None


def _parse_header(lines: List[str], base_dir: Path) -> Tuple[TxtHeader, int]:
    values: Dict[str, Tuple[str, int]] = {}
    index = 0
    for index, raw_line in enumerate(lines):
        line = raw_line.strip()
        if not line:
            continue
        if not line.startswith("#"):
            break
        match = _HEADER_RE.match(line)
        if not match:
            raise TxtParseError(f"malformed header {line!r}", line_no=index + 1)
        key = match.group(1).strip().upper()
        values[key] = (match.group(2).strip(), index + 1)
    else:
        index = len(lines)

    for key in REQUIRED_HEADERS:
        if not values.get(key, ("", 0))[0]:
            raise TxtParseError(f"missing required header #{key}")

    audio_value, _ = values.get("AUDIO") or values.get("MP3") or ("", 0)
    if not audio_value:
        raise TxtParseError("missing required header #MP3")

    def _source(key: str) -> Optional[Source]:
        value = values.get(key, ("", 0))[0]
        return parse_source(value, base_dir) if value else None

    def _text(key: str) -> Optional[str]:
        value = values.get(key, ("", 0))[0]
        return value or None

    bpm_value, bpm_line = values["BPM"]
    header = TxtHeader(
        title=values["TITLE"][0],
        artist=values["ARTIST"][0],
        bpm=_parse_float("BPM", bpm_value, bpm_line),
        audio=parse_source(audio_value, base_dir),
        cover=_source("COVER"),
        background=_source("BACKGROUND"),
        video=_source("VIDEO"),
        language=_text("LANGUAGE"),
        genre=_text("GENRE"),
        edition=_text("EDITION"),
    )
    if "GAP" in values and values["GAP"][0]:
        gap_value, gap_line = values["GAP"]
        header.gap = _parse_float("GAP", gap_value, gap_line)
    if "YEAR" in values and values["YEAR"][0]:
        year_value, year_line = values["YEAR"]
        try:
            header.year = int(year_value)
        except ValueError:
            raise TxtParseError(f"invalid #YEAR value {year_value!r}", line_no=year_line) from None

    known = {"TITLE", "ARTIST", "BPM", "GAP", "AUDIO", "MP3", "COVER", "BACKGROUND",
             "VIDEO", "LANGUAGE", "YEAR", "GENRE", "EDITION"}
    header.unknown = {key: value for key, (value, _) in values.items() if key not in known}
    return header, index


def _parse_body(lines: List[str], first_index: int) -> List[Line]:
    parsed: List[Line] = []
    current = Line(start=0)

    def _finish(next_start: int) -> Line:
        if current.notes:
            parsed.append(current)
        return Line(start=next_start)

    for index in range(first_index, len(lines)):
        line_no = index + 1
        raw_line = lines[index].rstrip("\r\n")
        stripped = raw_line.strip()
        if not stripped:
            continue
        if stripped == "E":
            break

        match = _NOTE_RE.match(raw_line.lstrip())
        if match:
            kind, start, duration, pitch, text = match.groups()
            current.notes.append(
                Note(
                    kind=NoteKind(kind),
                    start=int(start),
                    duration=int(duration),
                    pitch=int(pitch),
                    text=text or "",
                )
            )
            continue

        match = _LINE_BREAK_RE.match(stripped)
        if match:
            current = _finish(int(match.group(1)))
            continue

        match = _PLAYER_RE.match(stripped)
        if match:
            # A player switch always opens a fresh line for the new part.
            if current.has_text:
                current = _finish(current.start)
            current.notes.append(PlayerChange(player=int(match.group(1))))
            continue

        raise TxtParseError(f"unrecognised line {stripped!r}", line_no=line_no)

    _finish(0)
    return parsed


def parse_txt_str(text: str, base_dir: Path) -> TxtSong:
    lines = text.splitlines()
    header, body_start = _parse_header(lines, base_dir)
    return TxtSong(header=header, lines=_parse_body(lines, body_start))


def parse_txt_song(path: Path) -> TxtSong:
    """Read and parse the UltraStar description file at ``path``."""

    path = Path(path)
    try:
        text = read_txt(path)
    except OSError as exc:
        raise TxtParseError(f"cannot read file: {exc.strerror or exc}") from exc
    return parse_txt_str(text, path.parent)
