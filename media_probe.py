"""Audio duration probing through ``ffprobe``."""
from __future__ import annotations

import json
import logging
import subprocess
from fractions import Fraction
from pathlib import Path
from typing import Dict, List, Optional

from ffmpy import FFExecutableNotFoundError, FFprobe, FFRuntimeError


LOGGER = logging.getLogger(__name__)

FFPROBE_OPTIONS = [
    "-v", "error",
    "-select_streams", "a",
    "-show_streams",
    "-print_format", "json",
]


class MediaProbeError(RuntimeError):
    pass


def _select_best_stream(streams: List[Dict[str, object]]) -> Optional[Dict[str, object]]:
    audio = [stream for stream in streams if stream.get("codec_type", "audio") == "audio"]
    if not audio:
        return None

    def _score(stream: Dict[str, object]):
        disposition = stream.get("disposition") or {}
        is_default = bool(disposition.get("default")) if isinstance(disposition, dict) else False
        try:
            channels = int(stream.get("channels") or 0)
        except (TypeError, ValueError):
            channels = 0
        return (not is_default, -channels, stream.get("index", 0))

    return sorted(audio, key=_score)[0]


def stream_duration(stream: Dict[str, object]) -> float:
    """Return the duration of an ffprobe stream entry in seconds.

    ``duration_ts`` scaled by ``time_base`` is preferred; the pre-computed
    ``duration`` field is the fallback for containers that only report that.
    """

    duration_ts = stream.get("duration_ts")
    time_base = stream.get("time_base")
    seconds: Optional[float] = None
    if duration_ts not in (None, "N/A") and time_base:
        try:
            seconds = float(int(duration_ts) * Fraction(str(time_base)))
        except (TypeError, ValueError, ZeroDivisionError):
            seconds = None
    if seconds is None and stream.get("duration") not in (None, "N/A"):
        try:
            seconds = float(stream["duration"])
        except (TypeError, ValueError):
            seconds = None
    if seconds is None:
        raise MediaProbeError("audio stream does not report a duration")
    if seconds < 0:
        raise MediaProbeError(f"audio stream reports a negative duration ({seconds})")
    return seconds


class FFprobeDurationProbe:
    """Callable returning the duration of the best audio stream of a file."""

    def __init__(self, executable: str = "ffprobe") -> None:
        self.executable = executable

    def __call__(self, path: Path) -> float:
        path = Path(path)
        if not path.is_file():
            raise MediaProbeError(f"audio file {path} does not exist")

        probe = FFprobe(executable=self.executable, inputs={str(path): FFPROBE_OPTIONS})
        try:
            stdout, _ = probe.run(stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FFExecutableNotFoundError as exc:
            raise MediaProbeError(str(exc)) from exc
        except FFRuntimeError as exc:
            detail = (exc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise MediaProbeError(f"ffprobe failed on {path}: {detail or exc.exit_code}") from exc

        try:
            payload = json.loads(stdout or b"{}")
        except ValueError as exc:
            raise MediaProbeError(f"unreadable ffprobe output for {path}") from exc

        stream = _select_best_stream(payload.get("streams") or [])
        if stream is None:
            raise MediaProbeError(f"{path} does not contain an audio track")
        seconds = stream_duration(stream)
        LOGGER.debug("Probed %s: stream %s, %.3fs", path, stream.get("index"), seconds)
        return seconds


probe_duration = FFprobeDurationProbe()
