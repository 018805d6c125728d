import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _seconds(value: Any) -> float:
    """Reads plain seconds (``"12.5"``) or a clock value (``"00:01:30.5"``, ``"1:30"``); 0.0 if unusable."""
    if value is None:
        return 0.0
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass
    fields = text.split(":")
    if len(fields) not in (2, 3):
        return 0.0
    try:
        numbers = [float(part) for part in fields]
    except ValueError:
        return 0.0
    total = 0.0
    for number in numbers:
        total = total * 60 + number
    return total


def _ticks_to_seconds(ticks: Any, time_base: Any) -> float:
    """``duration_ts`` scaled by a ``num/den`` time base."""
    if ticks is None or not time_base or "/" not in str(time_base):
        return 0.0
    num, den = (_seconds(part) for part in str(time_base).split("/", 1))
    if den == 0:
        return 0.0
    return max(0.0, _seconds(ticks)) * num / den


def _tagged_duration(section: Dict[str, Any]) -> float:
    tags = section.get("tags") or {}
    return _seconds(tags.get("DURATION") or tags.get("duration"))


class FFprobeAdapter:
    """Reads container duration and stream codecs with ffprobe."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    @staticmethod
    def _duration(fmt: Dict[str, Any], primary: Dict[str, Any]) -> float:
        """First usable duration: container, container tags, stream, stream tags, ticks, then size/bitrate."""
        candidates = (
            lambda: _seconds(fmt.get("duration")),
            lambda: _tagged_duration(fmt),
            lambda: _seconds(primary.get("duration")),
            lambda: _tagged_duration(primary),
            lambda: _ticks_to_seconds(primary.get("duration_ts"), primary.get("time_base")),
        )
        for candidate in candidates:
            duration = candidate()
            if duration > 0:
                return duration

        bit_rate = _seconds(fmt.get("bit_rate") or primary.get("bit_rate"))
        size = _seconds(fmt.get("size"))
        if bit_rate > 0 and size > 0:
            return size * 8 / bit_rate
        return 0.0

    def probe(self, file_path: Path) -> Dict[str, Any]:
        """Runs ffprobe and returns duration, codecs and container name.

        Codec entries are None when the stream type is absent. Raises
        RuntimeError when ffprobe fails or cannot be run.
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path),
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RuntimeError(f"ffprobe could not run for {file_path}: {exc}") from exc
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr}")

        try:
            data = json.loads(result.stdout)
        except ValueError as exc:
            raise RuntimeError(f"ffprobe returned invalid JSON for {file_path}") from exc

        streams = data.get("streams") or []
        video: Optional[Dict[str, Any]] = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio: Optional[Dict[str, Any]] = next((s for s in streams if s.get("codec_type") == "audio"), None)
        fmt = data.get("format") or {}

        info = {
            "duration": self._duration(fmt, video or audio or {}),
            "video_codec": video.get("codec_name") if video else None,
            "audio_codec": audio.get("codec_name") if audio else None,
            "format_name": fmt.get("format_name"),
        }
        logger.debug(f"FFPROBE: {Path(file_path).name} {info}")
        return info
