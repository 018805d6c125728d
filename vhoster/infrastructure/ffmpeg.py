import concurrent.futures
import os
import subprocess
import re
import logging
import time
import threading
import queue
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from vhoster.config.models import StrategyMode, TranscodeConfig
from vhoster.domain.errors import TranscodeError
from vhoster.domain.models import TranscodeStrategy
from vhoster.infrastructure.ffprobe import FFprobeAdapter

# Codecs browsers play from an MP4 container; anything else is re-encoded
WEB_VIDEO_CODECS = {"h264", "hevc", "av1", "vp9"}
WEB_AUDIO_CODECS = {"aac", "mp3", "opus", "flac", "alac", "ac3", "eac3"}

DIAGNOSTIC_LINES = 20

# Regex to parse 'time=00:00:00.00' from ffmpeg output
TIME_REGEX = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")


class TranscodeCallbacks(Protocol):
    """Lifecycle hooks the engine calls while converting one input.

    The engine knows nothing about who listens; callers adapt these to their
    own job tracking.
    """

    def on_start(self, strategy: TranscodeStrategy, command: List[str]) -> None: ...

    def on_progress(self, percent: int, timemark: Optional[str], estimated: bool) -> None: ...

    def on_error(self, error: TranscodeError) -> None: ...

    def on_end(self) -> None: ...


class _EncoderKilled(TranscodeError):
    """Encoder stopped by shutdown or watchdog; never retried with another strategy."""


def estimate_percent(output_size: int, input_size: int) -> int:
    """Stream-copy heuristic: output size tracks input size roughly linearly."""
    if input_size <= 0:
        return 0
    return min(100, round(100 * output_size / input_size))


def timemark_to_seconds(timemark: str) -> float:
    hours, minutes, seconds = timemark.split(":")
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def partial_output_path(output_path: Path) -> Path:
    """Where ffmpeg writes until success; ``<name>.part`` never collides with a stored upload."""
    return output_path.with_name(output_path.name + ".part")


class FFmpegAdapter:
    """Wrapper around ffmpeg that normalizes inputs into an MP4 container."""

    def __init__(self, config: TranscodeConfig, ffprobe: Optional[FFprobeAdapter] = None):
        self.config = config
        self.ffprobe = ffprobe or FFprobeAdapter(config.ffprobe_path)
        self.logger = logging.getLogger(__name__)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="vhoster-transcode",
        )
        self._shutdown_event = threading.Event()

    def _build_command(self, strategy: TranscodeStrategy, input_path: Path, output_path: Path) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        cmd = [
            self.config.ffmpeg_path,
            "-hide_banner",
            "-y",  # Overwrite output files
            "-i", str(input_path),
            "-sn", "-dn",  # Subtitle/data streams rarely survive a copy into MP4
        ]
        if strategy == TranscodeStrategy.REMUX:
            cmd.extend(["-c", "copy"])
        else:
            cmd.extend([
                "-c:v", self.config.video_codec,
                "-preset", self.config.preset,
                "-crf", str(self.config.crf),
                "-pix_fmt", "yuv420p",
                "-c:a", self.config.audio_codec,
                "-b:a", self.config.audio_bitrate,
            ])
        # Index at the front of the file for progressive playback
        cmd.extend(["-movflags", "+faststart", "-f", "mp4", str(output_path)])
        return cmd

    def _probe(self, input_path: Path) -> Dict[str, Any]:
        try:
            return self.ffprobe.probe(input_path)
        except RuntimeError as exc:
            self.logger.debug(f"Probe failed for {input_path.name}, progress will be estimated: {exc}")
            return {}

    def select_strategies(self, probe_info: Dict[str, Any]) -> List[TranscodeStrategy]:
        """Ordered strategies to attempt for an input.

        ``auto`` remuxes first and falls back to re-encoding, unless the probe
        already shows codecs that are not web-playable from MP4.
        """
        mode = self.config.strategy
        if mode == StrategyMode.REMUX:
            return [TranscodeStrategy.REMUX]
        if mode == StrategyMode.REENCODE:
            return [TranscodeStrategy.REENCODE]

        video_codec = probe_info.get("video_codec")
        audio_codec = probe_info.get("audio_codec")
        if (video_codec and video_codec not in WEB_VIDEO_CODECS) or (audio_codec and audio_codec not in WEB_AUDIO_CODECS):
            return [TranscodeStrategy.REENCODE]
        return [TranscodeStrategy.REMUX, TranscodeStrategy.REENCODE]

    def start(self, input_path: Path, output_path: Path, callbacks: TranscodeCallbacks) -> "concurrent.futures.Future[Path]":
        """Schedules a conversion in the background and returns its future."""
        return self._executor.submit(self.run, Path(input_path), Path(output_path), callbacks)

    def run(self, input_path: Path, output_path: Path, callbacks: TranscodeCallbacks) -> Path:
        """Converts ``input_path`` into ``output_path`` (blocking).

        Calls ``callbacks.on_error`` and raises TranscodeError on failure;
        calls ``callbacks.on_end`` once the output file is finalized.
        """
        try:
            probe_info = self._probe(input_path)
            duration = float(probe_info.get("duration") or 0.0)
            strategies = self.select_strategies(probe_info)
            for index, strategy in enumerate(strategies):
                try:
                    self._execute(strategy, input_path, output_path, duration, callbacks)
                    break
                except _EncoderKilled:
                    raise
                except TranscodeError as exc:
                    if index + 1 >= len(strategies):
                        raise
                    self.logger.warning(
                        f"TRANSCODE_FALLBACK: {input_path.name} {strategy.value} failed ({exc}), "
                        f"trying {strategies[index + 1].value}"
                    )
        except TranscodeError as exc:
            self.logger.error(f"TRANSCODE_FAILED: {input_path.name}: {exc}")
            callbacks.on_error(exc)
            raise

        callbacks.on_end()
        return output_path

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _execute(
        self,
        strategy: TranscodeStrategy,
        input_path: Path,
        output_path: Path,
        duration: float,
        callbacks: TranscodeCallbacks,
    ) -> None:
        tmp_path = partial_output_path(output_path)
        if tmp_path == input_path:
            raise TranscodeError(f"refusing to convert {input_path.name} onto its own partial output")
        cmd = self._build_command(strategy, input_path, tmp_path)
        try:
            input_size = input_path.stat().st_size
        except OSError:
            input_size = 0

        self.logger.info(f"TRANSCODE_START: {input_path.name} strategy={strategy.value}")
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        start_time = time.monotonic()

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",  # container tags are not always valid UTF-8
                bufsize=1,
            )
        except OSError as exc:
            raise TranscodeError(f"could not launch {self.config.ffmpeg_path}: {exc}") from exc

        callbacks.on_start(strategy, cmd)

        output_tail: "deque[str]" = deque(maxlen=DIAGNOSTIC_LINES)
        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            try:
                for line in process.stdout or ():
                    output_queue.put(line)
            except (OSError, ValueError) as exc:
                self.logger.warning(f"FFMPEG_OUTPUT_LOST: {input_path.name}: {exc}")
            finally:
                output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        timemark: Optional[str] = None
        last_sample = start_time
        timeout_s = self.config.timeout_s

        try:
            while True:
                if self._shutdown_event.is_set():
                    self._terminate(process)
                    raise _EncoderKilled("interrupted by shutdown", None, list(output_tail))
                if timeout_s and time.monotonic() - start_time > timeout_s:
                    self._terminate(process)
                    raise _EncoderKilled(f"timed out after {timeout_s:g}s", None, list(output_tail))

                try:
                    line = output_queue.get(timeout=0.1)
                except queue.Empty:
                    line = ""
                    if process.poll() is not None and not reader_thread.is_alive() and output_queue.empty():
                        break

                if line is None:
                    break

                if line:
                    output_tail.append(line.rstrip())
                    match = TIME_REGEX.search(line)
                    if match:
                        timemark = match.group(0)[len("time="):]
                        if duration > 0:
                            percent = min(100, round(100 * timemark_to_seconds(timemark) / duration))
                            callbacks.on_progress(percent, timemark, False)

                # No usable duration: estimate from output growth on a fixed interval
                now = time.monotonic()
                if duration <= 0 and now - last_sample >= self.config.poll_interval_s:
                    last_sample = now
                    if input_size:
                        try:
                            out_size = tmp_path.stat().st_size
                        except OSError:
                            out_size = 0
                        callbacks.on_progress(estimate_percent(out_size, input_size), timemark, True)

            process.wait()
        except _EncoderKilled:
            tmp_path.unlink(missing_ok=True)
            raise

        elapsed = time.monotonic() - start_time
        if process.returncode != 0:
            tmp_path.unlink(missing_ok=True)
            self.logger.info(
                f"TRANSCODE_END: {input_path.name} status=failed code={process.returncode} elapsed={elapsed:.2f}s"
            )
            raise TranscodeError(
                f"ffmpeg exited with code {process.returncode}", process.returncode, list(output_tail)
            )
        if not tmp_path.exists():
            raise TranscodeError("ffmpeg reported success but wrote no output", process.returncode, list(output_tail))

        os.replace(tmp_path, output_path)
        self.logger.info(f"TRANSCODE_END: {input_path.name} status=completed elapsed={elapsed:.2f}s")

    def shutdown(self, wait: bool = False) -> None:
        """Stops running encoders (partial output removed) and the worker pool."""
        self._shutdown_event.set()
        self._executor.shutdown(wait=wait)
