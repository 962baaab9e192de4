"""Encoder - FFmpeg CLI wrapper.

Runs one conversion per call, streams progress parsed from FFmpeg's stderr,
and supports cancellation and cleanup of orphaned FFmpeg processes.
"""

import asyncio
import json
import logging
import os
import re
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import psutil

from vidopt.config import settings
from vidopt.core.errors import EncoderError, EncoderInvocationError, error_context
from vidopt.core.logging import encoder_transcript
from vidopt.models.job import (
    AudioStrategy,
    ConversionResult,
    EncodeRequest,
    MediaInfo,
    ProgressEvent,
    SubtitleStrategy,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

# Marks FFmpeg processes spawned by vidopt so orphan cleanup never touches
# someone else's encode.
OWNER_ENV = "VIDOPT_OWNER"
OWNER_TAG = "vidopt"

CANCELLED_MESSAGE = "Conversion was cancelled"


class Encoder(Protocol):
    """Boundary of the external encoder collaborator."""

    async def start_conversion(
        self, request: EncodeRequest, on_progress: ProgressCallback
    ) -> ConversionResult: ...

    async def cancel_conversion(self, job_id: str) -> bool: ...

    async def cleanup_orphans(self) -> int: ...

    async def probe(self, path: str) -> MediaInfo: ...


_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_TIME_RE = re.compile(r"time=\s*(\d+:\d+:[\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\w./]+)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")


def parse_time_to_seconds(time_str: str) -> float:
    """Convert FFmpeg's HH:MM:SS.ss into seconds (0.0 if malformed)."""
    parts = time_str.split(":")
    if len(parts) != 3:
        return 0.0
    try:
        hours, minutes, seconds = float(parts[0]), float(parts[1]), float(parts[2])
    except ValueError:
        return 0.0
    return hours * 3600 + minutes * 60 + seconds


def parse_progress_line(line: str, job_id: str, duration_seconds: float) -> ProgressEvent | None:
    """Parse one FFmpeg stats line into a ProgressEvent.

    Returns None for lines that are not progress output.
    """
    time_match = _TIME_RE.search(line)
    if not time_match or "frame=" not in line and "size=" not in line:
        return None

    time_str = time_match.group(1)
    current_seconds = parse_time_to_seconds(time_str)

    speed = None
    if speed_match := _SPEED_RE.search(line):
        speed = float(speed_match.group(1))

    percent = None
    eta = None
    if duration_seconds > 0:
        percent = min(current_seconds / duration_seconds * 100.0, 100.0)
        if speed:
            eta = max(duration_seconds - current_seconds, 0.0) / speed

    fps = float(m.group(1)) if (m := _FPS_RE.search(line)) else None
    bitrate = m.group(1) if (m := _BITRATE_RE.search(line)) else None
    frame = m.group(1) if (m := _FRAME_RE.search(line)) else None

    return ProgressEvent(
        job_id=job_id,
        percent=percent,
        speed=speed,
        frames_or_time=f"frame={frame} time={time_str}" if frame else time_str,
        estimated_time_remaining=eta,
        fps=fps,
        bitrate=bitrate,
    )


def build_ffmpeg_command(ffmpeg: str, request: EncodeRequest) -> list[str]:
    """Translate a frozen encode request into an FFmpeg argument list."""
    opts = request.settings
    args = [ffmpeg, "-hide_banner", "-nostdin", "-i", request.input_path]

    args += ["-map", "0:v:0", "-c:v", opts.video_codec]

    if opts.video_codec != "copy":
        if opts.preset:
            args += ["-preset", opts.preset]
        if opts.crf is not None:
            if "nvenc" in opts.video_codec:
                args += ["-cq", str(opts.crf)]
            elif opts.video_codec.startswith("libx26") or opts.video_codec.startswith("libvpx"):
                args += ["-crf", str(opts.crf)]
        if opts.profile:
            args += ["-profile:v", opts.profile]
        if opts.tune:
            args += ["-tune", opts.tune]

    # Audio
    if opts.audio_strategy == AudioStrategy.COPY_ALL:
        args += ["-map", "0:a?", "-c:a", "copy"]
    elif opts.audio_strategy == AudioStrategy.CONVERT_ALL:
        args += ["-map", "0:a?", "-c:a", opts.audio_codec]
        if opts.audio_codec != "copy":
            args += ["-b:a", opts.audio_bitrate]
    else:
        args += ["-map", "0:a:0?", "-c:a", opts.audio_codec]
        if opts.audio_codec != "copy":
            args += ["-b:a", opts.audio_bitrate]

    # Subtitles
    if opts.subtitle_strategy == SubtitleStrategy.COPY_ALL:
        # MP4 only carries text subtitles as mov_text
        codec = "mov_text" if request.output_path.lower().endswith(".mp4") else "copy"
        args += ["-map", "0:s?", "-c:s", codec]
    elif opts.subtitle_strategy == SubtitleStrategy.BURN_IN and opts.video_codec != "copy":
        escaped = request.input_path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")
        args += ["-vf", f"subtitles='{escaped}'", "-sn"]
    else:
        args += ["-sn"]

    args += ["-y", request.output_path]
    return args


class FFmpegEncoder:
    """Wrapper for the FFmpeg / FFprobe command-line tools."""

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        ffprobe_path: str | None = None,
        stall_timeout: float | None = None,
    ) -> None:
        self._ffmpeg_path = ffmpeg_path or ""
        self._ffprobe_path = ffprobe_path or ""
        self._stall_timeout = stall_timeout or settings.encoder_stall_timeout
        self._processes: dict[str, subprocess.Popen] = {}
        self._cancelled: set[str] = set()

    @property
    def ffmpeg_path(self) -> str:
        return self._ffmpeg_path or shutil.which("ffmpeg") or "ffmpeg"

    @property
    def ffprobe_path(self) -> str:
        return self._ffprobe_path or shutil.which("ffprobe") or "ffprobe"

    def configure(self, ffmpeg_path: str = "", ffprobe_path: str = "") -> None:
        """Apply tool paths read from preferences."""
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path

    async def start_conversion(
        self, request: EncodeRequest, on_progress: ProgressCallback
    ) -> ConversionResult:
        """Run FFmpeg for one job and resolve when it exits.

        Progress events are delivered on the event loop thread.

        Raises:
            EncoderInvocationError: FFmpeg could not be started
        """
        loop = asyncio.get_running_loop()
        job_id = request.job_id
        cmd = build_ffmpeg_command(self.ffmpeg_path, request)

        with error_context(
            error_types=(OSError,),
            default_message="Failed to start ffmpeg",
            wrap_as=EncoderInvocationError,
        ):
            Path(request.output_path).parent.mkdir(parents=True, exist_ok=True)
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,  # Universal newlines: FFmpeg's \r stats lines become lines
                errors="replace",
                bufsize=1,
                env={**os.environ, OWNER_ENV: OWNER_TAG},
            )

        self._processes[job_id] = process
        logger.info(f"Job {job_id}: FFmpeg started (pid {process.pid}): {' '.join(cmd)}")
        encoder_transcript(job_id).info(f"$ {' '.join(cmd)}")

        def emit(event: ProgressEvent) -> None:
            loop.call_soon_threadsafe(on_progress, event)

        started = time.monotonic()
        try:
            returncode, tail, timed_out = await asyncio.to_thread(
                self._pump, process, request, emit
            )
        except asyncio.CancelledError:
            self._terminate(process)
            raise
        finally:
            self._processes.pop(job_id, None)

        elapsed = time.monotonic() - started

        if job_id in self._cancelled:
            self._cancelled.discard(job_id)
            return ConversionResult(success=False, error=CANCELLED_MESSAGE, duration=elapsed)

        if timed_out:
            error = f"Encoding timed out: no FFmpeg output for {self._stall_timeout:.0f}s"
            logger.warning(f"Job {job_id}: {error}")
            return ConversionResult(success=False, error=error, duration=elapsed)

        if returncode != 0:
            detail = " | ".join(tail) if tail else ""
            error = f"FFmpeg exited with status {returncode}: {detail}".rstrip(": ")
            logger.error(f"Job {job_id}: {error}")
            return ConversionResult(success=False, error=error, duration=elapsed)

        logger.info(f"Job {job_id}: FFmpeg finished in {elapsed:.1f}s")
        return ConversionResult(success=True, output_path=request.output_path, duration=elapsed)

    def _pump(
        self,
        process: subprocess.Popen,
        request: EncodeRequest,
        emit: ProgressCallback,
    ) -> tuple[int, list[str], bool]:
        """Read FFmpeg stderr until exit (runs in a worker thread).

        Returns:
            (returncode, last non-progress stderr lines, stalled)
        """
        transcript = encoder_transcript(request.job_id)
        tail: deque[str] = deque(maxlen=5)
        last_output = [time.monotonic()]
        stalled = threading.Event()
        finished = threading.Event()

        def watchdog() -> None:
            while not finished.wait(1.0):
                if time.monotonic() - last_output[0] > self._stall_timeout:
                    stalled.set()
                    self._terminate(process)
                    return

        threading.Thread(target=watchdog, daemon=True).start()

        try:
            for raw_line in iter(process.stderr.readline, ""):
                last_output[0] = time.monotonic()
                line = raw_line.strip()
                if not line:
                    continue

                event = parse_progress_line(line, request.job_id, request.duration_seconds)
                if event is not None:
                    emit(event)
                else:
                    tail.append(line)
                    transcript.debug(line)

            process.wait()
        finally:
            finished.set()

        return process.returncode, list(tail), stalled.is_set()

    @staticmethod
    def _terminate(process: subprocess.Popen, grace: float = 5.0) -> None:
        """SIGTERM, then SIGKILL if FFmpeg is still alive after ``grace`` seconds."""
        if process.poll() is not None:
            return
        try:
            process.terminate()
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Could not terminate FFmpeg process {process.pid}: {e}")

    async def cancel_conversion(self, job_id: str) -> bool:
        """Terminate the FFmpeg process of ``job_id``.

        Returns:
            True once the process has exited, False if nothing was running
        """
        process = self._processes.get(job_id)
        if process is None or process.poll() is not None:
            logger.info(f"Cancel requested for job {job_id} but no FFmpeg process is running")
            return False

        self._cancelled.add(job_id)
        await asyncio.to_thread(self._terminate, process)
        logger.info(f"Job {job_id}: FFmpeg process {process.pid} stopped")
        return True

    async def cleanup_orphans(self) -> int:
        """Kill vidopt-spawned FFmpeg processes that nobody is tracking.

        Returns:
            Number of processes killed
        """
        return await asyncio.to_thread(self._kill_orphans)

    def _kill_orphans(self) -> int:
        tracked = {process.pid for process in self._processes.values()}
        me = os.getpid()
        killed = 0

        for proc in psutil.process_iter(["pid", "name", "ppid"]):
            try:
                name = (proc.info.get("name") or "").lower()
                if not name.startswith("ffmpeg"):
                    continue
                # Our own live children are either tracked or about to be
                if proc.info["pid"] in tracked or proc.info["ppid"] == me:
                    continue
                if proc.environ().get(OWNER_ENV) != OWNER_TAG:
                    continue
                proc.kill()
                killed += 1
                logger.warning(f"Killed orphaned FFmpeg process {proc.info['pid']}")
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        if killed:
            logger.info(f"Orphan cleanup killed {killed} FFmpeg process(es)")
        return killed

    async def probe(self, path: str) -> MediaInfo:
        """Read duration and video stream facts with ffprobe.

        Raises:
            EncoderError: ffprobe missing, failed, or returned garbage
        """
        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            path,
        ]

        def run_ffprobe() -> subprocess.CompletedProcess:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=30)

        # OSError covers a missing or non-executable ffprobe binary
        with error_context(
            error_types=(OSError, subprocess.TimeoutExpired),
            default_message=f"Could not run ffprobe on {path}",
            log_level="warning",
            wrap_as=EncoderError,
        ):
            result = await asyncio.to_thread(run_ffprobe)

        if result.returncode != 0:
            raise EncoderError(f"ffprobe failed on {path}: {result.stderr.strip()[:200]}")

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise EncoderError(f"ffprobe returned invalid JSON for {path}") from e

        return parse_probe_output(data)


def parse_probe_output(data: dict) -> MediaInfo:
    """Build MediaInfo from ffprobe's JSON document."""
    duration = 0.0
    try:
        duration = float(data.get("format", {}).get("duration") or 0.0)
    except (TypeError, ValueError):
        duration = 0.0

    video = next(
        (s for s in data.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video is None:
        return MediaInfo(duration_seconds=duration)

    return MediaInfo(
        duration_seconds=duration,
        width=video.get("width"),
        height=video.get("height"),
        video_codec=video.get("codec_name"),
    )
