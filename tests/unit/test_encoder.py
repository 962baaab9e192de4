"""Unit tests for the FFmpeg encoder wrapper.

No real FFmpeg is spawned: Popen, subprocess.run and psutil are patched.
"""

import asyncio
import json
import os
import subprocess
import threading
from unittest.mock import MagicMock, patch

import psutil
import pytest

from vidopt.core.encoder import (
    CANCELLED_MESSAGE,
    OWNER_ENV,
    OWNER_TAG,
    FFmpegEncoder,
    build_ffmpeg_command,
    parse_probe_output,
    parse_progress_line,
    parse_time_to_seconds,
)
from vidopt.core.errors import EncoderError, EncoderInvocationError
from vidopt.core.presets import get_preset
from vidopt.models.job import (
    AudioStrategy,
    ConversionSettings,
    EncodeRequest,
    SubtitleStrategy,
)

PROGRESS_LINE = (
    "frame= 1200 fps= 48 q=28.0 size=   10240kB time=00:00:50.00 "
    "bitrate=1677.7kbits/s speed=2.00x"
)


class FakeProcess:
    """Stands in for subprocess.Popen; ``block`` keeps it running until terminated."""

    def __init__(self, lines=(), returncode=0, block=False):
        self._lines = list(lines)
        self._final = returncode
        self._block = block
        self._stopped = threading.Event()
        self.returncode = None
        self.pid = 4242
        self.terminated = False
        self.stderr = self

    def readline(self):
        if self._lines:
            return self._lines.pop(0)
        if self._block:
            self._stopped.wait(5)
        return ""

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            if self._block:
                self._stopped.wait(timeout or 5)
            self.returncode = -15 if self.terminated else self._final
        return self.returncode

    def terminate(self):
        self.terminated = True
        self._stopped.set()

    def kill(self):
        self.terminate()


def _request(tmp_path, **settings) -> EncodeRequest:
    return EncodeRequest(
        job_id="job1",
        input_path=str(tmp_path / "in.mkv"),
        output_path=str(tmp_path / "out" / "movie.mp4"),
        settings=ConversionSettings(**settings),
        duration_seconds=100.0,
    )


class TestProgressParsing:
    def test_parse_time(self):
        assert parse_time_to_seconds("01:02:03.50") == 3723.5
        assert parse_time_to_seconds("garbage") == 0.0

    def test_full_stats_line(self):
        event = parse_progress_line(PROGRESS_LINE, "job1", 100.0)

        assert event.job_id == "job1"
        assert event.percent == 50.0
        assert event.speed == 2.0
        assert event.estimated_time_remaining == 25.0
        assert event.fps == 48.0
        assert event.bitrate == "1677.7kbits/s"
        assert event.frames_or_time == "frame=1200 time=00:00:50.00"

    def test_percent_capped_at_100(self):
        line = "frame= 10 fps=0.0 size=1kB time=00:02:00.00 bitrate=1kbits/s speed=1.0x"
        assert parse_progress_line(line, "j", 100.0).percent == 100.0

    def test_unknown_duration_has_no_percent(self):
        event = parse_progress_line(PROGRESS_LINE, "j", 0.0)
        assert event.percent is None
        assert event.estimated_time_remaining is None

    @pytest.mark.parametrize(
        "line",
        ["Stream mapping:", "Input #0, matroska,webm, from 'in.mkv':", "frame= 0 time=N/A"],
    )
    def test_non_progress_lines(self, line):
        assert parse_progress_line(line, "j", 100.0) is None


class TestCommandBuilding:
    def test_default_settings(self, tmp_path):
        request = _request(tmp_path)

        assert build_ffmpeg_command("ffmpeg", request) == [
            "ffmpeg", "-hide_banner", "-nostdin", "-i", request.input_path,
            "-map", "0:v:0", "-c:v", "libx264", "-preset", "fast", "-crf", "23",
            "-map", "0:a:0?", "-c:a", "aac", "-b:a", "128k",
            "-sn",
            "-y", request.output_path,
        ]  # fmt: skip

    def test_nvenc_uses_cq(self, tmp_path):
        cmd = build_ffmpeg_command("ffmpeg", _request(tmp_path, video_codec="h264_nvenc", crf=25))
        assert cmd[cmd.index("-cq") + 1] == "25"
        assert "-crf" not in cmd

    def test_profile_and_tune(self, tmp_path):
        cmd = build_ffmpeg_command("ffmpeg", _request(tmp_path, profile="high", tune="film"))
        assert cmd[cmd.index("-profile:v") + 1] == "high"
        assert cmd[cmd.index("-tune") + 1] == "film"

    def test_copy_all_audio(self, tmp_path):
        cmd = build_ffmpeg_command(
            "ffmpeg", _request(tmp_path, audio_strategy=AudioStrategy.COPY_ALL)
        )
        assert "0:a?" in cmd
        assert cmd[cmd.index("-c:a") + 1] == "copy"
        assert "-b:a" not in cmd

    def test_convert_all_audio_sets_bitrate(self, tmp_path):
        cmd = build_ffmpeg_command(
            "ffmpeg",
            _request(tmp_path, audio_strategy=AudioStrategy.CONVERT_ALL, audio_bitrate="192k"),
        )
        assert "0:a?" in cmd
        assert cmd[cmd.index("-b:a") + 1] == "192k"

    def test_subtitles_into_mp4_use_mov_text(self, tmp_path):
        cmd = build_ffmpeg_command(
            "ffmpeg", _request(tmp_path, subtitle_strategy=SubtitleStrategy.COPY_ALL)
        )
        assert cmd[cmd.index("-c:s") + 1] == "mov_text"

    def test_burn_in_subtitles(self, tmp_path):
        cmd = build_ffmpeg_command(
            "ffmpeg", _request(tmp_path, subtitle_strategy=SubtitleStrategy.BURN_IN)
        )
        assert cmd[cmd.index("-vf") + 1].startswith("subtitles=")

    def test_remux_preset(self, tmp_path):
        request = EncodeRequest(
            job_id="j",
            input_path="/in/a.mkv",
            output_path="/out/a.mkv",
            settings=get_preset("remux"),
        )
        cmd = build_ffmpeg_command("ffmpeg", request)

        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert "-preset" not in cmd
        assert "-crf" not in cmd
        assert cmd[cmd.index("-c:s") + 1] == "copy"


class TestConversion:
    async def test_success_emits_progress(self, tmp_path):
        encoder = FFmpegEncoder(ffmpeg_path="ffmpeg")
        process = FakeProcess(["Stream mapping:\n", PROGRESS_LINE + "\n"], returncode=0)
        events = []

        with patch("vidopt.core.encoder.subprocess.Popen", return_value=process) as popen:
            result = await encoder.start_conversion(_request(tmp_path), events.append)
        await asyncio.sleep(0)

        assert result.success
        assert result.output_path.endswith("movie.mp4")
        assert [e.percent for e in events] == [50.0]
        assert (tmp_path / "out").is_dir()
        env = popen.call_args.kwargs["env"]
        assert env[OWNER_ENV] == OWNER_TAG

    async def test_nonzero_exit_reports_stderr_tail(self, tmp_path):
        encoder = FFmpegEncoder(ffmpeg_path="ffmpeg")
        process = FakeProcess(["Unknown encoder 'libfoo'\n"], returncode=1)

        with patch("vidopt.core.encoder.subprocess.Popen", return_value=process):
            result = await encoder.start_conversion(_request(tmp_path), lambda e: None)

        assert not result.success
        assert "status 1" in result.error
        assert "Unknown encoder 'libfoo'" in result.error

    async def test_spawn_failure_raises_invocation_error(self, tmp_path):
        encoder = FFmpegEncoder(ffmpeg_path="/missing/ffmpeg")

        with patch(
            "vidopt.core.encoder.subprocess.Popen",
            side_effect=FileNotFoundError(2, "No such file or directory"),
        ):
            with pytest.raises(EncoderInvocationError, match="Failed to start ffmpeg"):
                await encoder.start_conversion(_request(tmp_path), lambda e: None)

    async def test_cancel_terminates_process(self, tmp_path):
        encoder = FFmpegEncoder(ffmpeg_path="ffmpeg")
        process = FakeProcess(block=True)

        with patch("vidopt.core.encoder.subprocess.Popen", return_value=process):
            task = asyncio.create_task(encoder.start_conversion(_request(tmp_path), lambda e: None))
            while "job1" not in encoder._processes:
                await asyncio.sleep(0.01)

            assert await encoder.cancel_conversion("job1") is True
            result = await task

        assert process.terminated
        assert not result.success
        assert result.error == CANCELLED_MESSAGE
        assert await encoder.cancel_conversion("job1") is False

    async def test_stall_is_reported_as_timeout(self, tmp_path):
        encoder = FFmpegEncoder(ffmpeg_path="ffmpeg", stall_timeout=0.2)
        process = FakeProcess(block=True)

        with patch("vidopt.core.encoder.subprocess.Popen", return_value=process):
            result = await encoder.start_conversion(_request(tmp_path), lambda e: None)

        assert process.terminated
        assert not result.success
        assert "timed out" in result.error


class TestOrphanCleanup:
    @staticmethod
    def _proc(pid, name, ppid, env):
        proc = MagicMock()
        proc.info = {"pid": pid, "name": name, "ppid": ppid}
        proc.environ.return_value = env
        return proc

    async def test_kills_only_untracked_owned_ffmpeg(self):
        orphan = self._proc(101, "ffmpeg", 1, {OWNER_ENV: OWNER_TAG})
        foreign = self._proc(102, "ffmpeg", 1, {})
        child = self._proc(103, "ffmpeg", os.getpid(), {OWNER_ENV: OWNER_TAG})
        other = self._proc(104, "python", 1, {OWNER_ENV: OWNER_TAG})

        with patch(
            "vidopt.core.encoder.psutil.process_iter",
            return_value=[orphan, foreign, child, other],
        ):
            killed = await FFmpegEncoder().cleanup_orphans()

        assert killed == 1
        orphan.kill.assert_called_once()
        foreign.kill.assert_not_called()
        child.kill.assert_not_called()
        other.kill.assert_not_called()

    async def test_vanished_process_is_skipped(self):
        gone = self._proc(105, "ffmpeg.exe", 1, {OWNER_ENV: OWNER_TAG})
        gone.environ.side_effect = psutil.NoSuchProcess(105)

        with patch("vidopt.core.encoder.psutil.process_iter", return_value=[gone]):
            assert await FFmpegEncoder().cleanup_orphans() == 0


class TestProbe:
    PROBE_JSON = {
        "format": {"duration": "5400.25"},
        "streams": [
            {"codec_type": "audio", "codec_name": "aac"},
            {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080},
        ],
    }

    def test_parse_probe_output(self):
        media = parse_probe_output(self.PROBE_JSON)
        assert media.duration_seconds == 5400.25
        assert (media.width, media.height, media.video_codec) == (1920, 1080, "h264")

    def test_parse_probe_without_video(self):
        media = parse_probe_output({"format": {}, "streams": []})
        assert media.duration_seconds == 0.0
        assert media.height is None

    async def test_probe_runs_ffprobe(self):
        completed = subprocess.CompletedProcess(
            args=[], returncode=0, stdout=json.dumps(self.PROBE_JSON), stderr=""
        )
        with patch("vidopt.core.encoder.subprocess.run", return_value=completed) as run:
            media = await FFmpegEncoder(ffprobe_path="ffprobe").probe("/in/movie.mkv")

        assert media.height == 1080
        assert run.call_args.args[0][0] == "ffprobe"

    async def test_probe_failure_raises(self):
        completed = subprocess.CompletedProcess(
            args=[], returncode=1, stdout="", stderr="/in/x.mkv: Invalid data"
        )
        with patch("vidopt.core.encoder.subprocess.run", return_value=completed):
            with pytest.raises(EncoderError):
                await FFmpegEncoder().probe("/in/x.mkv")

    async def test_unexecutable_ffprobe_raises_encoder_error(self):
        with patch(
            "vidopt.core.encoder.subprocess.run",
            side_effect=PermissionError(13, "Permission denied"),
        ):
            with pytest.raises(EncoderError, match="Could not run ffprobe"):
                await FFmpegEncoder(ffprobe_path="/opt/ffprobe").probe("/in/x.mkv")

    async def test_ffprobe_timeout_raises_encoder_error(self):
        with patch(
            "vidopt.core.encoder.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="ffprobe", timeout=30),
        ):
            with pytest.raises(EncoderError, match="Could not run ffprobe"):
                await FFmpegEncoder().probe("/in/x.mkv")
