"""
Unit tests for vidguard/services/video_processor.py

Tests ffprobe metadata, per-timestamp frame capture and thumbnails.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from vidguard.services import (
    ExtractionFailedError,
    FFmpegError,
    MediaError,
    MediaNotFoundError,
    ProbeError,
    VideoProcessor,
)
from vidguard.services.video_processor import frame_timestamps

PROBE_OUTPUT = {
    "format": {"duration": "30.0", "bit_rate": "800000"},
    "streams": [
        {"codec_type": "audio", "codec_name": "aac"},
        {"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720},
    ],
}


def make_proc(returncode=0, stdout=b"", stderr=b""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.kill = MagicMock()
    proc.wait = AsyncMock()
    return proc


class FakeFFmpeg:
    """Stands in for create_subprocess_exec; ffmpeg calls write their output file."""

    def __init__(self, probe=PROBE_OUTPUT, failing_calls=(), probe_returncode=0):
        self.probe = probe
        self.failing_calls = set(failing_calls)
        self.probe_returncode = probe_returncode
        self.commands: list[list[str]] = []

    async def __call__(self, *cmd, **kwargs):
        cmd = list(cmd)
        self.commands.append(cmd)
        if cmd[0] == "ffprobe":
            if self.probe_returncode:
                return make_proc(self.probe_returncode, stderr=b"moov atom not found")
            return make_proc(stdout=json.dumps(self.probe).encode())

        call_number = len([c for c in self.commands if c[0] == "ffmpeg"])
        if call_number in self.failing_calls:
            return make_proc(1, stderr=b"decode error")
        Path(cmd[-1]).write_bytes(b"\xff\xd8\xff")
        return make_proc()

    @property
    def ffmpeg_commands(self):
        return [c for c in self.commands if c[0] == "ffmpeg"]


class TestFrameTimestamps:
    @pytest.mark.unit
    def test_timestamps_avoid_endpoints(self):
        """Captures are spread strictly inside the clip."""
        timestamps = frame_timestamps(30.0, 12)

        assert len(timestamps) == 12
        assert timestamps[0] == pytest.approx(30 / 13)
        assert timestamps[-1] == pytest.approx(30 * 12 / 13)
        assert all(0 < t < 30 for t in timestamps)


class TestVideoProcessorProbe:
    """Tests for VideoProcessor.probe method."""

    @pytest.fixture
    def processor(self):
        return VideoProcessor()

    @pytest.mark.unit
    def test_probe_reads_format_and_video_stream(self, processor, sample_video_file):
        fake = FakeFFmpeg()

        with patch("asyncio.create_subprocess_exec", new=fake):
            metadata = asyncio.run(processor.probe(str(sample_video_file)))

        assert metadata.duration == 30.0
        assert metadata.width == 1280
        assert metadata.height == 720
        assert metadata.codec == "h264"
        assert metadata.bitrate == 800000
        assert fake.commands[0][0] == "ffprobe"
        assert str(sample_video_file) in fake.commands[0]

    @pytest.mark.unit
    def test_probe_missing_file(self, processor, temp_dir):
        with pytest.raises(MediaNotFoundError):
            asyncio.run(processor.probe(str(temp_dir / "missing.mp4")))

    @pytest.mark.unit
    def test_probe_failure_raises(self, processor, sample_video_file):
        with patch("asyncio.create_subprocess_exec", new=FakeFFmpeg(probe_returncode=1)):
            with pytest.raises(ProbeError, match="moov atom not found"):
                asyncio.run(processor.probe(str(sample_video_file)))

    @pytest.mark.unit
    def test_probe_invalid_json(self, processor, sample_video_file):
        async def fake_exec(*cmd, **kwargs):
            return make_proc(stdout=b"not json")

        with patch("asyncio.create_subprocess_exec", new=fake_exec):
            with pytest.raises(ProbeError, match="invalid JSON"):
                asyncio.run(processor.probe(str(sample_video_file)))

    @pytest.mark.unit
    def test_probe_timeout(self, sample_video_file):
        proc = make_proc()
        proc.communicate = AsyncMock(side_effect=asyncio.TimeoutError)

        async def fake_exec(*cmd, **kwargs):
            return proc

        processor = VideoProcessor(timeout=5)
        with patch("asyncio.create_subprocess_exec", new=fake_exec):
            with pytest.raises(ProbeError, match="timeout after 5s"):
                asyncio.run(processor.probe(str(sample_video_file)))

        proc.kill.assert_called_once()


class TestVideoProcessorExtractFrames:
    """Tests for VideoProcessor.extract_frames method."""

    @pytest.fixture
    def processor(self):
        return VideoProcessor(frame_width=640)

    @pytest.mark.unit
    def test_extract_frames_one_capture_per_timestamp(self, processor, sample_video_file, temp_dir):
        fake = FakeFFmpeg()
        output_dir = temp_dir / "frames"

        with patch("asyncio.create_subprocess_exec", new=fake):
            frames = asyncio.run(processor.extract_frames(str(sample_video_file), 12, str(output_dir)))

        assert len(frames) == 12
        assert len(fake.ffmpeg_commands) == 12
        first = fake.ffmpeg_commands[0]
        assert first[first.index("-ss") + 1] == f"{30 / 13:.2f}"
        assert "scale=640:-2" in first
        assert "-frames:v" in first
        assert [f.index for f in frames] == list(range(12))
        assert all(Path(f.path).is_file() for f in frames)
        assert Path(frames[0].path).name == "sample-frame-0001.jpg"

    @pytest.mark.unit
    def test_extract_frames_creates_output_directory(self, processor, sample_video_file, temp_dir):
        output_dir = temp_dir / "nested" / "frames"

        with patch("asyncio.create_subprocess_exec", new=FakeFFmpeg()):
            asyncio.run(processor.extract_frames(str(sample_video_file), 2, str(output_dir)))

        assert output_dir.is_dir()

    @pytest.mark.unit
    def test_partial_extraction_is_tolerated(self, processor, sample_video_file, temp_dir):
        """Failed captures are skipped; indices of successful ones are kept."""
        fake = FakeFFmpeg(failing_calls={2, 5})

        with patch("asyncio.create_subprocess_exec", new=fake):
            frames = asyncio.run(processor.extract_frames(str(sample_video_file), 6, str(temp_dir)))

        assert [f.index for f in frames] == [0, 2, 3, 5]

    @pytest.mark.unit
    def test_zero_frames_raises(self, processor, sample_video_file, temp_dir):
        fake = FakeFFmpeg(failing_calls=set(range(1, 4)))

        with patch("asyncio.create_subprocess_exec", new=fake):
            with pytest.raises(ExtractionFailedError):
                asyncio.run(processor.extract_frames(str(sample_video_file), 3, str(temp_dir)))

    @pytest.mark.unit
    def test_zero_duration_raises(self, processor, sample_video_file, temp_dir):
        fake = FakeFFmpeg(probe={"format": {"duration": "0"}, "streams": []})

        with patch("asyncio.create_subprocess_exec", new=fake):
            with pytest.raises(ProbeError, match="duration"):
                asyncio.run(processor.extract_frames(str(sample_video_file), 3, str(temp_dir)))

        assert fake.ffmpeg_commands == []

    @pytest.mark.unit
    def test_missing_video_raises(self, processor, temp_dir):
        with pytest.raises(MediaNotFoundError):
            asyncio.run(processor.extract_frames(str(temp_dir / "gone.mp4"), 3, str(temp_dir)))


class TestVideoProcessorThumbnail:
    """Tests for VideoProcessor.generate_thumbnail method."""

    @pytest.fixture
    def processor(self):
        return VideoProcessor()

    @pytest.mark.unit
    @pytest.mark.parametrize("duration,expected", [(10.0, "2.00"), (60.0, "5.00"), (0.0, "2.00")])
    def test_thumbnail_timestamp(self, processor, sample_video_file, temp_dir, duration, expected):
        """20% into the clip, capped at 5 seconds."""
        fake = FakeFFmpeg()

        with patch("asyncio.create_subprocess_exec", new=fake):
            name = asyncio.run(processor.generate_thumbnail(str(sample_video_file), str(temp_dir), duration))

        cmd = fake.ffmpeg_commands[0]
        assert cmd[cmd.index("-ss") + 1] == expected
        assert "scale=1280:720" in cmd
        assert name.startswith("sample-")
        assert (temp_dir / name).is_file()

    @pytest.mark.unit
    def test_thumbnail_failure_raises(self, processor, sample_video_file, temp_dir):
        with patch("asyncio.create_subprocess_exec", new=FakeFFmpeg(failing_calls={1})):
            with pytest.raises(FFmpegError):
                asyncio.run(processor.generate_thumbnail(str(sample_video_file), str(temp_dir), 10.0))


class TestVideoProcessorCleanup:
    """Tests for VideoProcessor.cleanup method."""

    @pytest.fixture
    def processor(self):
        return VideoProcessor()

    @pytest.mark.unit
    def test_cleanup_removes_directory(self, processor, temp_dir):
        """Cleanup should remove directory and all contents."""
        test_dir = temp_dir / "to_cleanup"
        test_dir.mkdir()
        (test_dir / "frame-0001.jpg").touch()

        processor.cleanup(str(test_dir))

        assert not test_dir.exists()

    @pytest.mark.unit
    def test_cleanup_handles_nonexistent_directory(self, processor, temp_dir):
        """Cleanup should not fail for non-existent directory."""
        processor.cleanup(str(temp_dir / "nonexistent"))


class TestMediaErrors:
    @pytest.mark.unit
    def test_error_hierarchy(self):
        for error_cls in (MediaNotFoundError, ProbeError, ExtractionFailedError, FFmpegError):
            assert issubclass(error_cls, MediaError)
