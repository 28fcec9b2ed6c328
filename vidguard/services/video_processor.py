import asyncio
import json
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from vidguard.schemas import Frame

logger = structlog.get_logger()


class MediaError(Exception):
    """Base class for failures while reading a source video."""
    pass


class MediaNotFoundError(MediaError):
    pass


class ProbeError(MediaError):
    pass


class ExtractionFailedError(MediaError):
    pass


class FFmpegError(MediaError):
    """Exception raised when an ffmpeg invocation fails."""
    pass


@dataclass
class VideoMetadata:
    duration: float
    width: int = 0
    height: int = 0
    codec: str = "unknown"
    bitrate: int = 0


def frame_timestamps(duration: float, count: int) -> list[float]:
    """Timestamps strictly inside the clip: duration * i / (count + 1) for i in 1..count."""
    return [duration * i / (count + 1) for i in range(1, count + 1)]


class VideoProcessor:
    """Probes videos and captures still frames with ffprobe/ffmpeg."""

    def __init__(self, frame_width: int = 640, timeout: int = 120) -> None:
        self.frame_width = frame_width
        self.timeout = timeout

    async def _run(self, cmd: list[str]) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise FFmpegError(f"{cmd[0]} timeout after {self.timeout}s") from e
        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def probe(self, video_path: str) -> VideoMetadata:
        """Read duration and stream info with ffprobe."""
        if not Path(video_path).is_file():
            raise MediaNotFoundError(f"Video file not found: {video_path}")

        cmd = [
            "ffprobe", "-v", "error",
            "-print_format", "json",
            "-show_format", "-show_streams",
            video_path,
        ]
        try:
            returncode, stdout, stderr = await self._run(cmd)
        except FFmpegError as e:
            raise ProbeError(str(e)) from e

        if returncode != 0:
            logger.error("ffprobe_failed", returncode=returncode, stderr=stderr[:500])
            raise ProbeError(f"FFprobe failed: {stderr.strip()[:200]}")

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"FFprobe returned invalid JSON: {e}") from e

        fmt = data.get("format") or {}
        video_stream = next(
            (s for s in data.get("streams") or [] if s.get("codec_type") == "video"), {}
        )
        try:
            duration = float(fmt.get("duration") or 0)
            bitrate = int(fmt.get("bit_rate") or 0)
        except (TypeError, ValueError) as e:
            raise ProbeError(f"Unreadable format metadata: {e}") from e

        return VideoMetadata(
            duration=duration,
            width=int(video_stream.get("width") or 0),
            height=int(video_stream.get("height") or 0),
            codec=video_stream.get("codec_name") or "unknown",
            bitrate=bitrate,
        )

    async def capture(self, video_path: str, timestamp: float, output: Path, size: str) -> bool:
        """Capture a single still at `timestamp`. Returns False when no image was written."""
        cmd = [
            "ffmpeg", "-v", "error",
            "-ss", f"{timestamp:.2f}",
            "-i", video_path,
            "-frames:v", "1",
            "-vf", f"scale={size}",
            "-y", str(output),
        ]
        try:
            returncode, _, stderr = await self._run(cmd)
        except FFmpegError as e:
            logger.warning("frame_capture_timeout", timestamp=timestamp, error=str(e))
            return False

        if returncode != 0:
            logger.warning("frame_capture_failed", timestamp=timestamp, stderr=stderr[:300])
            return False
        return output.is_file()

    async def extract_frames(self, video_path: str, count: int, output_dir: str) -> list[Frame]:
        """
        Extract `count` frames evenly spread inside the clip.

        Partial extraction is tolerated; zero frames raises ExtractionFailedError.
        """
        if not Path(video_path).is_file():
            raise MediaNotFoundError(f"Video file not found: {video_path}")

        metadata = await self.probe(video_path)
        if metadata.duration <= 0:
            raise ProbeError("Could not determine video duration")

        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        timestamps = frame_timestamps(metadata.duration, count)
        stem = Path(video_path).stem
        logger.info("frame_extraction_started", video_path=video_path, count=count)

        frames = []
        for index, timestamp in enumerate(timestamps):
            target = output_path / f"{stem}-frame-{index + 1:04d}.jpg"
            if await self.capture(video_path, timestamp, target, f"{self.frame_width}:-2"):
                frames.append(Frame(path=str(target.resolve()), index=index, timestamp=timestamp))

        if not frames:
            raise ExtractionFailedError("No frames were extracted")

        logger.info("frame_extraction_completed", requested=count, extracted=len(frames))
        return frames

    async def generate_thumbnail(
        self, video_path: str, output_dir: str, duration: float = 0.0
    ) -> str:
        """Capture a 1280x720 thumbnail at 20% of the clip, capped at 5 seconds."""
        if not Path(video_path).is_file():
            raise MediaNotFoundError(f"Video file not found: {video_path}")

        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        timestamp = min((duration or 10.0) * 0.2, 5.0)
        filename = f"{Path(video_path).stem}-{int(time.time() * 1000)}.jpg"
        target = output_path / filename

        if not await self.capture(video_path, timestamp, target, "1280:720"):
            raise FFmpegError("Thumbnail file was not created")

        logger.info("thumbnail_generated", path=str(target), timestamp=round(timestamp, 2))
        return filename

    def cleanup(self, directory: str) -> None:
        """Remove directory and contents."""
        path = Path(directory)
        if path.exists():
            shutil.rmtree(path)
