"""
Frame sources: open a video, report its duration and decode the frame
nearest to a timestamp. The default source shells out to ffprobe/ffmpeg.
"""

import os
import shutil
import tempfile
import subprocess
from typing import Callable, Optional

from PIL import Image

from spam_errors import OpenError, DecodeError, WriteError

FFPROBE_TIMEOUT = 30  # seconds
FFMPEG_FRAME_TIMEOUT = 15  # seconds per extracted frame


class VideoHandle:
    """
    An open video owned by exactly one sampling run.

    Subclasses provide `duration` (seconds, > 0) and `frame_at()`. `close()`
    is idempotent and is always called, also through the context manager.
    """

    path: str = ""

    @property
    def duration(self) -> float:
        raise NotImplementedError

    def frame_at(self, timestamp: float) -> Image.Image:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


# Anything that turns a path into an open VideoHandle, or raises OpenError.
FrameSource = Callable[[str], VideoHandle]


def probe_duration(video_path: str, timeout: int = FFPROBE_TIMEOUT) -> float:
    """Get video duration in seconds using ffprobe."""
    cmd = [
        'ffprobe', '-v', 'error', '-show_entries', 'format=duration',
        '-of', 'default=noprint_wrappers=1:nokey=1', video_path
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        raise OpenError(video_path, "ffprobe executable not found")
    except subprocess.TimeoutExpired:
        raise OpenError(video_path, f"ffprobe timed out after {timeout}s")

    if result.returncode != 0:
        detail = result.stderr.strip().splitlines()
        raise OpenError(video_path, detail[-1] if detail else f"ffprobe exited with {result.returncode}")

    try:
        duration = float(result.stdout.strip())
    except ValueError:
        raise OpenError(video_path, "no duration reported (not a video container?)")

    if duration <= 0:
        raise OpenError(video_path, f"non-positive duration {duration}")
    return duration


class FfmpegVideo(VideoHandle):
    """
    Video decoded one frame at a time with ffmpeg.

    Frames are extracted as PNG into a private temp directory, loaded into
    memory and deleted straight away. Input seeking (`-ss` before `-i`) is
    used, so the returned frame is the one nearest the requested timestamp.
    """

    def __init__(self, path: str, frame_timeout: int = FFMPEG_FRAME_TIMEOUT):
        if not os.path.isfile(path):
            raise OpenError(path, "no such file")
        self.path = path
        self.frame_timeout = frame_timeout
        self._duration = probe_duration(path)
        self._temp_dir: Optional[str] = tempfile.mkdtemp(prefix="video_spam_")
        self._extracted = 0

    @property
    def duration(self) -> float:
        return self._duration

    def frame_at(self, timestamp: float) -> Image.Image:
        if self._temp_dir is None:
            raise DecodeError(timestamp, "video handle is closed")

        self._extracted += 1
        temp_frame = os.path.join(self._temp_dir, f"frame_{self._extracted:04d}.png")
        cmd = [
            'ffmpeg', '-y', '-v', 'error', '-ss', f"{timestamp:.3f}", '-i', self.path,
            '-frames:v', '1', temp_frame
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.frame_timeout)
        except FileNotFoundError:
            raise DecodeError(timestamp, "ffmpeg executable not found")
        except subprocess.TimeoutExpired:
            raise DecodeError(timestamp, f"ffmpeg timed out after {self.frame_timeout}s")

        if not os.path.exists(temp_frame):
            detail = result.stderr.strip().splitlines()
            raise DecodeError(timestamp, detail[-1] if detail else "no frame produced")

        try:
            with Image.open(temp_frame) as img:
                img.load()
                frame = img.copy()
        except OSError as e:
            raise DecodeError(timestamp, f"unreadable frame image: {e}")
        finally:
            os.remove(temp_frame)
        return frame

    def close(self) -> None:
        if self._temp_dir and os.path.exists(self._temp_dir):
            shutil.rmtree(self._temp_dir)
        self._temp_dir = None


def open_video(path: str) -> VideoHandle:
    """Default frame source."""
    return FfmpegVideo(path)


def write_frame(image: Image.Image, path: str) -> None:
    """Save a sampled frame; the format follows the file extension."""
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        image.save(path)
    except (OSError, ValueError) as e:
        raise WriteError(path, str(e), cause=e)
