import numpy as np
import pytest
from PIL import Image

from spam_errors import DecodeError, OpenError
from video_frames import VideoHandle


def solid(color, size=(16, 12), mode='RGB'):
    return Image.new(mode, size, color)


def noise(seed, size=(16, 12)):
    rng = np.random.default_rng(seed)
    arr = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    return Image.fromarray(arr, 'RGB')


class FakeVideo(VideoHandle):
    """In-memory video: frames[i] is returned for the i-th requested timestamp."""

    def __init__(self, path, duration, frames, fail_at=None):
        self.path = path
        self._duration = duration
        self.frames = list(frames)
        self.fail_at = fail_at  # 1-based request number that raises DecodeError
        self.requested = []
        self.closed = 0

    @property
    def duration(self):
        return self._duration

    def frame_at(self, timestamp):
        self.requested.append(timestamp)
        if self.fail_at is not None and len(self.requested) == self.fail_at:
            raise DecodeError(timestamp, "corrupt packet")
        return self.frames[(len(self.requested) - 1) % len(self.frames)]

    def close(self):
        self.closed += 1


class FakeSource:
    """Frame source keyed by file name; unknown names fail to open."""

    def __init__(self, videos):
        self.videos = videos
        self.opened = []

    def __call__(self, path):
        import os
        name = os.path.basename(path)
        if name not in self.videos:
            raise OpenError(path, "unsupported container")
        self.opened.append(name)
        video = self.videos[name]
        video.path = path
        return video


@pytest.fixture
def red():
    return solid((255, 0, 0))


@pytest.fixture
def blue():
    return solid((0, 0, 255))
