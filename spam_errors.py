"""
Exception types raised while sampling and classifying videos.
"""

from typing import Optional, Tuple


class SpamDetectionError(Exception):
    """Base class for every failure the detector reports."""


class ConfigError(SpamDetectionError):
    """Invalid configuration, rejected before any file is opened."""


class OpenError(SpamDetectionError):
    """Video file missing, unreadable or not a supported container."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"cannot open video: {reason}")


class DecodeError(SpamDetectionError):
    """Seeking to or decoding a frame at a timestamp failed."""

    def __init__(self, timestamp: float, reason: str):
        self.timestamp = timestamp
        self.reason = reason
        super().__init__(f"cannot decode frame at {timestamp:.3f}s: {reason}")


class FrameDecodeError(DecodeError):
    """Decode failure of the index-th sample (1-based); aborts the file."""

    def __init__(self, index: int, timestamp: float, reason: str):
        self.index = index
        super().__init__(timestamp, reason)
        self.args = (f"sample {index} at {timestamp:.3f}s could not be decoded: {reason}",)


class DimensionMismatchError(SpamDetectionError):
    """Two compared frames have different raster sizes."""

    def __init__(self, size_a: Tuple[int, int], size_b: Tuple[int, int]):
        self.size_a = size_a
        self.size_b = size_b
        super().__init__(
            f"frame size mismatch: {size_a[0]}x{size_a[1]} vs {size_b[0]}x{size_b[1]}"
        )


class WriteError(SpamDetectionError):
    """A sampled frame could not be written to disk."""

    def __init__(self, path: str, reason: str, cause: Optional[BaseException] = None):
        self.path = path
        self.reason = reason
        self.cause = cause
        super().__init__(f"cannot write frame {path}: {reason}")
