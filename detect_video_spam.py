#!/usr/bin/env python3
"""
Video Spam Detector
Flags videos that are static, looped or near-duplicate screen captures.
Samples a few frames evenly across the video and counts how many
neighbouring samples are near-identical; enough of those makes it spam.
"""

import os
import sys
import json
import argparse
import concurrent.futures
from pathlib import Path
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import imagehash
from PIL import Image
from tqdm import tqdm

from image_differ import (
    BINARY_PIXEL_TOLERANCE,
    PERCEPTUAL_CHROMA_WEIGHT,
    PERCEPTUAL_COLOR_DISTANCE,
    PERCEPTUAL_GAMMA,
    PERCEPTUAL_LUMINANCE_WEIGHT,
    BinaryDiffer,
    Differ,
    PerceptualDiffer,
)
from spam_errors import (
    ConfigError,
    DecodeError,
    DimensionMismatchError,
    FrameDecodeError,
    OpenError,
    SpamDetectionError,
    WriteError,
)
from video_frames import FrameSource, VideoHandle, open_video, write_frame

# Configuration defaults
DEFAULT_NUM_SAMPLES = 5
DEFAULT_MAX_SAME_IMG = 2
DEFAULT_SIMILARITY_THRESHOLDS = {
    'binary': 10.0,  # % of differing pixels
    'perceptual': 5.0,
}
METHODS = tuple(DEFAULT_SIMILARITY_THRESHOLDS)

# Used by --video-only
VIDEO_EXTENSIONS = {'.mp4', '.mkv', '.avi', '.mov', '.webm', '.flv', '.wmv', '.m4v', '.ts'}

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SPAM = 2


@dataclass(frozen=True)
class SpamConfig:
    num_samples: int = DEFAULT_NUM_SAMPLES
    max_same_img: int = DEFAULT_MAX_SAME_IMG
    method: str = 'binary'
    # None picks the method's default from DEFAULT_SIMILARITY_THRESHOLDS
    diff_threshold: Optional[float] = None
    pixel_tolerance: int = BINARY_PIXEL_TOLERANCE
    gamma: float = PERCEPTUAL_GAMMA
    luminance_weight: float = PERCEPTUAL_LUMINANCE_WEIGHT
    chroma_weight: float = PERCEPTUAL_CHROMA_WEIGHT
    color_distance: float = PERCEPTUAL_COLOR_DISTANCE
    anti_alias: bool = True
    keep_frames: Optional[str] = None
    verbose: bool = False
    # pHash of every sampled frame, only needed for the JSON report
    fingerprints: bool = False

    def validate(self) -> None:
        """Raise ConfigError on the first invalid setting."""
        if self.num_samples < 1:
            raise ConfigError(f"number of samples must be at least 1, got {self.num_samples}")
        if self.max_same_img < 0:
            raise ConfigError(f"max identical pairs must not be negative, got {self.max_same_img}")
        if self.method not in METHODS:
            raise ConfigError(f"unknown method {self.method!r}, expected one of {', '.join(METHODS)}")
        if self.diff_threshold is not None and not 0 <= self.diff_threshold <= 100:
            raise ConfigError(f"similarity threshold must be within 0-100%, got {self.diff_threshold}")
        if not 0 <= self.pixel_tolerance <= 255:
            raise ConfigError(f"pixel tolerance must be within 0-255, got {self.pixel_tolerance}")
        if self.gamma <= 0:
            raise ConfigError(f"gamma must be positive, got {self.gamma}")
        for name in ('luminance_weight', 'chroma_weight', 'color_distance'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name.replace('_', ' ')} must not be negative, got {getattr(self, name)}")

    @property
    def similarity_threshold(self) -> float:
        if self.diff_threshold is not None:
            return self.diff_threshold
        return DEFAULT_SIMILARITY_THRESHOLDS[self.method]

    def make_differ(self) -> Differ:
        if self.method == 'perceptual':
            return PerceptualDiffer(
                gamma=self.gamma,
                luminance_weight=self.luminance_weight,
                chroma_weight=self.chroma_weight,
                color_distance=self.color_distance,
                anti_alias=self.anti_alias,
            )
        return BinaryDiffer(tolerance=self.pixel_tolerance)


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

def sample_timestamps(duration: float, num_samples: int) -> List[float]:
    """
    Midpoints of `num_samples` equal slices of the video.

    The very start and end are never sampled; they are often black or
    land between keyframes.
    """
    if num_samples < 1:
        raise ConfigError(f"number of samples must be at least 1, got {num_samples}")
    if duration <= 0:
        raise ValueError(f"duration must be positive, got {duration}")
    step = duration / num_samples
    return [(i + 0.5) * step for i in range(num_samples)]


@dataclass
class SampledFrame:
    index: int  # 1-based
    timestamp: float
    image: Image.Image


class FrameSampler:
    """Lazily pulls one frame per sample timestamp from an open video."""

    def __init__(self, video: VideoHandle, num_samples: int):
        self.video = video
        if video.duration <= 0:
            raise OpenError(video.path, f"non-positive duration {video.duration}")
        self.timestamps = sample_timestamps(video.duration, num_samples)

    def frames(self) -> Iterator[SampledFrame]:
        """Frames in timestamp order; stops at the first decode failure."""
        for index, timestamp in enumerate(self.timestamps, 1):
            try:
                image = self.video.frame_at(timestamp)
            except FrameDecodeError:
                raise
            except DecodeError as e:
                raise FrameDecodeError(index, timestamp, e.reason) from e
            yield SampledFrame(index, timestamp, image)


def sliding_pairs(frames: Iterable[SampledFrame]) -> Iterator[Tuple[SampledFrame, SampledFrame]]:
    """(previous, current) for each consecutive pair; only two frames live at once."""
    previous = None
    for current in frames:
        if previous is not None:
            yield previous, current
        previous = current


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class Verdict(Enum):
    SPAM = 'spam'
    NOT_SPAM = 'not_spam'


class ClassifierState(Enum):
    COLLECTING = 'collecting'
    FINISHED = 'finished'
    FAILED = 'failed'


@dataclass
class PairResult:
    index: int  # 1-based sample index of the later frame
    timestamp: float
    percentage: float
    identical: bool


@dataclass
class ClassificationResult:
    path: str
    verdict: Verdict
    identical_count: int
    max_same_img: int
    num_samples: int
    similarity_threshold: float
    method: str
    pairs: List[PairResult] = field(default_factory=list)
    frame_hashes: List[str] = field(default_factory=list)
    write_errors: List[str] = field(default_factory=list)

    @property
    def is_spam(self) -> bool:
        return self.verdict is Verdict.SPAM

    @property
    def message(self) -> str:
        if self.is_spam:
            return f"This is SPAM! ({self.identical_count}>={self.max_same_img})"
        return f"This is not spam... ({self.identical_count}<{self.max_same_img})"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['verdict'] = self.verdict.value
        data['filename'] = os.path.basename(self.path)
        return data


class SpamClassifier:
    """
    Counts near-identical neighbouring pairs and turns the count into a verdict.

    Collecting -> Finished once every pair is in, or Collecting -> Failed
    when a frame cannot be decoded or two frames differ in size.
    """

    def __init__(self, differ: Differ, similarity_threshold: float, max_same_img: int):
        self.differ = differ
        self.similarity_threshold = similarity_threshold
        self.max_same_img = max_same_img
        self.state = ClassifierState.COLLECTING
        self.identical_count = 0
        self.pairs: List[PairResult] = []
        self.verdict: Optional[Verdict] = None
        self.error: Optional[SpamDetectionError] = None

    def add_pair(self, previous: SampledFrame, current: SampledFrame) -> PairResult:
        if self.state is not ClassifierState.COLLECTING:
            raise RuntimeError(f"classifier is {self.state.value}, cannot add pairs")

        diff = self.differ.compare(current.image, previous.image)
        percentage = diff.percentage
        identical = percentage <= self.similarity_threshold
        if identical:
            self.identical_count += 1

        pair = PairResult(current.index, current.timestamp, percentage, identical)
        self.pairs.append(pair)
        return pair

    def finish(self) -> Verdict:
        if self.state is not ClassifierState.COLLECTING:
            raise RuntimeError(f"classifier is {self.state.value}, cannot finish")
        # No pairs means no evidence, whatever max_same_img is.
        if self.pairs and self.identical_count >= self.max_same_img:
            self.verdict = Verdict.SPAM
        else:
            self.verdict = Verdict.NOT_SPAM
        self.state = ClassifierState.FINISHED
        return self.verdict

    def fail(self, error: SpamDetectionError) -> None:
        self.error = error
        self.state = ClassifierState.FAILED

    def classify(
        self,
        pairs: Iterable[Tuple[SampledFrame, SampledFrame]],
        on_pair: Optional[Callable[[PairResult], None]] = None,
    ) -> Verdict:
        """Consume all pairs and return the verdict; errors mark the run failed and propagate."""
        try:
            for previous, current in pairs:
                pair = self.add_pair(previous, current)
                if on_pair is not None:
                    on_pair(pair)
        except (DecodeError, DimensionMismatchError) as e:
            self.fail(e)
            raise
        return self.finish()


# ---------------------------------------------------------------------------
# Per-file pipeline
# ---------------------------------------------------------------------------

def frame_hash(image: Image.Image) -> str:
    """Perceptual hash of a frame."""
    if image.mode != 'RGB':
        image = image.convert('RGB')
    return str(imagehash.phash(image))


def detect_spam(
    path: str,
    config: SpamConfig,
    frame_source: FrameSource = open_video,
    log: Callable[[str], None] = print,
) -> ClassificationResult:
    """
    Sample and classify one video.

    Raises OpenError, FrameDecodeError or DimensionMismatchError; the video
    handle is closed on every path.
    """
    config.validate()
    classifier = SpamClassifier(config.make_differ(), config.similarity_threshold, config.max_same_img)
    frame_hashes: List[str] = []
    write_errors: List[str] = []
    name = os.path.basename(path)

    def record(frames: Iterable[SampledFrame]) -> Iterator[SampledFrame]:
        for frame in frames:
            if config.fingerprints:
                frame_hashes.append(frame_hash(frame.image))
            if config.keep_frames:
                frame_path = os.path.join(config.keep_frames, f"{name}_{frame.index:02d}.png")
                try:
                    write_frame(frame.image, frame_path)
                except WriteError as e:
                    write_errors.append(str(e))
                    log(f"Warning: {name}: {e}")
            yield frame

    def report_pair(pair: PairResult):
        status = "identical" if pair.identical else "different"
        log(f"  {name} [{pair.index - 1}/{config.num_samples - 1}] "
            f"t={pair.timestamp:.2f}s difference: {pair.percentage:.2f}% ({status})")

    with frame_source(path) as video:
        sampler = FrameSampler(video, config.num_samples)
        verdict = classifier.classify(
            sliding_pairs(record(sampler.frames())),
            on_pair=report_pair if config.verbose else None,
        )

    return ClassificationResult(
        path=path,
        verdict=verdict,
        identical_count=classifier.identical_count,
        max_same_img=config.max_same_img,
        num_samples=config.num_samples,
        similarity_threshold=config.similarity_threshold,
        method=config.method,
        pairs=classifier.pairs,
        frame_hashes=frame_hashes,
        write_errors=write_errors,
    )


# ---------------------------------------------------------------------------
# Batch runner
# ---------------------------------------------------------------------------

@dataclass
class FileFailure:
    path: str
    error: str
    message: str

    def to_dict(self) -> Dict:
        return {
            'path': self.path,
            'filename': os.path.basename(self.path),
            'error': self.error,
            'message': self.message,
        }


@dataclass
class FileOutcome:
    path: str
    result: Optional[ClassificationResult] = None
    failure: Optional[FileFailure] = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def line(self) -> str:
        name = os.path.basename(self.path)
        if self.result is not None:
            return f"{name}: {self.result.message}"
        return f"{name}: {self.failure.error}: {self.failure.message}"


def run_file(
    path: str,
    config: SpamConfig,
    frame_source: FrameSource = open_video,
    log: Callable[[str], None] = print,
) -> FileOutcome:
    """Classify one file, turning a detection error into a reported failure."""
    try:
        result = detect_spam(path, config, frame_source=frame_source, log=log)
    except ConfigError:
        raise
    except SpamDetectionError as e:
        return FileOutcome(path, failure=FileFailure(path, type(e).__name__, str(e)))
    return FileOutcome(path, result=result)


def list_files(directory: str, video_only: bool = False) -> List[str]:
    """Regular files directly inside `directory`, sorted by name."""
    files = []
    for entry in os.listdir(directory):
        file_path = os.path.join(directory, entry)
        if not os.path.isfile(file_path):
            continue
        if video_only and Path(entry).suffix.lower() not in VIDEO_EXTENSIONS:
            continue
        files.append(file_path)
    return sorted(files)


def run_directory(
    directory: str,
    config: SpamConfig,
    frame_source: FrameSource = open_video,
    jobs: int = 1,
    video_only: bool = False,
    show_progress: bool = True,
) -> List[FileOutcome]:
    """
    Classify every file in `directory` independently.

    A failing file never stops its siblings. With jobs > 1 files run on a
    thread pool; each file's own samples are still processed in order.
    Outcomes come back sorted by path.
    """
    config.validate()
    paths = list_files(directory, video_only=video_only)
    outcomes = []

    def log(line: str):
        tqdm.write(line)

    with tqdm(total=len(paths), desc="Checking videos", disable=not show_progress) as progress:
        if jobs <= 1:
            for path in paths:
                outcome = run_file(path, config, frame_source, log=log)
                _announce(outcome)
                outcomes.append(outcome)
                progress.update(1)
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=jobs) as pool:
                futures = {pool.submit(run_file, path, config, frame_source, log): path for path in paths}
                for future in concurrent.futures.as_completed(futures):
                    outcome = future.result()
                    _announce(outcome)
                    outcomes.append(outcome)
                    progress.update(1)

    outcomes.sort(key=lambda o: o.path)
    return outcomes


def _announce(outcome: FileOutcome) -> None:
    if outcome.ok:
        tqdm.write(outcome.line)
    else:
        tqdm.write(f"Error: {outcome.line}", file=sys.stderr)


def file_exit_status(outcome: FileOutcome) -> int:
    if not outcome.ok:
        return EXIT_ERROR
    return EXIT_SPAM if outcome.result.is_spam else EXIT_OK


def directory_exit_status(outcomes: List[FileOutcome]) -> int:
    """Success when the directory is empty or at least one file got a verdict."""
    if outcomes and not any(o.ok for o in outcomes):
        return EXIT_ERROR
    return EXIT_OK


def summarize(outcomes: List[FileOutcome]) -> Dict[str, int]:
    return {
        'total': len(outcomes),
        'spam': sum(1 for o in outcomes if o.ok and o.result.is_spam),
        'not_spam': sum(1 for o in outcomes if o.ok and not o.result.is_spam),
        'failed': sum(1 for o in outcomes if not o.ok),
    }


def build_report(target: str, config: SpamConfig, outcomes: List[FileOutcome]) -> Dict:
    config_data = asdict(config)
    config_data['similarity_threshold'] = config.similarity_threshold
    return {
        'target': target,
        'config': config_data,
        'summary': summarize(outcomes),
        'results': [o.result.to_dict() for o in outcomes if o.ok],
        'failures': [o.failure.to_dict() for o in outcomes if not o.ok],
    }


def write_report(report_path: str, report: Dict) -> None:
    with open(report_path, 'w') as f:
        json.dump(report, f, indent=2)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Detect spam videos: static, looped or near-duplicate screen captures')
    parser.add_argument('path', help='Video file, or directory of videos (not recursive)')
    parser.add_argument('-n', '--samples', type=int, default=DEFAULT_NUM_SAMPLES,
                        help=f'Number of frames to sample (default: {DEFAULT_NUM_SAMPLES})')
    parser.add_argument('-s', '--max-same', type=int, default=DEFAULT_MAX_SAME_IMG,
                        help='Number of near-identical neighbouring samples that makes a video spam '
                             f'(default: {DEFAULT_MAX_SAME_IMG})')
    parser.add_argument('-m', '--method', choices=METHODS, default='binary',
                        help='Frame comparison: exact pixel match or perceptual colour distance '
                             '(default: binary)')
    parser.add_argument('-t', '--threshold', type=float, default=None,
                        help='Max %% of differing pixels for two samples to count as identical '
                             '(default: ' + ', '.join(f'{m} {t}' for m, t in DEFAULT_SIMILARITY_THRESHOLDS.items()) + ')')
    parser.add_argument('--pixel-tolerance', type=int, default=BINARY_PIXEL_TOLERANCE,
                        help=f'binary: per-channel slack for codec rounding, 0-255 (default: {BINARY_PIXEL_TOLERANCE})')
    parser.add_argument('--gamma', type=float, default=PERCEPTUAL_GAMMA,
                        help=f'perceptual: display gamma (default: {PERCEPTUAL_GAMMA})')
    parser.add_argument('--luminance-weight', type=float, default=PERCEPTUAL_LUMINANCE_WEIGHT,
                        help=f'perceptual: weight of lightness difference (default: {PERCEPTUAL_LUMINANCE_WEIGHT})')
    parser.add_argument('--chroma-weight', type=float, default=PERCEPTUAL_CHROMA_WEIGHT,
                        help=f'perceptual: weight of colour difference (default: {PERCEPTUAL_CHROMA_WEIGHT})')
    parser.add_argument('--color-distance', type=float, default=PERCEPTUAL_COLOR_DISTANCE,
                        help=f'perceptual: Lab distance above which pixels differ (default: {PERCEPTUAL_COLOR_DISTANCE})')
    parser.add_argument('--no-anti-alias', action='store_true',
                        help='perceptual: also count isolated single-pixel differences')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Print the difference of every sample pair')
    parser.add_argument('--keep-frames', metavar='DIR',
                        help='Save sampled frames as PNG images into DIR')
    parser.add_argument('--report', metavar='PATH',
                        help='Save a JSON report to PATH')
    parser.add_argument('-j', '--jobs', type=int, default=1,
                        help='Directory mode: number of files checked in parallel (default: 1)')
    parser.add_argument('--video-only', action='store_true',
                        help='Directory mode: only check files with a known video extension')
    return parser


def config_from_args(args: argparse.Namespace) -> SpamConfig:
    return SpamConfig(
        num_samples=args.samples,
        max_same_img=args.max_same,
        method=args.method,
        diff_threshold=args.threshold,
        pixel_tolerance=args.pixel_tolerance,
        gamma=args.gamma,
        luminance_weight=args.luminance_weight,
        chroma_weight=args.chroma_weight,
        color_distance=args.color_distance,
        anti_alias=not args.no_anti_alias,
        keep_frames=args.keep_frames,
        verbose=args.verbose,
        fingerprints=bool(args.report),
    )


def main(argv: Optional[List[str]] = None, frame_source: FrameSource = open_video) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = config_from_args(args)
    try:
        config.validate()
        if args.jobs < 1:
            raise ConfigError(f"jobs must be at least 1, got {args.jobs}")
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    target = os.path.abspath(args.path)

    if os.path.isdir(target):
        print(f"Scanning {target} (top level only)...")
        outcomes = run_directory(target, config, frame_source, jobs=args.jobs, video_only=args.video_only)
        if not outcomes:
            print("No files found!")
        else:
            summary = summarize(outcomes)
            print(f"\nSummary:")
            print(f"  Files checked: {summary['total']}")
            print(f"  Spam: {summary['spam']}")
            print(f"  Not spam: {summary['not_spam']}")
            print(f"  Failed: {summary['failed']}")
        status = directory_exit_status(outcomes)
    else:
        outcome = run_file(target, config, frame_source)
        if outcome.ok:
            print(outcome.line)
        else:
            print(f"Error: {outcome.line}", file=sys.stderr)
        outcomes = [outcome]
        status = file_exit_status(outcome)

    if args.report:
        try:
            write_report(args.report, build_report(target, config, outcomes))
        except OSError as e:
            print(f"Error: cannot write report {args.report}: {e}", file=sys.stderr)
            return EXIT_ERROR
        print(f"Report saved to: {args.report}")

    return status


if __name__ == '__main__':
    sys.exit(main())
