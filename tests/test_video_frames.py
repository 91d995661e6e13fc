import os
import subprocess

import pytest
from PIL import Image

import video_frames
from spam_errors import DecodeError, OpenError, WriteError
from video_frames import FfmpegVideo, probe_duration, write_frame


class FakeFfmpeg:
    """Stands in for subprocess.run: answers ffprobe and writes frames for ffmpeg."""

    def __init__(self, duration='12.5\n', probe_code=0, frame_color=(1, 2, 3), fail_frames=()):
        self.duration = duration
        self.probe_code = probe_code
        self.frame_color = frame_color
        self.fail_frames = set(fail_frames)
        self.calls = []

    def __call__(self, cmd, capture_output=True, text=True, timeout=None):
        self.calls.append(cmd)
        if cmd[0] == 'ffprobe':
            stderr = '' if self.probe_code == 0 else 'moov atom not found\nInvalid data found'
            return subprocess.CompletedProcess(cmd, self.probe_code, stdout=self.duration, stderr=stderr)

        frame_number = sum(1 for c in self.calls if c[0] == 'ffmpeg')
        if frame_number in self.fail_frames:
            return subprocess.CompletedProcess(cmd, 1, stdout='', stderr='Error while decoding stream')
        Image.new('RGB', (8, 6), self.frame_color).save(cmd[-1])
        return subprocess.CompletedProcess(cmd, 0, stdout='', stderr='')


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / 'clip.mp4'
    path.write_bytes(b'\0')
    return str(path)


def test_probe_duration(monkeypatch, video_file):
    monkeypatch.setattr(video_frames.subprocess, 'run', FakeFfmpeg())
    assert probe_duration(video_file) == 12.5


@pytest.mark.parametrize("fake, reason", [
    (FakeFfmpeg(probe_code=1), 'Invalid data found'),
    (FakeFfmpeg(duration='N/A\n'), 'no duration'),
    (FakeFfmpeg(duration='0.0\n'), 'non-positive'),
])
def test_probe_duration_errors(monkeypatch, video_file, fake, reason):
    monkeypatch.setattr(video_frames.subprocess, 'run', fake)
    with pytest.raises(OpenError) as exc:
        probe_duration(video_file)
    assert reason in str(exc.value)
    assert exc.value.path == video_file


def test_probe_duration_timeout(monkeypatch, video_file):
    def slow(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs.get('timeout'))
    monkeypatch.setattr(video_frames.subprocess, 'run', slow)
    with pytest.raises(OpenError, match='timed out'):
        probe_duration(video_file)


def test_missing_file_is_open_error(tmp_path):
    with pytest.raises(OpenError, match='no such file'):
        FfmpegVideo(str(tmp_path / 'nope.mp4'))


def test_frame_extraction(monkeypatch, video_file):
    fake = FakeFfmpeg()
    monkeypatch.setattr(video_frames.subprocess, 'run', fake)

    with FfmpegVideo(video_file) as video:
        assert video.duration == 12.5
        frame = video.frame_at(6.25)
        temp_dir = video._temp_dir
        assert os.listdir(temp_dir) == []

    assert frame.size == (8, 6)
    assert frame.getpixel((0, 0)) == (1, 2, 3)
    cmd = fake.calls[-1]
    # input seeking: -ss comes before -i
    assert cmd.index('-ss') < cmd.index('-i')
    assert cmd[cmd.index('-ss') + 1] == '6.250'
    assert not os.path.exists(temp_dir)


def test_frame_decode_failure(monkeypatch, video_file):
    monkeypatch.setattr(video_frames.subprocess, 'run', FakeFfmpeg(fail_frames={2}))
    video = FfmpegVideo(video_file)
    try:
        video.frame_at(1.0)
        with pytest.raises(DecodeError) as exc:
            video.frame_at(2.0)
        assert exc.value.timestamp == 2.0
        assert 'Error while decoding stream' in str(exc.value)
    finally:
        video.close()


def test_close_is_idempotent(monkeypatch, video_file):
    monkeypatch.setattr(video_frames.subprocess, 'run', FakeFfmpeg())
    video = FfmpegVideo(video_file)
    video.close()
    video.close()
    with pytest.raises(DecodeError, match='closed'):
        video.frame_at(1.0)


def test_write_frame(tmp_path):
    target = tmp_path / 'out' / 'frame_01.png'
    write_frame(Image.new('RGB', (4, 4), (9, 9, 9)), str(target))
    with Image.open(target) as img:
        assert img.getpixel((0, 0)) == (9, 9, 9)


def test_write_frame_error(tmp_path):
    with pytest.raises(WriteError) as exc:
        write_frame(Image.new('RGB', (4, 4)), str(tmp_path / 'frame.unknownext'))
    assert exc.value.path.endswith('frame.unknownext')
