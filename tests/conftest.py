"""Shared pytest fixtures for the asciivid test suite."""

import wave

import cv2
import numpy as np
import pytest

from asciivid.audio import AudioTrack
from asciivid.errors import SourceError
from asciivid.step3_encode_video import probe_capabilities


class FakeVideoSource:
    """In-memory VideoSource that records every read."""

    def __init__(self, width=10, height=10, duration=2.0, color=(128, 128, 128), frame_fn=None, fail_at=None):
        self.width = width
        self.height = height
        self.duration = duration
        self._color = color
        self._frame_fn = frame_fn
        self._fail_at = fail_at
        self.reads = []
        self.closed = False

    def read_at(self, timestamp):
        if self._fail_at is not None and len(self.reads) == self._fail_at:
            raise SourceError(f"Could not decode frame at {timestamp:.3f}s")
        self.reads.append(timestamp)
        if self._frame_fn is not None:
            return self._frame_fn(timestamp)
        return np.full((self.height, self.width, 3), self._color, dtype=np.uint8)

    def close(self):
        self.closed = True


@pytest.fixture
def make_source():
    return FakeVideoSource


def write_test_video(path, frame_count=20, fps=10, size=(64, 48), values=None):
    """Write an MJPG AVI where frame i is solid gray values[i]."""
    width, height = size
    if values is None:
        values = [min(255, i * 10) for i in range(frame_count)]
    out = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), fps, size)
    assert out.isOpened()
    for value in values:
        out.write(np.full((height, width, 3), value, dtype=np.uint8))
    out.release()
    return path


@pytest.fixture
def video_file(tmp_path):
    return write_test_video(tmp_path / "source.avi")


def write_test_wav(path, seconds=0.5, sample_rate=44100, channels=2, amplitude=0.5):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    tone = amplitude * np.sin(2 * np.pi * 440 * t)
    samples = np.repeat(tone[:, np.newaxis], channels, axis=1)
    pcm = (samples * 32767).astype("<i2")
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.tobytes())
    return path


@pytest.fixture
def wav_file(tmp_path):
    return write_test_wav(tmp_path / "tone.wav")


def sine_track(seconds=1.0, sample_rate=44100, channels=2):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    tone = (0.3 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    return AudioTrack(np.tile(tone, (channels, 1)), sample_rate)


@pytest.fixture
def audio_track():
    return sine_track()


@pytest.fixture(scope="session")
def primary_capabilities():
    capabilities = probe_capabilities()
    if not capabilities.primary_available:
        pytest.skip("No PyAV video encoder available")
    return capabilities


@pytest.fixture
def make_video():
    return write_test_video


@pytest.fixture
def make_wav():
    return write_test_wav


@pytest.fixture
def make_track():
    return sine_track
