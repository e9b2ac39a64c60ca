import random
import threading
import time

import numpy as np
import pytest

from asciivid.config import RenderConfig
from asciivid.errors import ConversionCancelled, NoFramesError, SourceError
from asciivid.pipeline import AsciiVideoConverter
from asciivid.progress import COMPLETE, CONVERTING, ENCODING, EXTRACTING, LOADING
from asciivid.step2_convert_to_ascii import Cell
from asciivid.step3_encode_video import FORMAT_FALLBACK, FORMAT_PRIMARY, EncoderCapabilities
from asciivid.step1_extract_frames import OpenCVVideoSource

GRAY_CONFIG = RenderConfig(glyph_ramp="AB ", white_threshold=240, noise_level=0)

_STAGE_ORDER = [LOADING, EXTRACTING, ENCODING, COMPLETE]


def no_audio(path, cancel_event=None):
    return None


def make_converter(source, capabilities=None, events=None, audio_extractor=no_audio, config=GRAY_CONFIG):
    return AsciiVideoConverter(
        config,
        capabilities=capabilities if capabilities is not None else EncoderCapabilities(),
        on_progress=events.append if events is not None else None,
        rng=random.Random(0),
        source_factory=lambda path: source,
        audio_extractor=audio_extractor,
    )


def test_gray_source_gives_uniform_ascii_frames(make_source):
    source = make_source(width=10, height=10, duration=2.0, color=(128, 128, 128))
    converter = make_converter(source)

    grids = converter.extract_grids(source, 10, 10)
    ascii_frames = [converter.to_ascii(grid) for grid in grids]

    assert len(ascii_frames) == 20
    for ascii_frame in ascii_frames:
        assert len(ascii_frame) == 5
        assert all(len(row) == 10 for row in ascii_frame)
        assert {cell for row in ascii_frame for cell in row} == {Cell("B", (128, 128, 128))}


def test_gray_source_end_to_end(make_source):
    source = make_source(width=10, height=10, duration=2.0, color=(128, 128, 128))
    result = make_converter(source).convert("gray.mp4", fps=10, ascii_width=10)

    assert result.format == FORMAT_FALLBACK
    assert len(result.frames) == 20
    assert (result.width, result.height) == (100, 90)
    assert result.fps == 10
    assert source.closed


def test_progress_is_ordered_and_monotonic(make_source):
    events = []
    source = make_source(duration=1.0)
    make_converter(source, events=events).convert("video.mp4", fps=5, ascii_width=10)

    percents = [e.percent for e in events]
    assert percents == sorted(percents)
    assert percents[0] == 0
    assert percents[-1] == 100
    assert events[0].stage == LOADING
    assert events[-1].stage == COMPLETE

    ranks = [_STAGE_ORDER.index(EXTRACTING if e.stage == CONVERTING else e.stage) for e in events]
    assert ranks == sorted(ranks)

    extracting = [e for e in events if e.stage == EXTRACTING]
    converting = [e for e in events if e.stage == CONVERTING]
    assert len(extracting) == len(converting) == 5
    assert extracting[-1].percent == 50
    assert converting[-1].percent == 90


def test_missing_audio_track_gives_video_only(make_source):
    requested = []

    def extractor(path, cancel_event=None):
        requested.append(path)
        return None

    source = make_source(duration=1.0)
    result = make_converter(source, audio_extractor=extractor).convert(
        "silent.mp4", fps=5, ascii_width=10, include_audio=True
    )

    assert requested == ["silent.mp4"]
    assert result.has_audio is False
    assert len(result.frames) == 5


def test_audio_not_requested_is_not_decoded(make_source):
    def extractor(path, cancel_event=None):
        raise AssertionError("audio should not be decoded")

    source = make_source(duration=1.0)
    result = make_converter(source, audio_extractor=extractor).convert("video.mp4", fps=5, ascii_width=10)
    assert result.has_audio is False


def test_fallback_drops_audio(make_source, audio_track):
    source = make_source(duration=1.0)
    result = make_converter(source, audio_extractor=lambda path, cancel: audio_track).convert(
        "video.mp4", fps=5, ascii_width=10, include_audio=True
    )
    assert result.format == FORMAT_FALLBACK
    assert result.has_audio is False


def test_primary_with_audio(make_source, make_track, primary_capabilities):
    track = make_track(seconds=1.0)
    if not primary_capabilities.audio_config_supported(track.sample_rate, track.number_of_channels):
        pytest.skip("No AAC encoder for 44.1 kHz stereo")

    source = make_source(width=64, height=36, duration=1.0)
    converter = make_converter(
        source,
        capabilities=primary_capabilities,
        audio_extractor=lambda path, cancel: track,
    )
    result = converter.convert("video.mp4", fps=10, ascii_width=12, include_audio=True)

    assert result.format == FORMAT_PRIMARY
    assert result.has_audio is True
    assert len(result.frames) == 10


def test_too_short_source_has_no_frames(make_source):
    source = make_source(duration=0.05)
    with pytest.raises(NoFramesError):
        make_converter(source).convert("short.mp4", fps=10, ascii_width=10)
    assert source.closed


def test_source_error_is_fatal(make_source):
    source = make_source(duration=2.0, fail_at=4)
    with pytest.raises(SourceError):
        make_converter(source).convert("broken.mp4", fps=10, ascii_width=10)
    assert source.closed


def test_cancel_during_conversion(make_source):
    cancel = threading.Event()

    def on_progress(event):
        if event.stage == CONVERTING:
            cancel.set()

    source = make_source(duration=1.0)
    converter = AsciiVideoConverter(
        GRAY_CONFIG,
        capabilities=EncoderCapabilities(),
        on_progress=on_progress,
        source_factory=lambda path: source,
        audio_extractor=no_audio,
    )
    with pytest.raises(ConversionCancelled):
        converter.convert("video.mp4", fps=5, ascii_width=10, cancel_event=cancel)


def test_noise_changes_glyphs_but_not_colors(make_source):
    def gradient(timestamp):
        row = np.linspace(0, 230, 40).astype(np.uint8)
        gray = np.tile(row, (20, 1))
        return np.repeat(gray[..., np.newaxis], 3, axis=2)

    source = make_source(width=40, height=36, duration=0.2, frame_fn=gradient)
    quiet = make_converter(source, config=RenderConfig(noise_level=0))
    noisy = make_converter(source, config=RenderConfig(noise_level=1.0))

    grid = quiet.extract_grids(source, 5, 40)[0]
    plain = quiet.to_ascii(grid)
    dithered = noisy.to_ascii(grid)

    plain_cells = [cell for row in plain for cell in row]
    dithered_cells = [cell for row in dithered for cell in row]
    assert [c.color for c in plain_cells] == [c.color for c in dithered_cells]
    assert [c.character for c in plain_cells] != [c.character for c in dithered_cells]


def test_real_video_file(video_file, make_source):
    converter = AsciiVideoConverter(
        RenderConfig(noise_level=0),
        capabilities=EncoderCapabilities(),
        source_factory=OpenCVVideoSource,
        audio_extractor=no_audio,
    )
    result = converter.convert(str(video_file), fps=10, ascii_width=40)

    assert len(result.frames) == 20
    assert (result.width, result.height) == (400, 16 * 18)


def test_source_error_does_not_wait_for_audio(make_source):
    def slow_extractor(path, cancel_event=None):
        time.sleep(2.0)
        return None

    source = make_source(duration=2.0, fail_at=1)
    converter = make_converter(source, audio_extractor=slow_extractor)

    started = time.monotonic()
    with pytest.raises(SourceError):
        converter.convert("broken.mp4", fps=10, ascii_width=10, include_audio=True)
    assert time.monotonic() - started < 1.0


def test_failure_stops_audio_decode(make_source):
    started = threading.Event()
    stopped = threading.Event()

    def polling_extractor(path, cancel_event=None):
        started.set()
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            if cancel_event.is_set():
                stopped.set()
                return None
            time.sleep(0.01)
        return None

    def failing_frame(timestamp):
        started.wait(1.0)
        return np.full((10, 10, 3), 128, dtype=np.uint8)

    source = make_source(duration=2.0, frame_fn=failing_frame, fail_at=1)
    with pytest.raises(SourceError):
        make_converter(source, audio_extractor=polling_extractor).convert(
            "broken.mp4", fps=10, ascii_width=10, include_audio=True
        )
    assert stopped.wait(1.0)


def test_caller_cancel_reaches_audio_decode(make_source):
    cancel = threading.Event()
    stopped = threading.Event()

    def polling_extractor(path, cancel_event=None):
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            if cancel_event.is_set():
                stopped.set()
                return None
            time.sleep(0.01)
        return None

    def on_progress(event):
        if event.stage == CONVERTING:
            cancel.set()

    source = make_source(duration=1.0)
    converter = AsciiVideoConverter(
        GRAY_CONFIG,
        capabilities=EncoderCapabilities(),
        on_progress=on_progress,
        source_factory=lambda path: source,
        audio_extractor=polling_extractor,
    )
    with pytest.raises(ConversionCancelled):
        converter.convert("video.mp4", fps=5, ascii_width=10, include_audio=True, cancel_event=cancel)
    assert stopped.wait(1.0)
