"""
Video to ASCII conversion pipeline

Runs the three steps in sequence:
1. Sample frames from the source at the target FPS
2. Convert each frame to colored ASCII art
3. Encode the ASCII frames (and optional audio) into a container
"""

import logging
import random
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np

from .audio import AudioTrack, extract_audio
from .config import DEFAULT_ASCII_WIDTH, DEFAULT_FPS, RenderConfig
from .errors import ConversionCancelled, NoFramesError
from .progress import (
    COMPLETE,
    CONVERTING,
    LOADING,
    ProgressReporter,
    ProgressSink,
    band_percent,
)
from .step1_extract_frames import OpenCVVideoSource, VideoSource, extract_frames
from .step2_convert_to_ascii import (
    AsciiFrame,
    RenderedFrame,
    ascii_dimensions,
    downsample,
    frame_to_ascii,
    load_font,
    rasterize,
)
from .step3_encode_video import (
    ContainerEncoder,
    EncodeResult,
    EncoderCapabilities,
    probe_capabilities,
)

logger = logging.getLogger(__name__)

AudioExtractor = Callable[[str, Optional[threading.Event]], Optional[AudioTrack]]


class _AbortFlag:
    """Reads as set once the caller cancels or the conversion fails."""

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self._cancel_event = cancel_event
        self._failed = threading.Event()

    def set(self) -> None:
        self._failed.set()

    def is_set(self) -> bool:
        if self._failed.is_set():
            return True
        return self._cancel_event is not None and self._cancel_event.is_set()


class AsciiVideoConverter:
    """
    Converts a video file into a colored ASCII art video.

    Args:
        render_config: Glyph ramp, noise, threshold and cell settings
        capabilities: Available encoders (default: probe_capabilities())
        on_progress: Receives a ProgressEvent at every step
        rng: Random source for glyph dithering
        source_factory: Opens a VideoSource for a path
        audio_extractor: Decodes a path's audio, returning None when absent
    """

    def __init__(
        self,
        render_config: Optional[RenderConfig] = None,
        capabilities: Optional[EncoderCapabilities] = None,
        on_progress: Optional[ProgressSink] = None,
        rng: Optional[random.Random] = None,
        source_factory: Callable[[str], VideoSource] = OpenCVVideoSource,
        audio_extractor: AudioExtractor = extract_audio,
    ):
        self.render_config = render_config or RenderConfig()
        self.capabilities = capabilities if capabilities is not None else probe_capabilities()
        self._on_progress = on_progress
        self._rng = rng or random.Random()
        self._source_factory = source_factory
        self._audio_extractor = audio_extractor

    def convert(
        self,
        input_video: str,
        fps: float = DEFAULT_FPS,
        ascii_width: int = DEFAULT_ASCII_WIDTH,
        include_audio: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> EncodeResult:
        """
        Convert a video to an ASCII art video.

        Args:
            input_video: Path to input video file
            fps: Target FPS of the output
            ascii_width: Number of ASCII characters per row
            include_audio: Carry the source's audio track when possible
            cancel_event: Set to abort at the next frame or chunk

        Returns:
            EncodeResult with the container bytes and the rendered frames
        """
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")

        reporter = ProgressReporter(self._on_progress)
        reporter.report(LOADING, 0)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="asciivid-audio")
        audio_abort = _AbortFlag(cancel_event)
        audio_future: Optional[Future] = None
        try:
            source = self._source_factory(input_video)
            try:
                if include_audio:
                    audio_future = pool.submit(self._audio_extractor, input_video, audio_abort)
                grids = self.extract_grids(source, fps, ascii_width, reporter, cancel_event)
            finally:
                source.close()

            if not grids:
                raise NoFramesError(f"No frames extracted from {input_video}")

            rendered = self.render_grids(grids, reporter, cancel_event)
            del grids

            # Join the audio worker right before encoding
            audio = audio_future.result() if audio_future is not None else None
        except BaseException:
            # Fatal errors surface now, not after the audio decode finishes
            audio_abort.set()
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown()

        if audio is None and include_audio:
            logger.info("No usable audio, encoding video only")

        encoder = ContainerEncoder(self.capabilities, reporter)
        result = encoder.encode(rendered, fps, audio, cancel_event)

        reporter.report(COMPLETE, 100)
        logger.info(
            "Encoded %d frames (%s, %dx%d, audio=%s)",
            len(result.frames), result.format, result.width, result.height, result.has_audio,
        )
        return result

    def extract_grids(
        self,
        source: VideoSource,
        fps: float,
        ascii_width: int,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[np.ndarray]:
        """Sample the source and shrink every frame to one pixel per character cell."""
        width, height = ascii_dimensions(source.width, source.height, ascii_width, self.render_config)
        logger.debug("ASCII grid: %dx%d", width, height)

        return [
            downsample(frame.pixels, width, height)
            for frame in extract_frames(source, fps, reporter, cancel_event)
        ]

    def to_ascii(self, grid: np.ndarray) -> AsciiFrame:
        return frame_to_ascii(grid, self.render_config, self._rng)

    def render_grids(
        self,
        grids: list[np.ndarray],
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[RenderedFrame]:
        font = load_font(self.render_config.font_size)
        total_frames = len(grids)

        rendered = []
        for i, grid in enumerate(grids):
            if cancel_event is not None and cancel_event.is_set():
                raise ConversionCancelled("Conversion cancelled during ASCII conversion")

            rendered.append(rasterize(self.to_ascii(grid), self.render_config, font))

            if reporter is not None:
                reporter.report(
                    CONVERTING,
                    band_percent(i + 1, total_frames, 50, 40),
                    current=i + 1,
                    total=total_frames,
                )
        return rendered
