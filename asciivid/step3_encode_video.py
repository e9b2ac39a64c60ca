"""
Step 3: Encode ASCII art frames (and optional audio) into a video container
"""

import io
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional, Sequence

import av
import cv2
from av.codec import Codec
from av.error import FFmpegError
from av.video.frame import PictureType

from .audio import AudioTrack, iter_audio_windows
from .config import FALLBACK_SETTLE_FRAMES, KEYFRAME_INTERVAL, VIDEO_BITRATE
from .errors import (
    ConversionCancelled,
    EncoderError,
    EncoderUnsupportedError,
    NoFramesError,
)
from .progress import ENCODING, ProgressReporter, band_percent
from .step2_convert_to_ascii import RenderedFrame

logger = logging.getLogger(__name__)

FORMAT_PRIMARY = "primary"
FORMAT_FALLBACK = "fallback"

VIDEO_CODEC_PREFERENCE = ("libx264", "h264", "mpeg4")
AUDIO_CODEC_PREFERENCE = ("aac",)

FALLBACK_FOURCC = "MJPG"

_EXTENSIONS = {FORMAT_PRIMARY: "mp4", FORMAT_FALLBACK: "avi"}
_MIME_TYPES = {FORMAT_PRIMARY: "video/mp4", FORMAT_FALLBACK: "video/x-msvideo"}


@dataclass(frozen=True)
class EncoderCapabilities:
    """
    Encoders available on this platform.

    A video_codec of None means the primary path cannot run. An
    audio_sample_rates of None means the audio codec takes any rate.
    """

    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    audio_sample_rates: Optional[frozenset] = None
    max_audio_channels: int = 2

    @property
    def primary_available(self) -> bool:
        return self.video_codec is not None

    def audio_config_supported(self, sample_rate: int, channels: int) -> bool:
        if self.audio_codec is None:
            return False
        if not 1 <= channels <= self.max_audio_channels:
            return False
        return self.audio_sample_rates is None or sample_rate in self.audio_sample_rates


def _encoder(name: str) -> Optional[Codec]:
    try:
        return Codec(name, "w")
    except ValueError:
        return None


def probe_capabilities() -> EncoderCapabilities:
    """Look up which PyAV encoders this build of FFmpeg provides."""
    video_codec = next(
        (name for name in VIDEO_CODEC_PREFERENCE if _encoder(name) is not None), None
    )

    audio_codec = None
    audio_rates = None
    for name in AUDIO_CODEC_PREFERENCE:
        codec = _encoder(name)
        if codec is not None:
            audio_codec = name
            audio_rates = frozenset(codec.audio_rates) if codec.audio_rates else None
            break

    capabilities = EncoderCapabilities(video_codec, audio_codec, audio_rates)
    logger.debug("Encoder capabilities: %s", capabilities)
    return capabilities


@dataclass
class EncodeResult:
    container_bytes: bytes
    format: str
    width: int
    height: int
    fps: float
    frames: list[RenderedFrame]
    has_audio: bool = False

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self.format]

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES[self.format]


def frame_timestamp_us(index: int, fps: float) -> int:
    return round(index * 1_000_000 / fps)


def frame_duration_us(fps: float) -> float:
    return 1_000_000 / fps


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ConversionCancelled("Conversion cancelled during encoding")


class PrimaryEncoder:
    """
    MP4 encoder with explicit per-frame timestamps and an optional AAC track.

    Video frame i gets pts i in a 1/fps time base; audio is fed in windows
    interleaved with the video by timestamp.
    """

    def __init__(
        self,
        capabilities: EncoderCapabilities,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if not capabilities.primary_available:
            raise EncoderUnsupportedError("No video encoder available")
        self._caps = capabilities
        self._reporter = reporter
        self._cancel_event = cancel_event
        self._audio_failed = False

    def encode(
        self,
        frames: Sequence[RenderedFrame],
        fps: float,
        audio: Optional[AudioTrack] = None,
    ) -> tuple[bytes, bool]:
        """
        Returns:
            (container bytes, whether an audio track was written)
        """
        width, height = frames[0].width, frames[0].height

        # Decide on the audio track before the muxer exists
        use_audio = audio is not None and self._caps.audio_config_supported(
            audio.sample_rate, audio.number_of_channels
        )
        if audio is not None and not use_audio:
            logger.warning(
                "Audio config %d Hz x%d not supported by %s, writing video only",
                audio.sample_rate, audio.number_of_channels, self._caps.audio_codec,
            )
        self._audio_failed = False

        buffer = io.BytesIO()
        with av.open(buffer, mode="w", format="mp4") as container:
            video_stream = self._add_video_stream(container, width, height, fps)
            audio_stream = self._add_audio_stream(container, audio) if use_audio else None

            windows = iter_audio_windows(audio) if audio_stream is not None else iter(())
            pending = next(windows, None)
            video_end_us = frame_timestamp_us(len(frames), fps)
            duration_us = frame_duration_us(fps)

            for index, rendered in enumerate(frames):
                _check_cancel(self._cancel_event)

                frame_end_us = frame_timestamp_us(index, fps) + duration_us
                while pending is not None and not self._audio_failed and pending.timestamp_us < frame_end_us:
                    if pending.timestamp_us < video_end_us:
                        self._feed_audio(container, audio_stream, pending, audio)
                    pending = next(windows, None)

                self._feed_video(container, video_stream, rendered, index)

                if self._reporter is not None:
                    self._reporter.report(
                        ENCODING,
                        band_percent(index + 1, len(frames), 90, 10),
                        current=index + 1,
                        total=len(frames),
                    )

            # Flush audio first, then video
            if audio_stream is not None and not self._audio_failed:
                self._flush_audio(container, audio_stream)
            try:
                for packet in video_stream.encode():
                    container.mux(packet)
            except (FFmpegError, ValueError, OSError) as exc:
                raise EncoderError(f"Video encoder failed while flushing: {exc}") from exc

        has_audio = audio_stream is not None and not self._audio_failed
        return buffer.getvalue(), has_audio

    def _add_video_stream(self, container, width: int, height: int, fps: float):
        rate = Fraction(fps).limit_denominator(1000)
        try:
            stream = container.add_stream(self._caps.video_codec, rate=rate)
        except (FFmpegError, ValueError) as exc:
            raise EncoderUnsupportedError(
                f"Cannot configure {self._caps.video_codec}: {exc}"
            ) from exc
        stream.width = width
        stream.height = height
        stream.pix_fmt = "yuv420p"
        stream.time_base = 1 / rate
        stream.codec_context.bit_rate = VIDEO_BITRATE
        stream.codec_context.gop_size = KEYFRAME_INTERVAL

        logger.info(
            "PyAV encoder: %s %dx%d @ %s fps", self._caps.video_codec, width, height, rate
        )
        return stream

    def _add_audio_stream(self, container, audio: AudioTrack):
        stream = container.add_stream(self._caps.audio_codec, rate=audio.sample_rate)
        stream.layout = audio.layout
        stream.time_base = Fraction(1, audio.sample_rate)
        logger.info(
            "Audio track: %s %d Hz %s", self._caps.audio_codec, audio.sample_rate, audio.layout
        )
        return stream

    def _feed_video(self, container, stream, rendered: RenderedFrame, index: int) -> None:
        try:
            self._encode_video_frame(container, stream, rendered, index)
        except (FFmpegError, ValueError, OSError) as exc:
            if index == 0:
                # Nothing has been written yet; the codec could not be opened
                raise EncoderUnsupportedError(
                    f"{self._caps.video_codec} rejected the first frame: {exc}"
                ) from exc
            raise EncoderError(f"Video encoding failed at frame {index}: {exc}") from exc

    def _encode_video_frame(self, container, stream, rendered: RenderedFrame, index: int) -> None:
        av_frame = av.VideoFrame.from_ndarray(rendered.to_array(), format="rgb24")
        av_frame.pts = index
        # Forced key frames; gop_size alone is only an upper bound
        if index % KEYFRAME_INTERVAL == 0:
            av_frame.pict_type = PictureType.I
        for packet in stream.encode(av_frame):
            container.mux(packet)

    def _feed_audio(self, container, stream, window, audio: AudioTrack) -> None:
        try:
            self._encode_audio_window(container, stream, window, audio)
        except (FFmpegError, ValueError, RuntimeError, OSError) as exc:
            logger.warning("Audio encoder failed, continuing without audio: %s", exc)
            self._audio_failed = True

    def _encode_audio_window(self, container, stream, window, audio: AudioTrack) -> None:
        av_frame = av.AudioFrame.from_ndarray(
            window.interleaved.reshape(1, -1), format="flt", layout=audio.layout
        )
        av_frame.sample_rate = audio.sample_rate
        av_frame.time_base = Fraction(1, audio.sample_rate)
        av_frame.pts = window.sample_offset
        for packet in stream.encode(av_frame):
            container.mux(packet)

    def _flush_audio(self, container, stream) -> None:
        try:
            for packet in stream.encode():
                container.mux(packet)
        except (FFmpegError, ValueError, RuntimeError, OSError) as exc:
            logger.warning("Audio encoder failed while flushing: %s", exc)
            self._audio_failed = True


class FallbackEncoder:
    """
    Writes frames at a fixed cadence with cv2.VideoWriter (MJPG in AVI).

    No audio. The last frame is held for a short settle period so it is
    not cut off at the end of the recording.
    """

    def __init__(
        self,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._reporter = reporter
        self._cancel_event = cancel_event

    def encode(self, frames: Sequence[RenderedFrame], fps: float) -> bytes:
        width, height = frames[0].width, frames[0].height
        total_frames = len(frames)

        with tempfile.TemporaryDirectory(prefix="asciivid_") as temp_dir:
            output_video = os.path.join(temp_dir, "output.avi")

            fourcc = cv2.VideoWriter_fourcc(*FALLBACK_FOURCC)
            out = cv2.VideoWriter(output_video, fourcc, fps, (width, height))

            if not out.isOpened():
                raise EncoderError(f"Could not create video writer for: {output_video}")

            logger.info("OpenCV fallback encoder: %dx%d @ %s fps", width, height, fps)

            try:
                frame = None
                for i, rendered in enumerate(frames):
                    _check_cancel(self._cancel_event)

                    frame = cv2.cvtColor(rendered.to_array(), cv2.COLOR_RGB2BGR)
                    out.write(frame)

                    if self._reporter is not None:
                        self._reporter.report(
                            ENCODING,
                            band_percent(i + 1, total_frames, 90, 10),
                            current=i + 1,
                            total=total_frames,
                        )

                for _ in range(FALLBACK_SETTLE_FRAMES):
                    out.write(frame)
            finally:
                out.release()

            # Verify output file was created
            if not os.path.exists(output_video) or os.path.getsize(output_video) == 0:
                raise EncoderError("Failed to create output video")

            with open(output_video, "rb") as f:
                return f.read()


class ContainerEncoder:
    """
    Encodes rendered frames, choosing the primary or fallback path once
    from the platform's EncoderCapabilities.
    """

    def __init__(
        self,
        capabilities: EncoderCapabilities,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.capabilities = capabilities
        self._reporter = reporter

    def encode(
        self,
        frames: Sequence[RenderedFrame],
        fps: float,
        audio: Optional[AudioTrack] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EncodeResult:
        if not frames:
            raise NoFramesError("No frames to encode")
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")

        width, height = frames[0].width, frames[0].height
        if self._reporter is not None:
            self._reporter.report(ENCODING, 90)

        if self.capabilities.primary_available:
            encoder = PrimaryEncoder(self.capabilities, self._reporter, cancel_event)
            try:
                data, has_audio = encoder.encode(frames, fps, audio)
            except EncoderUnsupportedError as exc:
                logger.warning("Primary encoder unavailable, using fallback: %s", exc)
            else:
                return EncodeResult(data, FORMAT_PRIMARY, width, height, fps, list(frames), has_audio)
        else:
            logger.info("No primary video encoder, using fallback")

        if audio is not None:
            logger.warning("Fallback encoder does not support audio, writing video only")
        data = FallbackEncoder(self._reporter, cancel_event).encode(frames, fps)
        return EncodeResult(data, FORMAT_FALLBACK, width, height, fps, list(frames), False)
