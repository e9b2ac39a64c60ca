"""
Decode a video's audio track into float PCM
"""

import logging
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

import av
import numpy as np
from av.error import FFmpegError

from .config import AUDIO_WINDOW_MS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioTrack:
    """Planar float PCM, shape (channels, samples), values in [-1, 1]."""

    samples: np.ndarray
    sample_rate: int

    @property
    def number_of_channels(self) -> int:
        return self.samples.shape[0]

    @property
    def sample_count(self) -> int:
        return self.samples.shape[1]

    @property
    def duration(self) -> float:
        return self.sample_count / self.sample_rate

    @property
    def layout(self) -> str:
        return "mono" if self.number_of_channels == 1 else "stereo"


@dataclass(frozen=True)
class AudioWindow:
    """A slice of audio with channels interleaved (L R L R ...)."""

    timestamp_us: int
    sample_offset: int
    sample_count: int
    interleaved: np.ndarray


def extract_audio(
    input_video: str,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[AudioTrack]:
    """
    Decode the first audio stream of a file.

    Audio is best effort: a missing stream, a decode error or cancellation
    returns None instead of raising.

    Args:
        input_video: Path to the source file
        cancel_event: Checked between decoded frames

    Returns:
        AudioTrack at the source sample rate (mono or stereo), or None
    """
    try:
        with av.open(input_video) as container:
            if not container.streams.audio:
                logger.info("No audio track in %s", input_video)
                return None

            stream = container.streams.audio[0]
            sample_rate = stream.codec_context.sample_rate
            channels = len(stream.codec_context.layout.channels)
            layout = "mono" if channels == 1 else "stereo"
            resampler = av.AudioResampler(format="fltp", layout=layout, rate=sample_rate)

            chunks = []
            for frame in container.decode(stream):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Audio extraction cancelled")
                    return None
                for resampled in resampler.resample(frame):
                    chunks.append(resampled.to_ndarray())
            for resampled in resampler.resample(None):
                chunks.append(resampled.to_ndarray())
    except (FFmpegError, OSError, ValueError) as exc:
        logger.warning("Could not decode audio from %s: %s", input_video, exc)
        return None

    if not chunks:
        logger.info("Audio track in %s decoded to no samples", input_video)
        return None

    samples = np.clip(np.concatenate(chunks, axis=1), -1.0, 1.0).astype(np.float32)
    track = AudioTrack(samples, sample_rate)
    logger.info(
        "Decoded audio: %d channel(s), %d Hz, %.2fs",
        track.number_of_channels, track.sample_rate, track.duration,
    )
    return track


def iter_audio_windows(
    track: AudioTrack,
    window_ms: int = AUDIO_WINDOW_MS,
) -> Iterator[AudioWindow]:
    """
    Split a track into fixed windows with interleaved channels.

    Each window is timestamped by the number of samples before it,
    converted to microseconds.
    """
    window_size = max(1, track.sample_rate * window_ms // 1000)
    for offset in range(0, track.sample_count, window_size):
        block = track.samples[:, offset:offset + window_size]
        yield AudioWindow(
            timestamp_us=offset * 1_000_000 // track.sample_rate,
            sample_offset=offset,
            sample_count=block.shape[1],
            interleaved=np.ascontiguousarray(block.T).reshape(-1),
        )
