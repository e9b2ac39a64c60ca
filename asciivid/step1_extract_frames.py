"""
Step 1: Sample frames from a video at a fixed target FPS
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Iterator, Optional, Protocol

import cv2
import numpy as np

from .errors import ConversionCancelled, SourceError
from .progress import EXTRACTING, ProgressReporter, band_percent

logger = logging.getLogger(__name__)

# Read forward instead of seeking when the target is at most this many frames ahead
MAX_FORWARD_GRAB = 30


class VideoSource(Protocol):
    """A decoded video that can be read at arbitrary timestamps."""

    width: int
    height: int
    duration: float

    def read_at(self, timestamp: float) -> np.ndarray:
        """Return the RGB frame shown at ``timestamp`` seconds."""
        ...

    def close(self) -> None:
        ...


@dataclass(frozen=True)
class Frame:
    index: int
    timestamp: float
    pixels: np.ndarray


class OpenCVVideoSource:
    """VideoSource backed by cv2.VideoCapture."""

    def __init__(self, input_video: str):
        self._cap = cv2.VideoCapture(input_video)
        if not self._cap.isOpened():
            raise SourceError(f"Could not open video file: {input_video}")

        self.fps = self._cap.get(cv2.CAP_PROP_FPS)
        self.frame_count = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT))
        self.width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

        if self.fps <= 0 or self.frame_count <= 0:
            self._cap.release()
            raise SourceError(f"Could not determine duration of: {input_video}")
        if self.width <= 0 or self.height <= 0:
            self._cap.release()
            raise SourceError(f"Could not determine resolution of: {input_video}")

        self.duration = self.frame_count / self.fps
        # Index of the frame the next read() will return
        self._position = 0

        logger.info(
            "Video properties: %dx%d, %.3f fps, %d frames, %.2fs",
            self.width, self.height, self.fps, self.frame_count, self.duration,
        )

    def read_at(self, timestamp: float) -> np.ndarray:
        target = min(int(timestamp * self.fps + 1e-6), self.frame_count - 1)

        ahead = target - self._position
        if 0 <= ahead <= MAX_FORWARD_GRAB:
            for _ in range(ahead):
                if not self._cap.grab():
                    raise SourceError(f"Could not read frame {self._position}")
                self._position += 1
        else:
            if not self._cap.set(cv2.CAP_PROP_POS_FRAMES, target):
                raise SourceError(f"Could not seek to {timestamp:.3f}s")
            self._position = target

        ret, frame = self._cap.read()
        if not ret:
            raise SourceError(f"Could not decode frame at {timestamp:.3f}s")
        self._position += 1

        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def close(self) -> None:
        self._cap.release()


def frame_timestamps(duration: float, target_fps: float) -> list[float]:
    """
    Timestamps to sample: k / target_fps for k in 0..floor(duration * target_fps) - 1.
    """
    if target_fps <= 0:
        raise ValueError(f"target_fps must be positive, got {target_fps}")
    total_frames = max(0, math.floor(duration * target_fps))
    return [k / target_fps for k in range(total_frames)]


def extract_frames(
    source: VideoSource,
    target_fps: float,
    reporter: Optional[ProgressReporter] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Iterator[Frame]:
    """
    Sample frames from a video source at the specified FPS.

    Frames are captured one at a time: the seek for the next frame is only
    issued after the consumer has taken the current one.

    Args:
        source: Video to sample
        target_fps: Target frames per second
        reporter: Receives an "extracting" event after every capture
        cancel_event: Checked before every seek

    Yields:
        Frames in timestamp order
    """
    timestamps = frame_timestamps(source.duration, target_fps)
    total_frames = len(timestamps)
    logger.debug("Sampling %d frames at %s fps", total_frames, target_fps)

    for index, timestamp in enumerate(timestamps):
        if cancel_event is not None and cancel_event.is_set():
            raise ConversionCancelled("Conversion cancelled during frame extraction")

        pixels = source.read_at(timestamp)
        pixels.flags.writeable = False

        if reporter is not None:
            reporter.report(
                EXTRACTING,
                band_percent(index + 1, total_frames, 0, 50),
                current=index + 1,
                total=total_frames,
            )

        yield Frame(index, timestamp, pixels)
