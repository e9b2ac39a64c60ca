"""
Default settings and the render configuration
"""

from dataclasses import dataclass


# ASCII characters ordered by visual density (dark to light)
# Last character is reserved and never drawn; bright areas are left as background
ASCII_CHARS = "F$V* "

# Brightness threshold - pixels at or above this are considered "white" and skipped
WHITE_THRESHOLD = 240

# Probability that a glyph is shifted one step along the ramp
NOISE_LEVEL = 0.15

# Character dimensions for monospace font rendering
CHAR_WIDTH = 10
CHAR_HEIGHT = 18
FONT_SIZE = 14

DEFAULT_FPS = 15
DEFAULT_ASCII_WIDTH = 120

# Encoder settings
VIDEO_BITRATE = 5_000_000
KEYFRAME_INTERVAL = 30
AUDIO_WINDOW_MS = 100
FALLBACK_SETTLE_FRAMES = 2


@dataclass(frozen=True)
class RenderConfig:
    """
    How a sampled frame is turned into colored ASCII art.

    Args:
        glyph_ramp: Glyphs ordered dark to light; the last one is never used
        noise_level: Probability (0-1) of shifting a glyph by one ramp step
        white_threshold: Brightness (0-255) at which a pixel becomes background
        cell_width, cell_height: Size of one character cell in pixels
        font_size: Point size of the monospace font
        maximize_contrast: Stretch each frame's brightness to the full range
    """

    glyph_ramp: str = ASCII_CHARS
    noise_level: float = NOISE_LEVEL
    white_threshold: int = WHITE_THRESHOLD
    cell_width: int = CHAR_WIDTH
    cell_height: int = CHAR_HEIGHT
    font_size: int = FONT_SIZE
    maximize_contrast: bool = True

    def __post_init__(self):
        if len(self.glyph_ramp) < 2:
            raise ValueError("glyph_ramp needs at least 2 characters")
        if not 0.0 <= self.noise_level <= 1.0:
            raise ValueError(f"noise_level must be between 0 and 1, got {self.noise_level}")
        if not 0 <= self.white_threshold <= 255:
            raise ValueError(f"white_threshold must be between 0 and 255, got {self.white_threshold}")
        if self.cell_width < 1 or self.cell_height < 1:
            raise ValueError("cell dimensions must be positive")
        if self.font_size < 1:
            raise ValueError("font_size must be positive")
