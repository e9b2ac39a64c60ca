"""
Step 2: Convert frames to ASCII art based on color gradients
"""

import io
import logging
import math
import random
from dataclasses import dataclass
from typing import NamedTuple, Optional

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .config import RenderConfig

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])

BACKGROUND_COLOR = (255, 255, 255)

FONT_CANDIDATES = (
    "/System/Library/Fonts/Menlo.ttc",
    "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
)


class Cell(NamedTuple):
    character: Optional[str]
    color: tuple[int, int, int]


AsciiFrame = tuple[tuple[Cell, ...], ...]


@dataclass(frozen=True)
class RenderedFrame:
    """A rasterized ASCII frame stored as PNG bytes."""

    png: bytes
    width: int
    height: int

    def to_image(self) -> Image.Image:
        return Image.open(io.BytesIO(self.png)).convert("RGB")

    def to_array(self) -> np.ndarray:
        return np.asarray(self.to_image())


def brightness(r: float, g: float, b: float) -> float:
    """Perceived brightness using the BT.601 luminance formula (no gamma)."""
    return 0.299 * r + 0.587 * g + 0.114 * b


def get_color_ascii_char(
    r: int,
    g: int,
    b: int,
    config: RenderConfig,
    rng: Optional[random.Random] = None,
) -> Cell:
    """
    Get ASCII character based on pixel brightness while preserving color.

    Args:
        r, g, b: RGB values
        config: Glyph ramp, threshold and noise settings
        rng: Random source for dithering (default: module random)

    Returns:
        Cell with the glyph (None for white) and the unmodified color
    """
    level = brightness(r, g, b)

    # Skip very bright pixels (will show as white background)
    if level >= config.white_threshold:
        return Cell(None, (r, g, b))

    ramp = config.glyph_ramp
    # The last ramp entry is reserved and never selected
    last_index = len(ramp) - 2
    char_index = math.floor(level / config.white_threshold * (len(ramp) - 1))
    char_index = max(0, min(last_index, char_index))

    # Randomly shift by -1 or +1 for an animated effect
    if config.noise_level > 0 and len(ramp) > 2:
        rng = rng or random
        if rng.random() < config.noise_level:
            shift = rng.choice((-1, 1))
            char_index = max(0, min(last_index, char_index + shift))

    return Cell(ramp[char_index], (r, g, b))


def maximize_contrast(grid: np.ndarray) -> np.ndarray:
    """
    Stretch a frame's brightness range to 0-255.

    Every pixel is scaled by newL / L so channel ratios (hue) are kept.
    A flat frame, where all pixels share one brightness, is returned unchanged.

    Args:
        grid: RGB image, uint8 (height, width, 3)

    Returns:
        New contrast-enhanced RGB image; the input is not modified
    """
    pixels = grid.astype(np.float64)
    levels = pixels @ LUMA_WEIGHTS

    min_l = levels.min()
    max_l = levels.max()
    if max_l == min_l:
        return grid.copy()

    value_range = max(max_l - min_l, 1.0)
    stretched = (levels - min_l) / value_range * 255
    factor = np.ones_like(levels)
    np.divide(stretched, levels, out=factor, where=levels > 0)

    pixels *= factor[..., np.newaxis]
    return np.clip(np.rint(pixels), 0, 255).astype(np.uint8)


def ascii_dimensions(
    source_width: int,
    source_height: int,
    ascii_width: int,
    config: RenderConfig,
) -> tuple[int, int]:
    """
    Character grid size for a source, keeping its aspect ratio.

    Character cells are taller than wide, so the row count is scaled down
    by the cell aspect.
    """
    if ascii_width < 1:
        raise ValueError(f"ascii_width must be positive, got {ascii_width}")
    aspect_ratio = source_height / source_width
    char_aspect = config.cell_height / config.cell_width
    ascii_height = math.floor(ascii_width * aspect_ratio / char_aspect)
    return ascii_width, max(1, ascii_height)


def downsample(pixels: np.ndarray, ascii_width: int, ascii_height: int) -> np.ndarray:
    """Resize a frame to one pixel per character cell."""
    return cv2.resize(pixels, (ascii_width, ascii_height))


def image_to_ascii(
    grid: np.ndarray,
    config: RenderConfig,
    rng: Optional[random.Random] = None,
) -> AsciiFrame:
    """Classify every pixel of a character-grid sized image."""
    return tuple(
        tuple(get_color_ascii_char(r, g, b, config, rng) for r, g, b in row)
        for row in grid.tolist()
    )


def load_font(size: int):
    # Try to load a monospace font
    for path in FONT_CANDIDATES:
        try:
            return ImageFont.truetype(path, size)
        except (IOError, OSError):
            continue
    logger.debug("No monospace TrueType font found, using Pillow default")
    return ImageFont.load_default()


def render_ascii_frame(
    ascii_frame: AsciiFrame,
    config: RenderConfig,
    font=None,
) -> Image.Image:
    """
    Draw an ASCII frame onto a white canvas.

    Background cells are skipped so the canvas shows through.

    Args:
        ascii_frame: Rows of cells
        config: Cell dimensions and font size
        font: Pillow font (default: load_font(config.font_size))

    Returns:
        PIL Image of the colored ASCII art
    """
    if font is None:
        font = load_font(config.font_size)

    rows = len(ascii_frame)
    cols = len(ascii_frame[0]) if rows else 0

    img_width = cols * config.cell_width
    img_height = rows * config.cell_height
    ascii_image = Image.new("RGB", (img_width, img_height), BACKGROUND_COLOR)
    draw = ImageDraw.Draw(ascii_image)

    for y, row in enumerate(ascii_frame):
        for x, (char, color) in enumerate(row):
            if char is None:
                continue

            pos_x = x * config.cell_width
            pos_y = y * config.cell_height
            draw.text((pos_x, pos_y), char, font=font, fill=color)

    return ascii_image


def rasterize(
    ascii_frame: AsciiFrame,
    config: RenderConfig,
    font=None,
) -> RenderedFrame:
    """Render an ASCII frame and encode it as PNG."""
    image = render_ascii_frame(ascii_frame, config, font)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", compress_level=1)
    return RenderedFrame(buffer.getvalue(), image.width, image.height)


def frame_to_ascii(
    grid: np.ndarray,
    config: RenderConfig,
    rng: Optional[random.Random] = None,
) -> AsciiFrame:
    """Contrast stretch (if enabled) and classify one character grid."""
    if config.maximize_contrast:
        grid = maximize_contrast(grid)
    return image_to_ascii(grid, config, rng)

