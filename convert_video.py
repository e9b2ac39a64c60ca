"""
Main script: Convert a video to ASCII art video

This script runs all three steps in sequence:
1. Sample frames from the input video at the target FPS
2. Convert each frame to colored ASCII art
3. Encode the ASCII frames (and optionally the original audio) into a video
"""

import argparse
import logging
import os
from pathlib import Path

from asciivid.config import (
    ASCII_CHARS,
    DEFAULT_ASCII_WIDTH,
    DEFAULT_FPS,
    NOISE_LEVEL,
    WHITE_THRESHOLD,
    RenderConfig,
)
from asciivid.errors import ConversionError
from asciivid.pipeline import AsciiVideoConverter
from asciivid.progress import ProgressEvent
from asciivid.step3_encode_video import EncodeResult

_BANNERS = {
    "extracting": "STEP 1: Extracting frames from video",
    "converting": "STEP 2: Converting frames to ASCII art",
    "encoding": "STEP 3: Encoding ASCII frames into video",
    "complete": "CONVERSION COMPLETE!",
}


class ConsoleProgress:
    """Prints step banners and periodic frame counts."""

    def __init__(self):
        self._stage = None

    def __call__(self, event: ProgressEvent) -> None:
        if event.stage != self._stage:
            self._stage = event.stage
            banner = _BANNERS.get(event.stage)
            if banner:
                print()
                print("=" * 60)
                print(banner)
                print("=" * 60)

        if event.current is None or event.total is None:
            return
        # Progress indicator
        if event.current % 10 == 0 or event.current == event.total:
            print(f"  Processed {event.current}/{event.total} frames ({event.percent}%)")


def output_path_for(input_video: str, output_video: str | None, result: EncodeResult) -> Path:
    """
    Where to write the result, with the extension of the format that actually ran.
    """
    if output_video is None:
        input_path = Path(input_video)
        return Path(f"{input_path.stem}_ascii.{result.extension}")
    return Path(output_video).with_suffix(f".{result.extension}")


def save_frames(result: EncodeResult, frames_dir: str) -> None:
    output_path = Path(frames_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    for i, frame in enumerate(result.frames):
        (output_path / f"ascii_{i:06d}.png").write_bytes(frame.png)
    print(f"Saved {len(result.frames)} ASCII frames to {frames_dir}")


def convert_video_to_ascii(
    input_video: str,
    output_video: str | None = None,
    fps: int = DEFAULT_FPS,
    ascii_width: int = DEFAULT_ASCII_WIDTH,
    render_config: RenderConfig | None = None,
    include_audio: bool = False,
    keep_frames: str | None = None,
) -> Path:
    """
    Convert a video to ASCII art video.

    Args:
        input_video: Path to input video file
        output_video: Path for output ASCII video (default: <input>_ascii.<ext>)
        fps: Target FPS (default: 15)
        ascii_width: Number of ASCII characters per row (default: 120)
        render_config: Glyph ramp, noise and threshold settings
        include_audio: Carry the original audio track
        keep_frames: Directory to also save the rendered PNG frames in

    Returns:
        Path of the written video
    """
    converter = AsciiVideoConverter(render_config, on_progress=ConsoleProgress())
    result = converter.convert(input_video, fps, ascii_width, include_audio)

    destination = output_path_for(input_video, output_video, result)
    destination.write_bytes(result.container_bytes)

    file_size = len(result.container_bytes) / (1024 * 1024)
    print(f"Output video: {destination} ({file_size:.2f} MB)")
    print(f"Resolution: {result.width}x{result.height} @ {result.fps} fps")
    print(f"Encoder: {result.format}, audio: {'yes' if result.has_audio else 'no'}")

    if keep_frames:
        save_frames(result, keep_frames)
    return destination


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert a video to ASCII art video",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  uv run convert_video.py input.mp4
  uv run convert_video.py input.mp4 --output ascii_output.mp4
  uv run convert_video.py input.mp4 --width 80 --fps 10 --audio
  uv run convert_video.py input.mp4 --chars "@%#*+=-: " --noise 0
  uv run convert_video.py input.mp4 --keep-frames ascii_frames
        """
    )
    parser.add_argument("input_video", help="Path to input video file")
    parser.add_argument(
        "--output",
        default=None,
        help="Output video file path (default: input_ascii.mp4)"
    )
    parser.add_argument(
        "--fps",
        type=int,
        default=DEFAULT_FPS,
        help=f"Target FPS for conversion, 1-30 (default: {DEFAULT_FPS})"
    )
    parser.add_argument(
        "--width",
        type=int,
        default=DEFAULT_ASCII_WIDTH,
        help=f"Number of ASCII characters per row, 40-240 (default: {DEFAULT_ASCII_WIDTH})"
    )
    parser.add_argument(
        "--chars",
        default=ASCII_CHARS,
        help=f"Characters ordered dark to light; the last is never drawn (default: '{ASCII_CHARS}')"
    )
    parser.add_argument(
        "--noise",
        type=int,
        default=round(NOISE_LEVEL * 100),
        help=f"Chance in percent of shifting a character, 0-100 (default: {round(NOISE_LEVEL * 100)})"
    )
    parser.add_argument(
        "--threshold",
        type=int,
        default=WHITE_THRESHOLD,
        help=f"Brightness at which pixels are left blank, 0-255 (default: {WHITE_THRESHOLD})"
    )
    parser.add_argument(
        "--no-contrast",
        action="store_true",
        help="Do not stretch each frame's brightness range"
    )
    parser.add_argument(
        "--audio",
        action="store_true",
        help="Include the original audio track (MP4 output only)"
    )
    parser.add_argument(
        "--keep-frames",
        default=None,
        metavar="DIR",
        help="Also save the rendered ASCII frames as PNG files"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug logging"
    )
    return parser


def validate_args(args: argparse.Namespace) -> str | None:
    if not os.path.exists(args.input_video):
        return f"Input video not found: {args.input_video}"
    if not 1 <= args.fps <= 30:
        return "FPS must be between 1 and 30"
    if not 40 <= args.width <= 240:
        return "Width must be between 40 and 240"
    if not 0 <= args.noise <= 100:
        return "Noise must be between 0 and 100"
    return None


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    error = validate_args(args)
    if error:
        print(f"Error: {error}")
        return 1

    try:
        render_config = RenderConfig(
            glyph_ramp=args.chars,
            noise_level=args.noise / 100,
            white_threshold=args.threshold,
            maximize_contrast=not args.no_contrast,
        )
        convert_video_to_ascii(
            args.input_video,
            args.output,
            args.fps,
            args.width,
            render_config,
            args.audio,
            args.keep_frames,
        )
        return 0
    except (ConversionError, ValueError, OSError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    exit(main())
