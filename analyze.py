#!/usr/bin/env python3
"""
Dominant color analysis for image files.

Decodes an image at full resolution, runs the extraction engine and
renders the palette as text or JSON.
"""

import argparse
import io
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
from PIL import Image

from extract_colors import (
    ColorResult, EnvironmentUnavailable, ExtractionOptions, ImageDecodeError,
    extract_colors,
)


# =============================================================================
# Constants
# =============================================================================

# Image size limits (security: prevent decompression bombs)
MAX_IMAGE_PIXELS = 50_000_000  # 50 megapixels
MAX_IMAGE_DIMENSION = 10_000  # 10k pixels per side

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Route engine stage summaries to stderr when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


# =============================================================================
# Image Loading
# =============================================================================

@dataclass
class PixelBuffer:
    """Decoded image: uint8 RGBA array of shape (height, width, 4)."""
    pixels: np.ndarray
    width: int
    height: int


def _open_image(source) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, (bytes, bytearray, memoryview)):
        source = io.BytesIO(bytes(source))

    try:
        return Image.open(source)
    except FileNotFoundError:
        raise FileNotFoundError(f"Image not found: {source}")
    except Exception as e:
        raise ImageDecodeError(f"Could not open image: {e}") from e


def load_pixels(source) -> PixelBuffer:
    """
    Decode an image into a full-resolution RGBA pixel buffer.

    Args:
        source: File path, raw encoded bytes, binary file object, or an
            already opened PIL image

    Raises:
        FileNotFoundError: If the image file doesn't exist
        ImageDecodeError: If the data is not a readable image or exceeds size limits
        EnvironmentUnavailable: If Pillow has no decoder for the image's codec
    """
    img = _open_image(source)

    # Validate image dimensions (security: prevent decompression bombs)
    width, height = img.size
    if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
        raise ImageDecodeError(
            f"Image dimensions {width}x{height} exceed maximum "
            f"{MAX_IMAGE_DIMENSION}x{MAX_IMAGE_DIMENSION}"
        )
    if width * height > MAX_IMAGE_PIXELS:
        raise ImageDecodeError(
            f"Image has {width * height:,} pixels, exceeding maximum {MAX_IMAGE_PIXELS:,}"
        )

    try:
        img.load()
    except OSError as e:
        if 'not available' in str(e):
            raise EnvironmentUnavailable(f"No pixel decoder for image: {e}") from e
        raise ImageDecodeError(f"Could not decode image: {e}") from e
    except Exception as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e

    pixels = np.array(img.convert('RGBA'), dtype=np.uint8)
    return PixelBuffer(pixels=pixels, width=width, height=height)


# =============================================================================
# Pipeline
# =============================================================================

def analyze_image(source, options: Optional[ExtractionOptions] = None,
                  **overrides) -> list[ColorResult]:
    """Load an image and return its dominant colors."""
    buffer = load_pixels(source)
    return extract_colors(buffer.pixels, buffer.width, buffer.height, options, **overrides)


def extract_colors_from_image(source, color_count: int = 5) -> list[str]:
    """Return just the hex codes of an image's dominant colors."""
    return [result.color for result in analyze_image(source, max_colors=color_count)]


# =============================================================================
# Render
# =============================================================================

def render(results: list[ColorResult], image_name: str = '') -> str:
    """Render a palette as plain text, one color per line."""
    lines = []
    if image_name:
        lines.append(f"IMAGE: {image_name}")
    lines.append(f"Dominant colors: {len(results)}")
    lines.append("")

    for i, result in enumerate(results, 1):
        L, a, b = result.lab
        lines.append(
            f"{i:2d}. {result.color} | RGB{result.rgb} | LAB({L:.0f}, {a:.0f}, {b:.0f}) | "
            f"{result.frequency:5.1f}% | merged {result.cluster_size}"
        )

    if not results:
        lines.append("  (no opaque pixels)")

    return "\n".join(lines)


def render_json(results: list[ColorResult]) -> str:
    return json.dumps([result.to_dict() for result in results], indent=2)


# =============================================================================
# CLI
# =============================================================================

def build_parser(description: str):
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        '--max-colors', '-n',
        type=int,
        default=ExtractionOptions.max_colors,
        help='Maximum number of colors to report (default: %(default)s)'
    )
    parser.add_argument(
        '--grid-cell-size',
        type=int,
        default=ExtractionOptions.grid_cell_size,
        help='Edge length of a grid cell in pixels (default: %(default)s)'
    )
    parser.add_argument(
        '--min-frequency',
        type=float,
        default=ExtractionOptions.min_frequency_percent,
        help='Drop colors covering less than this percent (default: %(default)s)'
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=1,
        help='Threads used to count grid cells (default: %(default)s)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Log each extraction stage to stderr'
    )
    return parser


def options_from_args(args) -> ExtractionOptions:
    return ExtractionOptions(
        max_colors=args.max_colors,
        grid_cell_size=args.grid_cell_size,
        min_frequency_percent=args.min_frequency,
        workers=args.workers,
    ).validate()


def main(argv=None):
    parser = build_parser('Extract the dominant colors of an image.')
    parser.add_argument(
        '--input', '-i',
        required=True,
        help='Path to the image file'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the palette as JSON instead of text'
    )
    parser.add_argument(
        '--output', '-o',
        nargs='?',
        const=True,
        default=None,
        help='Write a JSON report. Optionally specify path, otherwise auto-names from input.'
    )

    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    image_path = Path(args.input)

    try:
        options = options_from_args(args)
        results = analyze_image(str(image_path), options)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error analyzing image: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(render_json(results))
    else:
        print(render(results, image_path.name))

    if args.output:
        if args.output is True:
            output_path = image_path.with_name(f"{image_path.stem}-palette.json")
        else:
            output_path = Path(args.output)

        try:
            output_path.write_text(render_json(results))
            print(f"\nWrote: {output_path}")
        except OSError as e:
            print(f"Error writing output: {e}", file=sys.stderr)
            sys.exit(1)


if __name__ == '__main__':
    main()
