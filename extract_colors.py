#!/usr/bin/env python3
"""
Extract dominant colors from a decoded RGBA buffer with exact, area-weighted counting.

Five stages: Grid Partition → Cell Histograms → Weighted Aggregation → Merge → Select
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_COLORS = 5
DEFAULT_GRID_CELL_SIZE = 200  # Edge length of a standard cell, in pixels
DEFAULT_MIN_FREQUENCY = 0.5  # Percent of the image

ALPHA_THRESHOLD = 128  # Pixels with alpha below this are not counted
NOISE_FLOOR = 0.1  # Minimum weighted contribution kept in the normalization base

# Merge thresholds in CIE94 Delta-E
RED_MERGE_THRESHOLD = 1.5
DEFAULT_MERGE_THRESHOLD = 3.0
MERGE_HEADROOM = 3  # Groups kept by the merger = MERGE_HEADROOM * max_colors

# CIE94 graphic arts parameterization
K1 = 0.045
K2 = 0.015
KL = KC = KH = 1.0

# D65 reference white
XN, YN, ZN = 0.95047, 1.0, 1.08883
LAB_EPSILON = 0.008856
LAB_KAPPA = 903.3


RGB = tuple[int, int, int]
LAB = tuple[float, float, float]
TraceHook = Callable[[str, dict], None]
PixelSource = Union[bytes, bytearray, memoryview, np.ndarray]


# =============================================================================
# Errors
# =============================================================================

class ColorExtractionError(Exception):
    """Base class for all extraction failures."""


class InvalidParameters(ColorExtractionError, ValueError):
    """Options, dimensions or buffer size out of range."""


class ImageDecodeError(ColorExtractionError, ValueError):
    """Source image is unreadable, corrupt or exceeds size limits."""


class EnvironmentUnavailable(ColorExtractionError, RuntimeError):
    """No pixel surface can be produced for the image."""


# =============================================================================
# Options
# =============================================================================

def _is_int(value) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool)


@dataclass(frozen=True)
class ExtractionOptions:
    """Per-call extraction settings."""
    max_colors: int = DEFAULT_MAX_COLORS  # Upper bound on returned colors
    grid_cell_size: int = DEFAULT_GRID_CELL_SIZE
    min_frequency_percent: float = DEFAULT_MIN_FREQUENCY
    workers: int = 1  # Threads used to build cell histograms

    def validate(self) -> 'ExtractionOptions':
        """Return self, or raise InvalidParameters if any field is out of range."""
        for name in ('max_colors', 'grid_cell_size', 'workers'):
            value = getattr(self, name)
            if not _is_int(value):
                raise InvalidParameters(f"{name} must be an integer, got {value!r}")

        if self.max_colors < 1:
            raise InvalidParameters(f"max_colors must be at least 1, got {self.max_colors}")
        if self.grid_cell_size <= 0:
            raise InvalidParameters(f"grid_cell_size must be positive, got {self.grid_cell_size}")
        if self.workers < 1:
            raise InvalidParameters(f"workers must be at least 1, got {self.workers}")

        pct = self.min_frequency_percent
        if not _is_number(pct) or not 0 <= pct <= 100:
            raise InvalidParameters(f"min_frequency_percent must be within [0, 100], got {pct!r}")

        return self

    @property
    def merge_cap(self) -> int:
        return MERGE_HEADROOM * self.max_colors


# =============================================================================
# Data Types
# =============================================================================

@dataclass(frozen=True)
class GridSection:
    """Half-open pixel rectangle [start_x, end_x) x [start_y, end_y)."""
    start_x: int
    start_y: int
    end_x: int
    end_y: int

    @property
    def width(self) -> int:
        return self.end_x - self.start_x

    @property
    def height(self) -> int:
        return self.end_y - self.start_y

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass
class CellHistogram:
    """Exact color counts for one grid section."""
    section: GridSection
    counts: dict  # hex -> pixel count, in order of first occurrence
    effective_pixels: int  # Section area minus transparent pixels


@dataclass
class FrequencyEntry:
    """One color of the image-wide frequency map."""
    color: str  # Hex key
    rgb: RGB
    lab: LAB
    weight: float  # Accumulated area-weighted contribution
    frequency: float  # Percentage after normalization


@dataclass
class ColorResult:
    """A representative color and the share of the image it covers."""
    color: str
    rgb: RGB
    lab: LAB
    frequency: float  # Percentage (0-100)
    cluster_size: int  # Number of source colors merged into this one

    def to_dict(self) -> dict:
        r, g, b = self.rgb
        L, a, b_val = self.lab
        return {
            'color': self.color,
            'rgb': {'r': r, 'g': g, 'b': b},
            'lab': {'l': L, 'a': a, 'b': b_val},
            'frequency': self.frequency,
            'clusterSize': self.cluster_size,
        }


# =============================================================================
# Color Conversion
# =============================================================================

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def rgb_to_hex(rgb) -> str:
    """Format an RGB triple as lowercase #rrggbb, clamping to 0-255."""
    r, g, b = (max(0, min(255, round_half_up(c))) for c in rgb)
    return f"#{r:02x}{g:02x}{b:02x}"


def hex_to_rgb(color: str) -> RGB:
    """Parse #rrggbb into an RGB tuple."""
    value = color.lstrip('#')
    if len(value) != 6:
        raise ValueError(f"Expected #rrggbb, got {color!r}")
    return (int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16))


def rgb_to_lab(rgb: np.ndarray) -> np.ndarray:
    """Convert RGB array (0-255) to LAB color space."""
    rgb_norm = np.asarray(rgb, dtype=np.float64).reshape(-1, 3) / 255.0

    # Apply gamma expansion
    mask = rgb_norm > 0.04045
    rgb_linear = np.where(mask, ((rgb_norm + 0.055) / 1.055) ** 2.4, rgb_norm / 12.92)

    # RGB to XYZ matrix
    r, g, b = rgb_linear[:, 0], rgb_linear[:, 1], rgb_linear[:, 2]
    x = r * 0.4124564 + g * 0.3575761 + b * 0.1804375
    y = r * 0.2126729 + g * 0.7151522 + b * 0.0721750
    z = r * 0.0193339 + g * 0.1191920 + b * 0.9503041

    x, y, z = x / XN, y / YN, z / ZN

    fx = np.where(x > LAB_EPSILON, x ** (1/3), (LAB_KAPPA * x + 16) / 116)
    fy = np.where(y > LAB_EPSILON, y ** (1/3), (LAB_KAPPA * y + 16) / 116)
    fz = np.where(z > LAB_EPSILON, z ** (1/3), (LAB_KAPPA * z + 16) / 116)

    L = 116 * fy - 16
    a = 500 * (fx - fy)
    b_val = 200 * (fy - fz)

    return np.column_stack([L, a, b_val])


def rgb_to_lab_tuple(rgb) -> LAB:
    """Convert a single RGB triple to an (L, a, b) tuple of floats."""
    L, a, b = rgb_to_lab(np.array([rgb]))[0]
    return (float(L), float(a), float(b))


def delta_e_cie94(lab1, lab2):
    """
    CIE94 color difference with graphic arts weights.

    The chroma and hue weights are taken from lab1 only, so the result
    is not symmetric: lab1 is the reference color. lab2 may be a single
    color or an (n, 3) array, in which case an array of n distances is
    returned.
    """
    lab1 = np.asarray(lab1, dtype=np.float64)
    lab2 = np.asarray(lab2, dtype=np.float64)

    L1, a1, b1 = lab1[..., 0], lab1[..., 1], lab1[..., 2]
    L2, a2, b2 = lab2[..., 0], lab2[..., 1], lab2[..., 2]

    delta_L = L1 - L2
    c1 = np.sqrt(a1 ** 2 + b1 ** 2)
    c2 = np.sqrt(a2 ** 2 + b2 ** 2)
    delta_C = c1 - c2
    delta_H = np.sqrt(np.maximum(0.0, (a1 - a2) ** 2 + (b1 - b2) ** 2 - delta_C ** 2))

    s_L = 1.0
    s_C = 1.0 + K1 * c1
    s_H = 1.0 + K2 * c1

    distance = np.sqrt(
        (delta_L / (KL * s_L)) ** 2
        + (delta_C / (KC * s_C)) ** 2
        + (delta_H / (KH * s_H)) ** 2
    )
    if np.ndim(distance) == 0:
        return float(distance)
    return distance


# =============================================================================
# Stage 1: Grid Partition
# =============================================================================

def partition_grid(width: int, height: int, cell_size: int = DEFAULT_GRID_CELL_SIZE) -> list[GridSection]:
    """
    Tile the image into cells so that every pixel belongs to exactly one.

    Sections are emitted as: full cells in row-major order, then one
    right-edge cell per full row, then one bottom-edge cell per full
    column, then the corner cell. An image narrower or shorter than one
    cell is a single section.

    Raises:
        InvalidParameters: If any dimension is not positive
    """
    if width <= 0 or height <= 0:
        raise InvalidParameters(f"Image dimensions must be positive, got {width}x{height}")
    if cell_size <= 0:
        raise InvalidParameters(f"grid_cell_size must be positive, got {cell_size}")

    if width < cell_size or height < cell_size:
        return [GridSection(0, 0, width, height)]

    full_cols, rem_width = divmod(width, cell_size)
    full_rows, rem_height = divmod(height, cell_size)
    edge_x = full_cols * cell_size
    edge_y = full_rows * cell_size

    sections = []
    for row in range(full_rows):
        for col in range(full_cols):
            x, y = col * cell_size, row * cell_size
            sections.append(GridSection(x, y, x + cell_size, y + cell_size))

    if rem_width > 0:
        for row in range(full_rows):
            y = row * cell_size
            sections.append(GridSection(edge_x, y, width, y + cell_size))

    if rem_height > 0:
        for col in range(full_cols):
            x = col * cell_size
            sections.append(GridSection(x, edge_y, x + cell_size, height))

    if rem_width > 0 and rem_height > 0:
        sections.append(GridSection(edge_x, edge_y, width, height))

    return sections


# =============================================================================
# Stage 2: Cell Histograms
# =============================================================================

def build_cell_histogram(pixels: np.ndarray, section: GridSection) -> CellHistogram:
    """
    Count every opaque color inside one section.

    Args:
        pixels: Array of shape (height, width, 4), uint8 RGBA
        section: The cell to scan

    Returns:
        CellHistogram whose counts are ordered by first occurrence in a
        row-major scan of the cell.
    """
    cell = pixels[section.start_y:section.end_y, section.start_x:section.end_x].reshape(-1, 4)
    opaque = cell[cell[:, 3] >= ALPHA_THRESHOLD]

    if len(opaque) == 0:
        return CellHistogram(section=section, counts={}, effective_pixels=0)

    # Pack RGB into one integer key per pixel
    rgb = opaque[:, :3].astype(np.uint32)
    keys = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]

    unique_keys, first_index, counts = np.unique(keys, return_index=True, return_counts=True)
    order = np.argsort(first_index, kind='stable')

    histogram = {
        f"#{key:06x}": count
        for key, count in zip(unique_keys[order].tolist(), counts[order].tolist())
    }
    return CellHistogram(section=section, counts=histogram, effective_pixels=len(opaque))


def build_histograms(pixels: np.ndarray, sections: list[GridSection], workers: int = 1) -> list[CellHistogram]:
    """Build one histogram per section, keeping section order."""
    if workers > 1 and len(sections) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(lambda section: build_cell_histogram(pixels, section), sections))
    return [build_cell_histogram(pixels, section) for section in sections]


# =============================================================================
# Stage 3: Weighted Aggregation
# =============================================================================

def aggregate_frequencies(histograms: list[CellHistogram],
                          cell_size: int = DEFAULT_GRID_CELL_SIZE) -> list[FrequencyEntry]:
    """
    Combine per-cell histograms into image-wide percentages.

    Each color's local percentage within a cell is scaled by the cell's
    area relative to a standard cell, so edge and corner cells count in
    proportion to their size. Contributions under the noise floor are
    dropped and the rest are normalized to sum to 100.

    Args:
        histograms: Output of build_cell_histogram for every section
        cell_size: Standard cell edge length used for area weights

    Returns:
        List of FrequencyEntry sorted by frequency descending. Ties keep
        the order in which colors were first seen.
    """
    standard_area = cell_size * cell_size
    weights = {}
    total_area_weight = 0.0

    for histogram in histograms:
        area_weight = histogram.section.area / standard_area
        total_area_weight += area_weight
        if histogram.effective_pixels == 0:
            continue

        for color, count in histogram.counts.items():
            local_pct = count / histogram.effective_pixels * 100
            weights[color] = weights.get(color, 0.0) + local_pct * area_weight

    # Images smaller than one cell scale the floor down with their area
    noise_floor = NOISE_FLOOR * min(1.0, total_area_weight)
    kept = {color: w for color, w in weights.items() if w >= noise_floor}
    total = sum(kept.values())
    if total <= 0:
        return []

    colors = list(kept)
    rgbs = [hex_to_rgb(color) for color in colors]
    labs = rgb_to_lab(np.array(rgbs)).tolist()

    entries = [
        FrequencyEntry(
            color=color,
            rgb=rgb,
            lab=tuple(lab),
            weight=kept[color],
            frequency=kept[color] / total * 100,
        )
        for color, rgb, lab in zip(colors, rgbs, labs)
    ]
    entries.sort(key=lambda e: e.frequency, reverse=True)
    return entries


# =============================================================================
# Stage 4: Conservative Merge
# =============================================================================

def classify_hue(rgb) -> str:
    """Coarse category used only to pick a merge threshold."""
    r, g, b = rgb
    if r > 180 and g < 100 and b < 100:
        return 'red'
    return 'other'


def merge_threshold(rgb) -> float:
    if classify_hue(rgb) == 'red':
        return RED_MERGE_THRESHOLD
    return DEFAULT_MERGE_THRESHOLD


def merge_similar_colors(entries: list, max_groups: int) -> list[ColorResult]:
    """
    Collapse near-duplicate colors into frequency-weighted averages.

    Walks the entries in order (highest frequency first). Each color not
    yet absorbed becomes a base and absorbs every later unabsorbed color
    closer than its threshold, measured with the base as the reference
    operand of CIE94. Reds use a tighter threshold than other hues.
    No new groups are started once max_groups exist.

    Args:
        entries: Objects with rgb, lab and frequency, sorted descending
            by frequency (FrequencyEntry or ColorResult)
        max_groups: Maximum number of merged groups to produce

    Returns:
        List of ColorResult sorted by frequency descending.
    """
    if not entries:
        return []

    labs = np.array([entry.lab for entry in entries], dtype=np.float64)
    absorbed = np.zeros(len(entries), dtype=bool)
    groups = []

    for i, base in enumerate(entries):
        if len(groups) >= max_groups:
            break
        if absorbed[i]:
            continue
        absorbed[i] = True

        members = [i]
        candidates = np.flatnonzero(~absorbed[i + 1:]) + i + 1
        if len(candidates):
            distances = delta_e_cie94(labs[i], labs[candidates])
            close = candidates[distances < merge_threshold(base.rgb)]
            absorbed[close] = True
            members.extend(close.tolist())

        # Running frequency-weighted RGB average
        total = 0.0
        sums = [0.0, 0.0, 0.0]
        cluster_size = 0
        for m in members:
            member = entries[m]
            total += member.frequency
            for channel in range(3):
                sums[channel] += member.rgb[channel] * member.frequency
            cluster_size += getattr(member, 'cluster_size', 1)

        rgb = tuple(max(0, min(255, round_half_up(s / total))) for s in sums)
        groups.append(ColorResult(
            color=rgb_to_hex(rgb),
            rgb=rgb,
            lab=rgb_to_lab_tuple(rgb),
            frequency=total,
            cluster_size=cluster_size,
        ))

    groups.sort(key=lambda c: c.frequency, reverse=True)
    return groups


# =============================================================================
# Stage 5: Significance Selection
# =============================================================================

def select_significant(colors: list[ColorResult], max_colors: int,
                       min_frequency: float = DEFAULT_MIN_FREQUENCY) -> list[ColorResult]:
    """Drop colors under min_frequency and keep at most max_colors, in input order."""
    significant = [c for c in colors if c.frequency >= min_frequency]
    return significant[:max_colors]


# =============================================================================
# Pipeline
# =============================================================================

def as_pixel_array(pixel_buffer: PixelSource, width: int, height: int) -> np.ndarray:
    """
    View a row-major RGBA buffer as an array of shape (height, width, 4).

    Raises:
        InvalidParameters: If dimensions are not positive integers or the
            buffer does not hold exactly width * height * 4 bytes
    """
    if not _is_int(width) or not _is_int(height) or width <= 0 or height <= 0:
        raise InvalidParameters(f"Image dimensions must be positive integers, got {width!r}x{height!r}")

    if isinstance(pixel_buffer, np.ndarray):
        data = pixel_buffer
        if data.ndim == 3 and data.shape != (height, width, 4):
            raise InvalidParameters(
                f"Pixel array shape {data.shape} does not match {width}x{height} RGBA"
            )
        if not np.issubdtype(data.dtype, np.integer):
            raise InvalidParameters(f"Pixel array must have an integer dtype, got {data.dtype}")
        if data.dtype != np.uint8:
            if data.size and (data.min() < 0 or data.max() > 255):
                raise InvalidParameters("Pixel values must be within 0-255")
            data = data.astype(np.uint8)
    else:
        try:
            data = np.frombuffer(pixel_buffer, dtype=np.uint8)
        except TypeError as e:
            raise InvalidParameters(f"Unsupported pixel buffer type: {type(pixel_buffer).__name__}") from e

    expected = width * height * 4
    if data.size != expected:
        raise InvalidParameters(
            f"Pixel buffer holds {data.size} bytes, expected {expected} for {width}x{height} RGBA"
        )

    return data.reshape(height, width, 4)


def _emit(trace: Optional[TraceHook], stage: str, payload: dict) -> None:
    logger.debug("%s: %s", stage, payload)
    if trace is not None:
        trace(stage, payload)


def extract_colors(pixel_buffer: PixelSource, width: int, height: int,
                   options: Optional[ExtractionOptions] = None,
                   trace: Optional[TraceHook] = None,
                   **overrides) -> list[ColorResult]:
    """
    Compute the dominant colors of an image and their share of its area.

    Args:
        pixel_buffer: Row-major RGBA bytes (4 per pixel) or a uint8 array
            of shape (height, width, 4), at full resolution
        width: Image width in pixels
        height: Image height in pixels
        options: Extraction settings (defaults if omitted)
        trace: Optional callback receiving (stage, summary dict) after
            each stage
        **overrides: Field overrides applied on top of options, e.g.
            max_colors=3

    Returns:
        List of ColorResult sorted by frequency descending. The length
        varies with the image and never exceeds max_colors; a fully
        transparent image yields an empty list.

    Raises:
        InvalidParameters: If options, dimensions or buffer are invalid
    """
    try:
        options = replace(options or ExtractionOptions(), **overrides)
    except TypeError as e:
        raise InvalidParameters(f"Unknown extraction option: {e}") from e
    options.validate()

    pixels = as_pixel_array(pixel_buffer, width, height)

    sections = partition_grid(width, height, options.grid_cell_size)
    _emit(trace, 'partition', {'sections': len(sections), 'cell_size': options.grid_cell_size})

    histograms = build_histograms(pixels, sections, workers=options.workers)
    _emit(trace, 'histograms', {
        'sections': len(histograms),
        'opaque_pixels': sum(h.effective_pixels for h in histograms),
    })

    entries = aggregate_frequencies(histograms, options.grid_cell_size)
    _emit(trace, 'aggregate', {'colors': len(entries)})

    merged = merge_similar_colors(entries, options.merge_cap)
    _emit(trace, 'merge', {'groups': len(merged), 'cap': options.merge_cap})

    selected = select_significant(merged, options.max_colors, options.min_frequency_percent)
    _emit(trace, 'select', {'kept': len(selected), 'max_colors': options.max_colors})

    return selected
