#!/usr/bin/env python3
"""Profile dominant color extraction to identify performance bottlenecks."""

import cProfile
import io
import pstats
import sys
import time
from pathlib import Path

from analyze import load_pixels
from extract_colors import (
    ExtractionOptions, aggregate_frequencies, build_histograms, extract_colors,
    merge_similar_colors, partition_grid, select_significant,
)


def profile_image(image_path: str, options: ExtractionOptions = ExtractionOptions(),
                  verbose: bool = True):
    """Time each extraction stage on a single image."""

    if verbose:
        print(f"\n{'='*60}")
        print(f"Profiling: {Path(image_path).name}")
        print(f"{'='*60}")

    timings = {}

    start = time.perf_counter()
    buffer = load_pixels(image_path)
    timings['decode'] = time.perf_counter() - start

    start = time.perf_counter()
    sections = partition_grid(buffer.width, buffer.height, options.grid_cell_size)
    timings['partition'] = time.perf_counter() - start

    start = time.perf_counter()
    histograms = build_histograms(buffer.pixels, sections, workers=options.workers)
    timings['histograms'] = time.perf_counter() - start

    start = time.perf_counter()
    entries = aggregate_frequencies(histograms, options.grid_cell_size)
    timings['aggregate'] = time.perf_counter() - start

    start = time.perf_counter()
    merged = merge_similar_colors(entries, options.merge_cap)
    timings['merge'] = time.perf_counter() - start

    start = time.perf_counter()
    selected = select_significant(merged, options.max_colors, options.min_frequency_percent)
    timings['select'] = time.perf_counter() - start

    total = sum(timings.values())
    timings['total'] = total

    if verbose:
        print(f"  Size: {buffer.width}x{buffer.height} ({buffer.width * buffer.height:,} pixels)")
        print(f"  Sections: {len(sections)}")
        print(f"  Colors after aggregation: {len(entries):,}")
        print(f"  Groups after merge: {len(merged)}")
        print(f"  Selected: {len(selected)}")
        print(f"\nStage timings:")
        for stage, t in timings.items():
            pct = (t / total * 100) if stage != 'total' and total > 0 else 100
            print(f"  {stage:20s}: {t:6.3f}s ({pct:5.1f}%)")

    return timings, len(entries)


def detailed_profile(image_path: str, options: ExtractionOptions = ExtractionOptions()):
    """Run detailed cProfile on extract_colors (everything after decoding)."""

    print(f"\n{'='*60}")
    print(f"Detailed profile of extract_colors()")
    print(f"{'='*60}")

    # Decode first (outside profiling)
    buffer = load_pixels(image_path)

    profiler = cProfile.Profile()
    profiler.enable()
    results = extract_colors(buffer.pixels, buffer.width, buffer.height, options)
    profiler.disable()

    stream = io.StringIO()
    stats = pstats.Stats(profiler, stream=stream)
    stats.sort_stats('cumulative')
    stats.print_stats(30)  # Top 30 functions

    print(stream.getvalue())

    return results


def main():
    images_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else Path(__file__).parent / "source_images"
    extensions = {'.jpg', '.jpeg', '.png', '.webp'}
    images = sorted(p for p in images_dir.glob('*') if p.suffix.lower() in extensions)

    if not images:
        print(f"No images found in {images_dir}")
        sys.exit(1)

    print(f"Found {len(images)} test images")

    all_timings = []
    for img in images:
        timings, colors = profile_image(str(img))
        all_timings.append((img.name, timings, colors))

    # Summary
    print(f"\n{'='*60}")
    print("SUMMARY")
    print(f"{'='*60}")
    print(f"{'Image':<35} {'Colors':>8} {'Hist':>8} {'Total':>8}")
    print("-" * 60)
    for name, timings, colors in all_timings:
        print(f"{name:<35} {colors:>8,} {timings['histograms']:>7.3f}s {timings['total']:>7.3f}s")

    # Detailed profile on first image
    detailed_profile(str(images[0]))


if __name__ == "__main__":
    main()
