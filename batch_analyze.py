#!/usr/bin/env python3
"""Batch extract dominant colors from a directory of images."""

import json
import sys
import time
from pathlib import Path

from analyze import analyze_image, build_parser, configure_logging, options_from_args
from extract_colors import InvalidParameters


def find_images(directory: Path) -> list[Path]:
    """Find all image files in directory."""
    extensions = {'.jpg', '.jpeg', '.png', '.webp', '.bmp', '.gif'}
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in extensions)


def main(argv=None):
    parser = build_parser('Batch extract dominant colors from a directory of images.')
    parser.add_argument(
        '--input', '-i',
        required=True,
        help='Directory containing images to analyze'
    )
    parser.add_argument(
        '--output', '-o',
        default=None,
        help='Write a JSON summary of all palettes to this file'
    )

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    input_dir = Path(args.input)

    # Validate input directory
    if not input_dir.is_dir():
        print(f"Error: Input directory not found: {input_dir}", file=sys.stderr)
        sys.exit(2)

    try:
        options = options_from_args(args)
    except InvalidParameters as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    # Find images
    images = find_images(input_dir)
    if not images:
        print(f"No images found in {input_dir}", file=sys.stderr)
        sys.exit(2)

    total = len(images)
    succeeded = 0
    failed = []
    summary = {}

    batch_start = time.perf_counter()

    for i, image_path in enumerate(images, 1):
        try:
            img_start = time.perf_counter()
            results = analyze_image(str(image_path), options)
            img_elapsed = time.perf_counter() - img_start

            palette = ' '.join(f"{r.color}:{r.frequency:.1f}%" for r in results) or '(empty)'
            print(f"[{i}/{total}] {image_path.name} → {palette} ({img_elapsed:.2f}s)")
            summary[image_path.name] = [r.to_dict() for r in results]
            succeeded += 1

        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            print(f"[{i}/{total}] {image_path.name} → ERROR: {error_msg}", file=sys.stderr)
            failed.append((image_path.name, error_msg))
            summary[image_path.name] = {'error': error_msg}

    batch_elapsed = time.perf_counter() - batch_start

    if args.output:
        output_path = Path(args.output)
        if output_path.exists():
            print(f"  Warning: Overwriting {output_path.name}", file=sys.stderr)
        output_path.write_text(json.dumps(summary, indent=2))

    # Summary
    print()
    print(f"Completed: {succeeded}/{total} succeeded in {batch_elapsed:.2f}s")
    if succeeded > 0:
        print(f"Average: {batch_elapsed / succeeded:.2f}s per image")
    if failed:
        print(f"Failed ({len(failed)}):")
        for name, error in failed:
            print(f"  - {name}: {error}")
        sys.exit(1)


if __name__ == '__main__':
    main()
