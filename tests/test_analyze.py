"""Tests for image loading, rendering and the command line tools."""

import io
import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

import analyze
import batch_analyze
import profile_analyze
from extract_colors import EnvironmentUnavailable, ImageDecodeError, extract_colors


@pytest.fixture
def red_blue(make_image) -> np.ndarray:
    return make_image(20, 10, [(0, 0, 10, 10, (255, 0, 0)), (10, 0, 20, 10, (0, 0, 255))])


def test_load_pixels_from_bytes(red_blue, png_bytes) -> None:
    buffer = analyze.load_pixels(png_bytes(red_blue))

    assert (buffer.width, buffer.height) == (20, 10)
    assert buffer.pixels.shape == (10, 20, 4)
    assert np.array_equal(buffer.pixels, red_blue)


def test_load_pixels_from_path_and_image(red_blue, png_bytes, tmp_path: Path) -> None:
    path = tmp_path / 'red_blue.png'
    path.write_bytes(png_bytes(red_blue))

    from_path = analyze.load_pixels(str(path))
    from_file = analyze.load_pixels(io.BytesIO(path.read_bytes()))
    from_image = analyze.load_pixels(Image.open(path))

    assert np.array_equal(from_path.pixels, from_file.pixels)
    assert np.array_equal(from_path.pixels, from_image.pixels)


def test_rgb_images_become_opaque_rgba() -> None:
    buffer = analyze.load_pixels(Image.new('RGB', (3, 2), (10, 20, 30)))

    assert buffer.pixels.shape == (2, 3, 4)
    assert (buffer.pixels[:, :, 3] == 255).all()


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        analyze.load_pixels(str(tmp_path / 'missing.png'))


def test_garbage_bytes_raise_decode_error() -> None:
    with pytest.raises(ImageDecodeError):
        analyze.load_pixels(b'definitely not an image')


def test_truncated_image_raises_decode_error(red_blue, png_bytes) -> None:
    data = png_bytes(red_blue)

    with pytest.raises(ImageDecodeError):
        analyze.load_pixels(data[:len(data) // 2])


def test_oversized_image_raises_decode_error(red_blue, png_bytes, monkeypatch) -> None:
    monkeypatch.setattr(analyze, 'MAX_IMAGE_DIMENSION', 16)

    with pytest.raises(ImageDecodeError):
        analyze.load_pixels(png_bytes(red_blue))


def test_missing_decoder_raises_environment_unavailable(monkeypatch) -> None:
    def no_decoder(self):
        raise OSError("decoder jpeg not available")

    monkeypatch.setattr(Image.Image, 'load', no_decoder)

    with pytest.raises(EnvironmentUnavailable):
        analyze.load_pixels(Image.new('RGB', (4, 4)))


def test_extract_colors_from_image(red_blue, png_bytes) -> None:
    assert analyze.extract_colors_from_image(png_bytes(red_blue), color_count=2) == ['#ff0000', '#0000ff']
    assert analyze.extract_colors_from_image(png_bytes(red_blue), color_count=1) == ['#ff0000']


def test_render_lists_every_color(red_blue) -> None:
    results = extract_colors(red_blue, 20, 10)

    text = analyze.render(results, 'red_blue.png')

    assert 'IMAGE: red_blue.png' in text
    assert 'Dominant colors: 2' in text
    assert '#ff0000' in text and '#0000ff' in text
    assert '50.0%' in text


def test_render_empty_palette() -> None:
    assert '(no opaque pixels)' in analyze.render([])


def test_cli_prints_json(red_blue, png_bytes, tmp_path: Path, capsys) -> None:
    path = tmp_path / 'red_blue.png'
    path.write_bytes(png_bytes(red_blue))

    analyze.main(['--input', str(path), '--json', '--max-colors', '2'])

    data = json.loads(capsys.readouterr().out)
    assert [c['color'] for c in data] == ['#ff0000', '#0000ff']
    assert data[0]['frequency'] == pytest.approx(50.0)


def test_cli_writes_report(red_blue, png_bytes, tmp_path: Path, capsys) -> None:
    path = tmp_path / 'red_blue.png'
    path.write_bytes(png_bytes(red_blue))

    analyze.main(['-i', str(path), '-o'])

    report = tmp_path / 'red_blue-palette.json'
    assert report.exists()
    assert len(json.loads(report.read_text())) == 2
    assert '#ff0000' in capsys.readouterr().out


def test_cli_reports_bad_options(red_blue, png_bytes, tmp_path: Path, capsys) -> None:
    path = tmp_path / 'red_blue.png'
    path.write_bytes(png_bytes(red_blue))

    with pytest.raises(SystemExit) as exc:
        analyze.main(['-i', str(path), '--max-colors', '0'])

    assert exc.value.code == 1
    assert 'InvalidParameters' in capsys.readouterr().err


def test_batch_reports_failures(red_blue, png_bytes, tmp_path: Path, capsys) -> None:
    images = tmp_path / 'images'
    images.mkdir()
    (images / 'a.png').write_bytes(png_bytes(red_blue))
    (images / 'b.png').write_bytes(b'broken')
    (images / 'notes.txt').write_text('skip me')
    summary = tmp_path / 'summary.json'

    with pytest.raises(SystemExit) as exc:
        batch_analyze.main(['-i', str(images), '-o', str(summary)])

    assert exc.value.code == 1
    captured = capsys.readouterr()
    assert 'a.png → #ff0000:50.0% #0000ff:50.0%' in captured.out
    assert 'b.png → ERROR: ImageDecodeError' in captured.err
    data = json.loads(summary.read_text())
    assert set(data) == {'a.png', 'b.png'}
    assert 'error' in data['b.png']


def test_batch_succeeds_quietly(red_blue, png_bytes, tmp_path: Path, capsys) -> None:
    (tmp_path / 'a.png').write_bytes(png_bytes(red_blue))

    batch_analyze.main(['--input', str(tmp_path)])

    assert 'Completed: 1/1 succeeded' in capsys.readouterr().out


def test_batch_rejects_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        batch_analyze.main(['-i', str(tmp_path / 'nope')])

    assert exc.value.code == 2


def test_profile_times_every_stage(red_blue, png_bytes, tmp_path: Path, capsys) -> None:
    path = tmp_path / 'red_blue.png'
    path.write_bytes(png_bytes(red_blue))

    timings, colors = profile_analyze.profile_image(str(path))

    assert set(timings) == {'decode', 'partition', 'histograms', 'aggregate', 'merge', 'select', 'total'}
    assert colors == 2
    assert 'Selected: 2' in capsys.readouterr().out
