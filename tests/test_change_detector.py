"""Tests for text and screenshot comparison."""

import io

from PIL import Image

from pagewatch.detect.change_detector import compare_images, compare_text, unified_text_diff

from conftest import make_png


def rgba_png(width: int, height: int, color) -> bytes:
    img = Image.new("RGBA", (width, height), color)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class TestTextComparison:
    def test_identical_text_is_unchanged(self):
        result = compare_text("same\ntext", "same\ntext")

        assert result.changed is False
        assert result.diff is None

    def test_diff_marks_removed_and_added_lines(self):
        result = compare_text("price: 10\nstock: yes", "price: 12\nstock: yes")

        assert result.changed is True
        lines = result.diff.splitlines()
        assert lines[0] == "--- previous"
        assert lines[1] == "+++ current"
        assert "-price: 10" in lines
        assert "+price: 12" in lines

    def test_whitespace_difference_counts(self):
        assert compare_text("A", "A ").changed is True

    def test_long_diff_is_truncated(self):
        old = "\n".join(f"old line {i}" for i in range(100))
        new = "\n".join(f"new line {i}" for i in range(100))

        diff = unified_text_diff(old, new, max_lines=10)
        lines = diff.splitlines()

        assert len(lines) == 11
        assert "truncated" in lines[5]
        assert lines[0] == "--- previous"
        assert lines[-1] == "+new line 99"


class TestImageComparison:
    """Pixel comparison in YIQ space."""

    def test_identical_images(self):
        png = make_png()

        result = compare_images(png, png)

        assert result.changed is False
        assert result.diff_pixels == 0
        assert result.total_pixels == 64
        assert result.diff_png is None

    def test_single_pixel_change(self):
        old = make_png(color=(255, 255, 255))
        new = make_png(color=(255, 255, 255), changed={(2, 3): (0, 0, 0)})

        result = compare_images(old, new)

        assert result.changed is True
        assert result.diff_pixels == 1
        assert result.diff_ratio == 1 / 64
        with Image.open(io.BytesIO(result.diff_png)) as diff:
            assert diff.size == (8, 8)
            assert diff.getpixel((2, 3)) == (255, 0, 0)
            assert diff.getpixel((0, 0)) != (255, 0, 0)

    def test_change_below_threshold_is_ignored(self):
        old = make_png(color=(255, 255, 255))
        new = make_png(color=(254, 254, 254))

        result = compare_images(old, new, threshold=0.1)

        assert result.changed is False
        assert result.diff_png is None

    def test_zero_threshold_counts_every_difference(self):
        old = make_png(color=(255, 255, 255))
        new = make_png(color=(254, 254, 254))

        assert compare_images(old, new, threshold=0.0).diff_pixels == 64

    def test_size_change_is_a_change(self):
        old = make_png(width=8, height=8, color=(255, 255, 255))
        new = make_png(width=8, height=10, color=(255, 255, 255))

        result = compare_images(old, new)

        assert result.changed is True
        assert result.size_changed is True
        assert result.total_pixels == 80

    def test_transparency_blends_over_white(self):
        transparent = rgba_png(4, 4, (0, 0, 0, 0))
        white = rgba_png(4, 4, (255, 255, 255, 255))

        assert compare_images(transparent, white).changed is False

    def test_diff_image_can_be_skipped(self):
        old = make_png(color=(255, 255, 255))
        new = make_png(color=(0, 0, 0))

        result = compare_images(old, new, render_diff=False)

        assert result.diff_pixels == 64
        assert result.diff_png is None

    def test_changes_found_in_every_row_band(self):
        changed = {(1, 5): (0, 0, 0), (1, 6): (0, 0, 0), (7, 19): (0, 0, 0)}
        old = make_png(width=8, height=20, color=(255, 255, 255))
        new = make_png(width=8, height=20, color=(255, 255, 255), changed=changed)

        banded = compare_images(old, new, band_rows=6)
        whole = compare_images(old, new, band_rows=100)

        assert banded.diff_pixels == whole.diff_pixels == 3
        with Image.open(io.BytesIO(banded.diff_png)) as diff:
            assert diff.size == (8, 20)
            for xy in changed:
                assert diff.getpixel(xy) == (255, 0, 0)
            assert diff.getpixel((0, 0)) != (255, 0, 0)

    def test_taller_image_padded_across_bands(self):
        old = make_png(width=8, height=8, color=(255, 255, 255))
        new = make_png(width=8, height=13, color=(255, 255, 255), changed={(3, 11): (0, 0, 0)})

        result = compare_images(old, new, band_rows=4)

        assert result.size_changed is True
        assert result.total_pixels == 104
        assert result.diff_pixels == 1
