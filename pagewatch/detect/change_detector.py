"""Text and screenshot change detection."""

import difflib
import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from pagewatch.config import settings

logger = logging.getLogger(__name__)

# Maximum possible YIQ delta between two colors
MAX_YIQ_DELTA = 35215.0

DIFF_COLOR = (255, 0, 0)
FADE_ALPHA = 0.1

# Rows compared per step
BAND_ROWS = 256


@dataclass
class TextChange:
    """Result of comparing two text snapshots."""

    changed: bool
    diff: Optional[str] = None


@dataclass
class VisualChange:
    """Result of comparing two screenshots."""

    changed: bool
    diff_pixels: int
    total_pixels: int
    diff_png: Optional[bytes] = None
    size_changed: bool = False

    @property
    def diff_ratio(self) -> float:
        return self.diff_pixels / self.total_pixels if self.total_pixels else 0.0


def unified_text_diff(old: str, new: str, max_lines: int = None) -> str:
    """
    Line-oriented unified diff, truncated to ``max_lines``.

    Truncation keeps the head and tail of the diff around a marker line.
    """
    limit = max_lines or settings.diff_max_lines
    diff_lines = list(
        difflib.unified_diff(
            (old or "").splitlines(),
            (new or "").splitlines(),
            fromfile="previous",
            tofile="current",
            lineterm="",
        )
    )
    if len(diff_lines) > limit:
        head = diff_lines[: limit // 2]
        tail = diff_lines[-(limit // 2):]
        diff_lines = head + [f"... ({len(diff_lines) - len(head) - len(tail)} lines truncated) ..."] + tail
    return "\n".join(diff_lines) if diff_lines else "(content changed, but diff is empty)"


def compare_text(old: Optional[str], new: Optional[str], max_lines: int = None) -> TextChange:
    """Exact comparison; a diff is only built when the values differ."""
    if old == new:
        return TextChange(changed=False)
    return TextChange(changed=True, diff=unified_text_diff(old or "", new or "", max_lines))


def _load_rgba(png: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(png)) as img:
        return np.asarray(img.convert("RGBA"), dtype=np.uint8)


def _band(pixels: np.ndarray, start: int, stop: int, width: int) -> np.ndarray:
    """Rows ``start:stop`` as float32, padded with transparent pixels."""
    band = np.zeros((stop - start, width, 4), dtype=np.float32)
    rows = pixels[start:stop]
    band[: rows.shape[0], : rows.shape[1]] = rows
    return band


def _blend_white(pixels: np.ndarray) -> np.ndarray:
    """Alpha-blend RGBA over a white background, returning RGB."""
    alpha = pixels[..., 3:4] / np.float32(255.0)
    return np.float32(255.0) + (pixels[..., :3] - np.float32(255.0)) * alpha


def _to_yiq(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    y = r * 0.29889531 + g * 0.58662247 + b * 0.11448223
    i = r * 0.59597799 - g * 0.27417610 - b * 0.32180189
    q = r * 0.21147017 - g * 0.52261711 + b * 0.31114694
    return y, i, q


def _faded_band(y: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Faded grayscale rows with changed pixels in red."""
    faded = np.clip(255.0 + (y - 255.0) * FADE_ALPHA, 0, 255).astype(np.uint8)
    out = np.repeat(faded[..., None], 3, axis=2)
    out[mask] = DIFF_COLOR
    return out


def _encode_png(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()


def compare_images(
    old_png: bytes,
    new_png: bytes,
    threshold: float = None,
    render_diff: bool = True,
    band_rows: int = BAND_ROWS,
) -> VisualChange:
    """
    Count pixels whose perceived color difference exceeds the threshold.

    Colors are compared in YIQ space after blending alpha over white. A pixel
    differs when its weighted delta exceeds ``35215 * threshold**2``. Any
    differing pixel, or a change in image size, counts as a change.

    The images are walked ``band_rows`` rows at a time in float32, so peak
    memory stays close to the size of the two decoded screenshots. This is
    CPU-bound; async callers should run it in a worker thread.

    Args:
        old_png: Previous screenshot
        new_png: Current screenshot
        threshold: Per-pixel sensitivity between 0 and 1 (defaults to config)
        render_diff: Build the difference PNG when something changed
        band_rows: Rows processed per step

    Returns:
        VisualChange with pixel counts and the optional difference image
    """
    if threshold is None:
        threshold = settings.visual_pixel_threshold

    old = _load_rgba(old_png)
    new = _load_rgba(new_png)
    size_changed = old.shape[:2] != new.shape[:2]
    height = max(old.shape[0], new.shape[0])
    width = max(old.shape[1], new.shape[1])
    total_pixels = height * width

    if not size_changed and old_png == new_png:
        return VisualChange(changed=False, diff_pixels=0, total_pixels=total_pixels)

    limit = np.float32(MAX_YIQ_DELTA * threshold * threshold)
    diff_image = np.empty((height, width, 3), dtype=np.uint8) if render_diff else None
    diff_pixels = 0

    for start in range(0, height, band_rows):
        stop = min(start + band_rows, height)
        y1, i1, q1 = _to_yiq(_blend_white(_band(old, start, stop, width)))
        y2, i2, q2 = _to_yiq(_blend_white(_band(new, start, stop, width)))
        delta = 0.5053 * (y1 - y2) ** 2 + 0.299 * (i1 - i2) ** 2 + 0.1957 * (q1 - q2) ** 2

        mask = delta > limit
        diff_pixels += int(np.count_nonzero(mask))
        if diff_image is not None:
            diff_image[start:stop] = _faded_band(y2, mask)

    changed = diff_pixels > 0 or size_changed

    diff_png = None
    if changed and diff_image is not None:
        diff_png = _encode_png(diff_image)

    logger.debug(
        f"Visual comparison: {diff_pixels}/{total_pixels} pixels differ"
        f"{' (size changed)' if size_changed else ''}"
    )
    return VisualChange(
        changed=changed,
        diff_pixels=diff_pixels,
        total_pixels=total_pixels,
        diff_png=diff_png,
        size_changed=size_changed,
    )
