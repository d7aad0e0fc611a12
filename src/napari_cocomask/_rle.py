"""
COCO run-length encoded segmentation masks.

Segmentation payloads are normalized into a small tagged variant
(compressed string counts, uncompressed integer counts, or polygons) and
decoded into run lengths. Runs alternate background/foreground, start with
background and walk the mask in column-major order, while every buffer this
module returns is indexed row-major as ``[y, x]``.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass
import logging

import numpy as np

from ._config import get_effective_config
from ._utils import CocoError, RleDecodeError

logger = logging.getLogger(__name__)

ASCII_OFFSET = 48  # '0'
DEFAULT_MASK_ALPHA = 210


class MaskBudgetExceeded(CocoError):
    """Mask pixel count is above the configured limit."""


@dataclass(frozen=True)
class CompressedRle:
    counts: str
    size: Tuple[int, int]


@dataclass(frozen=True)
class UncompressedRle:
    counts: Tuple[int, ...]
    size: Tuple[int, int]


@dataclass(frozen=True)
class Polygon:
    points: Tuple[Tuple[float, ...], ...]


Segmentation = Union[CompressedRle, UncompressedRle, Polygon]
RleLike = Union[CompressedRle, UncompressedRle, Dict[str, Any]]


def decode_rle_string(encoded: Union[str, bytes]) -> List[int]:
    """
    Decode a COCO compressed RLE string into run lengths.

    Each character minus ``'0'`` is a 6-bit unit carrying 5 payload bits,
    least significant group first. Bit ``0x20`` marks a continuation and bit
    ``0x10`` of the last unit is the sign. From the fourth value on, each value
    is stored as a delta to the value two positions back.

    Parameters
    ----------
    encoded : str or bytes
        Compressed counts as stored in the ``counts`` field

    Returns
    -------
    list of int
        Run lengths

    Raises
    ------
    RleDecodeError
        If the string ends in the middle of a value or holds a character
        outside ``'0'..'o'``
    """
    if isinstance(encoded, bytes):
        try:
            encoded = encoded.decode('ascii')
        except UnicodeDecodeError as e:
            raise RleDecodeError(f"Compressed RLE is not ASCII: {e}")

    counts: List[int] = []
    pos = 0
    length = len(encoded)
    while pos < length:
        value = 0
        k = 0
        more = True
        while more:
            if pos >= length:
                raise RleDecodeError(
                    f"Compressed RLE ends mid-value at offset {pos} (value {len(counts)})",
                    "Mask data is truncated."
                )
            unit = ord(encoded[pos]) - ASCII_OFFSET
            if not 0 <= unit < 64:
                raise RleDecodeError(
                    f"Invalid character {encoded[pos]!r} at offset {pos} in compressed RLE",
                    "Mask data is corrupted."
                )
            value |= (unit & 0x1f) << (5 * k)
            more = bool(unit & 0x20)
            pos += 1
            k += 1
            if not more and unit & 0x10:
                value |= -1 << (5 * k)
        if len(counts) > 2:
            value += counts[-2]
        counts.append(value)
    return counts


def encode_rle_counts(counts: Sequence[int]) -> str:
    """Encode run lengths into the COCO compressed string form."""
    chars = []
    for i, run in enumerate(counts):
        value = int(run)
        if i > 2:
            value -= int(counts[i - 2])
        more = True
        while more:
            unit = value & 0x1f
            value >>= 5
            more = value != -1 if unit & 0x10 else value != 0
            if more:
                unit |= 0x20
            chars.append(chr(unit + ASCII_OFFSET))
    return ''.join(chars)


def mask_to_counts(mask: np.ndarray) -> List[int]:
    """
    Run-length encode a 2-D boolean mask in column-major order.

    The first run is always background and may be zero.
    """
    flat = np.asarray(mask, dtype=bool).ravel(order='F')
    if flat.size == 0:
        return []
    changes = np.flatnonzero(flat[1:] != flat[:-1]) + 1
    boundaries = np.concatenate(([0], changes, [flat.size]))
    runs = np.diff(boundaries).tolist()
    if flat[0]:
        runs.insert(0, 0)
    return [int(r) for r in runs]


def _parse_size(size: Any) -> Tuple[int, int]:
    if not isinstance(size, (list, tuple)) or len(size) != 2:
        raise RleDecodeError(f"RLE size must be [height, width], got {size!r}")
    try:
        h, w = (int(v) for v in size)
    except (TypeError, ValueError):
        raise RleDecodeError(f"RLE size must hold integers, got {size!r}")
    if h < 0 or w < 0:
        raise RleDecodeError(f"RLE size must be non-negative, got {size!r}")
    return h, w


def parse_segmentation(segmentation: Any) -> Optional[Segmentation]:
    """
    Normalize a raw ``segmentation`` field into a tagged variant.

    Returns
    -------
    CompressedRle, UncompressedRle, Polygon or None
        ``None`` when the annotation carries no segmentation

    Raises
    ------
    RleDecodeError
        If the payload is neither an RLE mapping nor a polygon list
    """
    if segmentation is None:
        return None
    if isinstance(segmentation, (CompressedRle, UncompressedRle, Polygon)):
        return segmentation
    if isinstance(segmentation, dict):
        if 'counts' not in segmentation:
            raise RleDecodeError("RLE segmentation has no 'counts' field")
        size = _parse_size(segmentation.get('size'))
        counts = segmentation['counts']
        if isinstance(counts, bytes):
            counts = counts.decode('ascii', errors='replace')
        if isinstance(counts, str):
            return CompressedRle(counts, size)
        if isinstance(counts, (list, tuple)):
            try:
                return UncompressedRle(tuple(int(c) for c in counts), size)
            except (TypeError, ValueError):
                raise RleDecodeError("Uncompressed RLE counts must be integers")
        raise RleDecodeError(f"Unsupported RLE counts type {type(counts).__name__}")
    if isinstance(segmentation, list):
        if not segmentation:
            return None
        return Polygon(tuple(tuple(float(v) for v in ring) for ring in segmentation))
    raise RleDecodeError(f"Unsupported segmentation type {type(segmentation).__name__}")


def normalize_counts(rle: RleLike) -> List[int]:
    """
    Return the run lengths of an RLE payload.

    Raises
    ------
    RleDecodeError
        For polygons, malformed strings or negative run lengths
    """
    segmentation = parse_segmentation(rle)
    if isinstance(segmentation, CompressedRle):
        counts = decode_rle_string(segmentation.counts)
    elif isinstance(segmentation, UncompressedRle):
        counts = list(segmentation.counts)
    elif isinstance(segmentation, Polygon):
        raise RleDecodeError("Polygon segmentation is not run-length encoded")
    else:
        raise RleDecodeError("Annotation has no segmentation")

    for i, run in enumerate(counts):
        if run < 0:
            raise RleDecodeError(
                f"Negative run length {run} at index {i}",
                "Mask data is corrupted."
            )
    return counts


def _prepare(rle: RleLike, max_pixels: Optional[int] = None) -> Tuple[int, int, List[int]]:
    segmentation = parse_segmentation(rle)
    if not isinstance(segmentation, (CompressedRle, UncompressedRle)):
        raise RleDecodeError("Segmentation is not an RLE mask")
    h, w = segmentation.size
    counts = normalize_counts(segmentation)

    if max_pixels is None:
        max_pixels = get_effective_config().performance.max_mask_pixels
    if max_pixels and h * w > max_pixels:
        raise MaskBudgetExceeded(
            f"Mask of {h}x{w} pixels exceeds the limit of {max_pixels}",
            "Mask is too large to display."
        )

    total = sum(counts)
    if total > h * w:
        raise RleDecodeError(
            f"RLE counts sum to {total}, more than {h}x{w}={h * w} pixels",
            "Mask data does not fit its declared size."
        )
    return h, w, counts


def rasterize_rle_mask(rle: RleLike, max_pixels: Optional[int] = None) -> np.ndarray:
    """
    Decode an RLE payload into a boolean ``(height, width)`` mask.

    Counts that fall short of ``height * width`` leave the remaining pixels
    as background.

    Raises
    ------
    RleDecodeError
        If the counts cannot be decoded or overshoot the declared size
    MaskBudgetExceeded
        If the mask has more pixels than allowed
    """
    h, w, counts = _prepare(rle, max_pixels)
    total = h * w
    if not counts or total == 0:
        return np.zeros((h, w), dtype=bool)

    runs = np.asarray(counts, dtype=np.int64)
    states = (np.arange(runs.size) % 2).astype(bool)
    flat = np.zeros(total, dtype=bool)
    filled = np.repeat(states, runs)
    flat[:filled.size] = filled
    return flat.reshape((h, w), order='F')


def rasterize_rle(rle: RleLike,
                  color: Tuple[int, int, int],
                  alpha: int = DEFAULT_MASK_ALPHA,
                  max_pixels: Optional[int] = None) -> Optional[np.ndarray]:
    """
    Render an RLE mask as an RGBA pixel buffer.

    Parameters
    ----------
    rle : dict, CompressedRle or UncompressedRle
        Mask with ``counts`` and ``size = [height, width]``
    color : tuple of int
        RGB color for foreground pixels
    alpha : int, optional
        Alpha for foreground pixels, background stays fully transparent
    max_pixels : int, optional
        Pixel budget, defaults to the configured limit

    Returns
    -------
    numpy.ndarray or None
        ``(height, width, 4)`` uint8 buffer, or None when the size is zero,
        the counts are empty or the payload cannot be decoded
    """
    try:
        h, w, counts = _prepare(rle, max_pixels)
    except CocoError as e:
        logger.warning(f"Failed to decode RLE mask: {e.message}")
        return None

    if h == 0 or w == 0 or not counts:
        return None

    mask = rasterize_rle_mask(UncompressedRle(tuple(counts), (h, w)), max_pixels=0)
    rgba = np.zeros((h, w, 4), dtype=np.uint8)
    rgba[mask] = (color[0], color[1], color[2], alpha)
    return rgba


def _column_index_sum(n: int, h: int) -> int:
    # Sum of i // h for i in [0, n)
    q, r = divmod(n, h)
    return h * q * (q - 1) // 2 + r * q


def _row_index_sum(n: int, h: int) -> int:
    # Sum of i % h for i in [0, n)
    q, r = divmod(n, h)
    return q * h * (h - 1) // 2 + r * (r - 1) // 2


def _foreground_runs(h: int, w: int, counts: List[int]):
    total = h * w
    pos = 0
    for i, run in enumerate(counts):
        start = pos
        pos += run
        end = min(pos, total)
        if i % 2 == 1 and end > start:
            yield start, end
        if pos >= total:
            break


def compute_centroid(rle: RleLike, max_pixels: Optional[int] = None) -> Optional[Tuple[float, float]]:
    """
    Compute the mean ``(x, y)`` position of the foreground pixels.

    Column and row sums are accumulated per run in closed form, so no pixel
    grid is allocated.

    Returns
    -------
    tuple of float or None
        Centroid, or None if there are no foreground pixels or the payload
        cannot be decoded
    """
    try:
        h, w, counts = _prepare(rle, max_pixels)
    except CocoError as e:
        logger.warning(f"Failed to compute centroid: {e.message}")
        return None

    if h == 0 or w == 0 or not counts:
        return None

    sum_x = 0
    sum_y = 0
    pixels = 0
    for start, end in _foreground_runs(h, w, counts):
        sum_x += _column_index_sum(end, h) - _column_index_sum(start, h)
        sum_y += _row_index_sum(end, h) - _row_index_sum(start, h)
        pixels += end - start

    if pixels == 0:
        return None
    return sum_x / pixels, sum_y / pixels


def foreground_pixel_count(rle: RleLike, max_pixels: Optional[int] = None) -> int:
    """Number of foreground pixels, counting only runs inside the declared size."""
    h, w, counts = _prepare(rle, max_pixels)
    if h == 0 or w == 0:
        return 0
    return sum(end - start for start, end in _foreground_runs(h, w, counts))
