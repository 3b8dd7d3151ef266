from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

from common.types import MatchFailure, NOT_FOUND, Region
from common.utils import to_numpy_3x3


def project_corners(H: np.ndarray, width: float, height: float) -> np.ndarray:
    """
    Map the target corners (0,0), (w,0), (w,h), (0,h) through H.
    Returns a (4, 2) float array in reference-image pixels.
    """
    Hm = to_numpy_3x3(H)
    corners = np.float32([[0, 0], [width, 0], [width, height], [0, height]]).reshape(-1, 1, 2)
    return cv2.perspectiveTransform(corners, Hm).reshape(-1, 2).astype(np.float64)


def bounding_region(points: np.ndarray) -> Region:
    """Axis-aligned box around the points, snapped to whole pixels."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.size == 0 or not np.all(np.isfinite(pts)):
        return NOT_FOUND
    x0 = int(round(pts[:, 0].min()))
    y0 = int(round(pts[:, 1].min()))
    x1 = int(round(pts[:, 0].max()))
    y1 = int(round(pts[:, 1].max()))
    return Region(x0, y0, x1 - x0, y1 - y0)


def aspect_ratio_close(region: Region, target_width: float, target_height: float, tolerance: float = 0.2) -> bool:
    """
    True when the box has the target's aspect ratio, either as-is or swapped
    (a near-90 degree rotation turns a w:h target into an h:w box).
    """
    if region.width <= 0 or region.height <= 0 or target_width <= 0 or target_height <= 0:
        return False
    r = region.width / float(region.height)
    r_swapped = region.height / float(region.width)
    s = float(target_width) / float(target_height)
    return abs(r - s) <= tolerance or abs(r_swapped - s) <= tolerance


def _clip(region: Region, ref_w: int, ref_h: int) -> Region:
    x0 = max(0, region.x)
    y0 = max(0, region.y)
    x1 = min(ref_w, region.x + region.width)
    y1 = min(ref_h, region.y + region.height)
    return Region(x0, y0, x1 - x0, y1 - y0)


def validate_region(
    H: np.ndarray,
    target_size: Tuple[int, int],
    reference_size: Optional[Tuple[int, int]] = None,
    *,
    aspect_tolerance: float = 0.2,
    bounds_tolerance_px: float = 2.0,
) -> Tuple[Region, Optional[MatchFailure]]:
    """
    Project the target through H and decide whether the box is plausible.

    target_size / reference_size are (width, height). When reference_size is
    given the box must lie inside the reference, allowing bounds_tolerance_px
    of overhang which is clipped off. Returns (region, None) on success and
    (NOT_FOUND, reason) otherwise.
    """
    tw, th = target_size
    pts = project_corners(H, tw, th)
    box = bounding_region(pts)
    if box.width <= 0 or box.height <= 0:
        return NOT_FOUND, MatchFailure.DEGENERATE_REGION

    if reference_size is not None:
        rw, rh = reference_size
        tol = float(bounds_tolerance_px)
        if (
            box.x < -tol or box.y < -tol
            or box.x + box.width > rw + tol
            or box.y + box.height > rh + tol
        ):
            return NOT_FOUND, MatchFailure.OUT_OF_BOUNDS

    if not aspect_ratio_close(box, tw, th, aspect_tolerance):
        return NOT_FOUND, MatchFailure.ASPECT_RATIO_MISMATCH

    if reference_size is not None:
        box = _clip(box, int(reference_size[0]), int(reference_size[1]))
        if not box.found:
            return NOT_FOUND, MatchFailure.DEGENERATE_REGION
    return box, None
