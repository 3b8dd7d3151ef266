from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import ImageFrame, NOT_FOUND, Region, as_array
from locate.preprocess import check_scale, downscale, to_gray_u8


log = get_logger("locate.template")

MIN_TEMPLATE_SIDE = 4


def _same_channels(ref: np.ndarray, tgt: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    if ref.ndim == tgt.ndim and (ref.ndim == 2 or ref.shape[2] == tgt.shape[2]):
        return ref, tgt
    return to_gray_u8(ref), to_gray_u8(tgt)


def find_template(
    reference: np.ndarray | ImageFrame,
    target: np.ndarray | ImageFrame,
    scale: float = 1.0,
    grayscale: bool = False,
    threshold: Optional[float] = None,
) -> Region:
    """
    Locate an unrotated, unscaled copy of `target` with normalized
    cross-correlation (TM_CCOEFF_NORMED).

    The best-scoring window is returned in original reference pixels, shifted
    if needed so it lies fully inside the reference. With `threshold`, a best
    score below it yields Region.NOT_FOUND, as does a target that shrinks
    below MIN_TEMPLATE_SIDE pixels at this scale.
    """
    scale = check_scale(scale)
    ref = as_array(reference)
    tgt = as_array(target)

    ref_s = downscale(ref, scale)
    tgt_s = downscale(tgt, scale)
    if grayscale:
        ref_s, tgt_s = to_gray_u8(ref_s), to_gray_u8(tgt_s)
    else:
        ref_s, tgt_s = _same_channels(ref_s, tgt_s)

    if tgt_s.shape[0] > ref_s.shape[0] or tgt_s.shape[1] > ref_s.shape[1] or tgt_s.size == 0:
        log.info("Template larger than reference", extra={"extra": {
            "reference": list(ref_s.shape[:2]), "target": list(tgt_s.shape[:2])}})
        return NOT_FOUND
    if min(tgt_s.shape[:2]) < MIN_TEMPLATE_SIDE:
        # A few pixels correlate well anywhere
        log.info("Template too small after scaling", extra={"extra": {
            "target": list(tgt_s.shape[:2]), "scale": scale}})
        return NOT_FOUND

    result = cv2.matchTemplate(ref_s, tgt_s, cv2.TM_CCOEFF_NORMED)
    _, max_val, _, max_loc = cv2.minMaxLoc(result)
    if threshold is not None and (not np.isfinite(max_val) or max_val < threshold):
        log.info("Template score below threshold", extra={"extra": {"score": float(max_val), "threshold": threshold}})
        return NOT_FOUND

    H, W = ref.shape[:2]
    x = int(max_loc[0] / scale)
    y = int(max_loc[1] / scale)
    w = min(W, int(tgt_s.shape[1] / scale))
    h = min(H, int(tgt_s.shape[0] / scale))
    x = min(max(0, x), W - w)
    y = min(max(0, y), H - h)
    return Region(x, y, w, h)
