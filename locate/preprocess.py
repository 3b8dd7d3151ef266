from __future__ import annotations
"""
Preprocessing utilities for the locator:
- Grayscale conversion (gray / BGR / BGRA input)
- Uniform downscale for faster matching
- Rotation about the image centre
- Regions of interest from keyphrases ("right 1/2 top 1/3") and cropping
"""

from typing import Tuple

import cv2
import numpy as np

from common.types import ImageFrame, InvalidScaleError, Region, as_array


def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    elif img.shape[2] == 4:
        g = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    elif img.shape[2] == 1:
        g = img[:, :, 0]
    else:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def check_scale(scale: float) -> float:
    scale = float(scale)
    if not (0.0 < scale <= 1.0):
        raise InvalidScaleError(f"Scale must be in (0, 1], got {scale}")
    return scale


def downscale(img: np.ndarray, scale: float) -> np.ndarray:
    """
    Shrink by a uniform factor in (0, 1]. INTER_AREA keeps fine texture
    (icons, text) usable for the detector; 1.0 returns the input untouched.
    """
    scale = check_scale(scale)
    if scale == 1.0:
        return img
    h, w = img.shape[:2]
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(img, size, interpolation=cv2.INTER_AREA)


def rotate_image(img: np.ndarray, direction: str, angle: float) -> np.ndarray:
    """
    Rotate about the centre, keeping the original canvas size.

    direction: "right" turns clockwise, "left" counter-clockwise.
    """
    if direction not in ("left", "right"):
        raise ValueError(f"Invalid direction {direction!r}; use 'left' or 'right'")
    # OpenCV's positive angle is counter-clockwise
    a = float(angle) if direction == "left" else -float(angle)
    h, w = img.shape[:2]
    M = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), a, 1.0)
    return cv2.warpAffine(img, M, (w, h), flags=cv2.INTER_LINEAR)


# -----------------------------
# Regions of interest
# -----------------------------

ROI_DIRECTIONS = ("left", "right", "top", "bottom", "center")


def _parse_fraction(text: str) -> float:
    """'1/3' or '0.25' -> float; must be positive and finite."""
    try:
        if "/" in text:
            num, den = text.split("/", 1)
            value = float(num) / float(den)
        else:
            value = float(text)
    except (ValueError, ZeroDivisionError):
        raise ValueError(f"Invalid fraction {text!r}") from None
    if not np.isfinite(value) or value <= 0:
        raise ValueError(f"Fraction must be positive, got {text!r}")
    return value


def roi_from_keyphrase(phrase: str, size: Tuple[int, int]) -> Region:
    """
    Turn a phrase such as "right 1/2 top 1/3" into a Region of an image of
    `size` (width, height).

    Each "<direction> <fraction>" pair keeps that fraction of the full image
    width (left/right), height (top/bottom) or both (center); later pairs
    refine earlier ones. "default" or an empty phrase is the whole image. The
    result is clamped to the image.

    Raises:
        ValueError: unknown direction, malformed fraction, dangling direction,
            non-positive size, or a phrase that selects nothing
    """
    width, height = int(size[0]), int(size[1])
    if width <= 0 or height <= 0:
        raise ValueError(f"Image size must be positive, got {width}x{height}")

    tokens = phrase.lower().split()
    if not tokens or tokens == ["default"]:
        return Region(0, 0, width, height)
    if len(tokens) % 2:
        raise ValueError(f"ROI phrase needs '<direction> <fraction>' pairs: {phrase!r}")

    x, y, w, h = 0, 0, width, height
    for direction, frac_text in zip(tokens[0::2], tokens[1::2]):
        if direction not in ROI_DIRECTIONS:
            raise ValueError(f"Invalid ROI direction {direction!r}; use one of {', '.join(ROI_DIRECTIONS)}")
        f = _parse_fraction(frac_text)
        if direction == "right":
            w = int(width * f)
            x = width - w
        elif direction == "left":
            w = int(width * f)
        elif direction == "bottom":
            h = int(height * f)
            y = height - h
        elif direction == "top":
            h = int(height * f)
        else:
            w, h = int(width * f), int(height * f)
            x, y = int((width - w) / 2), int((height - h) / 2)

    x, y = max(0, x), max(0, y)
    roi = Region(x, y, min(w, width - x), min(h, height - y))
    if not roi.found:
        raise ValueError(f"ROI phrase {phrase!r} selects no pixels of a {width}x{height} image")
    return roi


def crop(image: np.ndarray | ImageFrame, region: Region) -> np.ndarray:
    """
    View of `image` inside `region`. The region must lie fully inside the
    image; anything else raises ValueError.
    """
    img = as_array(image)
    H, W = img.shape[:2]
    if (
        region.x < 0 or region.y < 0 or region.width <= 0 or region.height <= 0
        or region.x + region.width > W or region.y + region.height > H
    ):
        raise ValueError(f"Region {region} is not inside a {W}x{H} image")
    return img[region.y:region.y + region.height, region.x:region.x + region.width]
