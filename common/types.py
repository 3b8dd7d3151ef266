from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np


IsoTime = str


class InvalidScaleError(ValueError):
    """Raised when a downscale factor lies outside (0, 1]."""


class MatchFailure(str, Enum):
    """Why a localization attempt produced no region."""
    EMPTY_DESCRIPTORS = "empty_descriptors"
    NO_MATCHES = "no_matches"
    INSUFFICIENT_MATCHES = "insufficient_matches"
    HOMOGRAPHY_UNAVAILABLE = "homography_unavailable"
    DEGENERATE_REGION = "degenerate_region"
    OUT_OF_BOUNDS = "out_of_bounds"
    ASPECT_RATIO_MISMATCH = "aspect_ratio_mismatch"


@dataclass(frozen=True, slots=True)
class Region:
    """
    Axis-aligned rectangle in reference-image pixel coordinates.

    A zero-area region (``Region.NOT_FOUND``) means the target was not located.
    """
    x: int
    y: int
    width: int
    height: int

    @property
    def found(self) -> bool:
        return self.width > 0 and self.height > 0

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    @property
    def center(self) -> Tuple[int, int]:
        return (self.x + self.width // 2, self.y + self.height // 2)

    def scaled(self, factor: float) -> "Region":
        """Multiply every coordinate by factor (rounded to whole pixels)."""
        if not self.found:
            return NOT_FOUND
        return Region(
            x=int(round(self.x * factor)),
            y=int(round(self.y * factor)),
            width=int(round(self.width * factor)),
            height=int(round(self.height * factor)),
        )

    def offset(self, dx: int, dy: int) -> "Region":
        """Same box moved by (dx, dy); NOT_FOUND stays NOT_FOUND."""
        if not self.found:
            return NOT_FOUND
        return Region(self.x + int(dx), self.y + int(dy), self.width, self.height)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["found"] = self.found
        return d


NOT_FOUND = Region(0, 0, 0, 0)
Region.NOT_FOUND = NOT_FOUND  # type: ignore[attr-defined]


class FeatureSet(NamedTuple):
    """
    Keypoints and their binary descriptors; descriptors[i] describes keypoints[i].
    """
    keypoints: Tuple[cv2.KeyPoint, ...]
    descriptors: np.ndarray

    @classmethod
    def create(cls, keypoints: Optional[Sequence[cv2.KeyPoint]], descriptors: Optional[np.ndarray], width: int = 32) -> "FeatureSet":
        kps = tuple(keypoints or ())
        if descriptors is None or np.asarray(descriptors).size == 0:
            des = np.zeros((0, width), dtype=np.uint8)
        else:
            des = np.array(descriptors, dtype=np.uint8, copy=True)
            if des.ndim != 2:
                raise ValueError("descriptors must be a 2D array (one row per keypoint)")
        if len(kps) != len(des):
            raise ValueError(f"keypoints/descriptors length mismatch: {len(kps)} != {len(des)}")
        des.setflags(write=False)
        return cls(kps, des)

    @classmethod
    def empty(cls, width: int = 32) -> "FeatureSet":
        return cls.create((), None, width=width)

    @property
    def count(self) -> int:
        return len(self.keypoints)

    @property
    def is_empty(self) -> bool:
        return len(self.keypoints) == 0


@dataclass(slots=True)
class ImageFrame:
    """
    A captured image handed to the locator.

    Attributes:
        ts: ISO-8601 (UTC) timestamp string.
        width, height: image dimensions in pixels.
        frame: np.ndarray of shape (H,W), (H,W,3) or (H,W,4), dtype uint8.
        source: logical name of the capture source (screen, window title, file).
        origin: screen position of the frame's top-left pixel.
    """
    ts: IsoTime
    width: int
    height: int
    frame: np.ndarray
    source: str = "screen"
    origin: Tuple[int, int] = (0, 0)

    def __post_init__(self) -> None:
        if not isinstance(self.frame, np.ndarray):
            raise TypeError("frame must be a numpy ndarray")
        if self.frame.ndim not in (2, 3):
            raise ValueError("frame must be 2D (gray) or 3D (BGR/BGRA)")
        if self.frame.shape[0] != self.height or self.frame.shape[1] != self.width:
            raise ValueError("width/height do not match frame shape")
        if self.frame.dtype != np.uint8:
            self.frame = self.frame.astype(np.uint8, copy=False)

    @property
    def shape(self) -> Tuple[int, int, int | None]:
        if self.frame.ndim == 2:
            return (self.height, self.width, None)
        return (self.height, self.width, self.frame.shape[2])

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {
            "ts": self.ts,
            "width": self.width,
            "height": self.height,
            "channels": None if self.frame.ndim == 2 else self.frame.shape[2],
            "source": self.source,
            "origin": list(self.origin),
        }


def as_array(image: "np.ndarray | ImageFrame") -> np.ndarray:
    """Unwrap an ImageFrame; pass arrays through."""
    if isinstance(image, ImageFrame):
        return image.frame
    if not isinstance(image, np.ndarray):
        raise TypeError(f"expected ndarray or ImageFrame, got {type(image).__name__}")
    return image
