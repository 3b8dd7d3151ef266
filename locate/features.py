from __future__ import annotations
"""
Feature extraction & matching for the locator.

- FeatureExtractor(method='orb'|'akaze') with a keypoint budget that grows with image area
- Cross-checked (mutual nearest neighbour) Hamming matcher + distance window filter
- Homography RANSAC helper with inlier mask & RMSE
- Debug drawing helpers
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import FeatureSet, MatchFailure, as_array
from common.utils import clamp
from locate.options import FeatureConfig, RansacConfig
from locate.preprocess import to_gray_u8


log = get_logger("locate.features")

MIN_CORRESPONDENCES = 4
MAX_MATCH_SCORE = 256
_AKAZE_MIN_SIDE = 8


# -----------------------------
# Extractors
# -----------------------------

def keypoint_budget(area: int, ratio: float = 0.005, floor: int = 500) -> int:
    """Keypoints requested from the detector for an image of `area` pixels."""
    return max(int(area * ratio), int(floor))


@dataclass
class FeatureExtractor:
    config: FeatureConfig = field(default_factory=FeatureConfig)

    def __post_init__(self):
        m = self.config.method.lower()
        if m not in ("orb", "akaze"):
            raise ValueError(f"Unsupported method: {self.config.method}")
        self.method = m

    def _create(self, area: int):
        # A fresh detector per call: the budget depends on the image and
        # concurrent callers never share detector state.
        c = self.config
        if self.method == "orb":
            return cv2.ORB_create(
                nfeatures=keypoint_budget(area, c.budget_ratio, c.min_features),
                scaleFactor=float(c.scale_factor),
                nlevels=int(c.nlevels),
                edgeThreshold=int(c.edge_threshold),
                firstLevel=0,
                WTA_K=2,
                scoreType=cv2.ORB_HARRIS_SCORE,
                patchSize=int(c.patch_size),
                fastThreshold=int(c.fast_threshold),
            )
        return cv2.AKAZE_create(
            descriptor_type=cv2.AKAZE_DESCRIPTOR_MLDB,
            descriptor_size=0,
            descriptor_channels=3,
            threshold=0.001,
            nOctaves=4,
            nOctaveLayers=4,
            diffusivity=cv2.KAZE_DIFF_PM_G2,
        )

    def min_side(self) -> int:
        """Smallest image side the detector can describe without failing."""
        if self.method == "orb":
            # Descriptor patch plus border, measured on the full-size level
            return 2 * int(self.config.edge_threshold) + 1
        return _AKAZE_MIN_SIDE

    def detect_and_compute(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> FeatureSet:
        img = as_array(image)
        if img.size == 0 or min(img.shape[:2]) < self.min_side():
            return FeatureSet.empty()
        gray = to_gray_u8(img)
        h, w = gray.shape[:2]
        try:
            kps, des = self._create(w * h).detectAndCompute(gray, mask)
        except cv2.error as e:
            log.warning("Feature detection failed", extra={"extra": {
                "method": self.method, "width": w, "height": h, "error": str(e).strip()}})
            return FeatureSet.empty()
        if des is None or len(kps) == 0:
            return FeatureSet.empty()
        return FeatureSet.create(kps, des)


def extract(image: np.ndarray, config: Optional[FeatureConfig] = None) -> FeatureSet:
    """
    Detect keypoints and compute binary descriptors for one image.

    Returns an empty FeatureSet for zero-area or featureless images.
    """
    return FeatureExtractor(config or FeatureConfig()).detect_and_compute(image)


# -----------------------------
# Matching
# -----------------------------

@dataclass
class DescriptorMatches:
    matches: List[cv2.DMatch]
    good: List[cv2.DMatch]
    min_distance: float = float("inf")
    max_distance: float = float("inf")
    failure: Optional[MatchFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def distance_window(min_distance: float, min_match_score: int) -> float:
    """
    Largest Hamming distance still accepted as a good match.

    The window above the best match grows linearly with the score:
    0 keeps ties with the best only, 256 (the length of an ORB descriptor in
    bits) accepts every cross-checked pair.
    """
    score = int(clamp(int(min_match_score), 0, MAX_MATCH_SCORE))
    return float(min_distance) + float(score)


def match_descriptors(
    des_target: np.ndarray,
    des_reference: np.ndarray,
    min_match_score: int = 230,
) -> DescriptorMatches:
    """
    Mutual nearest neighbours under Hamming distance, then keep those within
    `distance_window` of the best pair. Query side is the target.
    """
    if des_target is None or des_reference is None or len(des_target) == 0 or len(des_reference) == 0:
        return DescriptorMatches([], [], failure=MatchFailure.EMPTY_DESCRIPTORS)
    if des_target.shape[1] != des_reference.shape[1]:
        raise ValueError(
            f"descriptor length mismatch: {des_target.shape[1]} vs {des_reference.shape[1]} bytes"
        )

    bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=True)
    matches = list(bf.match(des_target, des_reference))
    if not matches:
        return DescriptorMatches([], [], failure=MatchFailure.NO_MATCHES)

    min_d = min(m.distance for m in matches)
    max_d = distance_window(min_d, min_match_score)
    good = [m for m in matches if m.distance <= max_d]
    good.sort(key=lambda m: m.distance)

    failure = MatchFailure.INSUFFICIENT_MATCHES if len(good) < MIN_CORRESPONDENCES else None
    return DescriptorMatches(matches, good, min_d, max_d, failure)


# -----------------------------
# Geometry
# -----------------------------

@dataclass
class HomographyResult:
    H: Optional[np.ndarray]
    inlier_mask: np.ndarray
    rmse_px: float
    inliers: int
    total: int

    @property
    def ok(self) -> bool:
        return self.H is not None


def _unavailable(total: int) -> HomographyResult:
    return HomographyResult(None, np.zeros((total, 1), np.uint8), float("inf"), 0, total)


def estimate_homography(
    src_pts: np.ndarray,
    dst_pts: np.ndarray,
    ransac: Optional[RansacConfig] = None,
) -> HomographyResult:
    """
    Estimate H: src -> dst using RANSAC; compute inlier RMSE.

    H is None when fewer than 4 pairs are given, OpenCV finds no consensus,
    the matrix is non-finite or singular, or inliers fall below min_inliers.
    """
    r = ransac or RansacConfig()
    src = np.asarray(src_pts, dtype=np.float32).reshape(-1, 1, 2)
    dst = np.asarray(dst_pts, dtype=np.float32).reshape(-1, 1, 2)
    n = len(src)
    if n != len(dst):
        raise ValueError(f"point count mismatch: {n} != {len(dst)}")
    if n < MIN_CORRESPONDENCES:
        return _unavailable(n)

    try:
        H, mask = cv2.findHomography(
            src, dst, cv2.RANSAC,
            ransacReprojThreshold=float(r.reproj_px),
            maxIters=int(r.max_iters),
            confidence=float(r.confidence),
        )
    except cv2.error:
        return _unavailable(n)
    if H is None or H.shape != (3, 3) or mask is None:
        return _unavailable(n)
    if not np.all(np.isfinite(H)) or abs(np.linalg.det(H)) < 1e-12:
        return _unavailable(n)

    inlier_mask = mask.ravel().astype(bool)
    ninl = int(inlier_mask.sum())
    if ninl < max(MIN_CORRESPONDENCES, int(r.min_inliers)):
        return HomographyResult(None, mask, float("inf"), ninl, n)

    proj = cv2.perspectiveTransform(src[inlier_mask], H)
    err = np.linalg.norm(proj.reshape(-1, 2) - dst[inlier_mask].reshape(-1, 2), axis=1)
    rmse = float(np.sqrt(np.mean(err ** 2))) if err.size else float("inf")
    return HomographyResult(H.astype(np.float64), mask, rmse, ninl, n)


def matched_points(
    kps_target: Sequence[cv2.KeyPoint],
    kps_reference: Sequence[cv2.KeyPoint],
    matches: Sequence[cv2.DMatch],
) -> Tuple[np.ndarray, np.ndarray]:
    """(target_pts, reference_pts) as (N,1,2) float32 arrays, aligned with matches."""
    if not matches:
        empty = np.zeros((0, 1, 2), np.float32)
        return empty, empty.copy()
    pts_t = np.float32([kps_target[m.queryIdx].pt for m in matches]).reshape(-1, 1, 2)
    pts_r = np.float32([kps_reference[m.trainIdx].pt for m in matches]).reshape(-1, 1, 2)
    return pts_t, pts_r


def homography_ransac_from_matches(
    kps_target: Sequence[cv2.KeyPoint],
    kps_reference: Sequence[cv2.KeyPoint],
    matches: Sequence[cv2.DMatch],
    ransac: Optional[RansacConfig] = None,
) -> HomographyResult:
    """
    Estimate H: target image -> reference image from descriptor matches.
    """
    for m in matches:
        if not (0 <= m.queryIdx < len(kps_target)) or not (0 <= m.trainIdx < len(kps_reference)):
            raise ValueError("match index outside keypoint sequence")
    pts_t, pts_r = matched_points(kps_target, kps_reference, matches)
    return estimate_homography(pts_t, pts_r, ransac)


# -----------------------------
# Debug/visualization helpers
# -----------------------------

def draw_keypoints(img: np.ndarray, kps: Sequence[cv2.KeyPoint]) -> np.ndarray:
    return cv2.drawKeypoints(as_array(img), list(kps), None, color=(0, 255, 0))


def draw_matches_side_by_side(
    img_target: np.ndarray,
    img_reference: np.ndarray,
    kps_target: Sequence[cv2.KeyPoint],
    kps_reference: Sequence[cv2.KeyPoint],
    matches: Sequence[cv2.DMatch],
    inlier_mask: Optional[np.ndarray] = None,
    max_draw: int = 100,
) -> np.ndarray:
    """
    Convenience wrapper over cv2.drawMatches with optional inlier highlighting.
    """
    flags = cv2.DrawMatchesFlags_NOT_DRAW_SINGLE_POINTS
    if inlier_mask is not None and len(inlier_mask) == len(matches):
        mask_list = [int(v) for v in inlier_mask.ravel()]
    else:
        mask_list = None
    return cv2.drawMatches(
        as_array(img_target), list(kps_target), as_array(img_reference), list(kps_reference),
        list(matches[:max_draw]),
        None,
        matchColor=(0, 255, 0),
        singlePointColor=(255, 0, 0),
        matchesMask=mask_list[:max_draw] if mask_list else None,
        flags=flags,
    )
