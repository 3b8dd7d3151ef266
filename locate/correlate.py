from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import FeatureSet, ImageFrame, MatchFailure, NOT_FOUND, Region, as_array
from locate.features import (
    FeatureExtractor,
    draw_keypoints,
    draw_matches_side_by_side,
    homography_ransac_from_matches,
    match_descriptors,
)
from locate.options import MatchOptions
from locate.preprocess import check_scale, downscale
from locate.region import validate_region


log = get_logger("locate")


@dataclass(slots=True)
class LocateResult:
    region: Region
    failure: Optional[MatchFailure] = None
    total_matches: int = 0
    good_matches: int = 0
    inliers: int = 0
    rmse_px: float = float("inf")
    homography: Optional[np.ndarray] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.region.found

    def to_dict(self) -> dict:
        return {
            "region": self.region.to_dict(),
            "failure": self.failure.value if self.failure else None,
            "total_matches": self.total_matches,
            "good_matches": self.good_matches,
            "inliers": self.inliers,
            "rmse_px": None if not np.isfinite(self.rmse_px) else round(self.rmse_px, 3),
        }


def _size(img: np.ndarray):
    return (int(img.shape[1]), int(img.shape[0]))


def _not_found(reason: MatchFailure, **counts) -> LocateResult:
    log.info("Target not found", extra={"extra": {"reason": reason.value, **counts}})
    return LocateResult(NOT_FOUND, reason, **counts)


def _write_debug(opts: MatchOptions, name: str, img: np.ndarray) -> None:
    if not opts.debug_dir:
        return
    out = Path(opts.debug_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / f"{name}.png"
    if not cv2.imwrite(str(path), img):
        log.warning("Could not write debug image", extra={"extra": {"path": str(path)}})


def _run(
    reference: np.ndarray,
    target: np.ndarray,
    feats_ref: FeatureSet,
    feats_tgt: FeatureSet,
    target_size,
    opts: MatchOptions,
) -> LocateResult:
    """
    Shared tail of both entry points: match → RANSAC → region check.
    `reference`/`target` are the images the features were computed on.
    """
    # 1) Mutual nearest neighbours + distance window
    dm = match_descriptors(feats_tgt.descriptors, feats_ref.descriptors, opts.min_match_score)
    if dm.failure in (MatchFailure.EMPTY_DESCRIPTORS, MatchFailure.NO_MATCHES):
        return _not_found(dm.failure, total_matches=len(dm.matches))

    if opts.debug:
        log.info(
            "Descriptor matches",
            extra={"extra": {
                "ref_kps": len(feats_ref.keypoints),
                "tgt_kps": len(feats_tgt.keypoints),
                "matches": len(dm.matches),
                "good": len(dm.good),
                "min_dist": dm.min_distance,
                "max_dist": dm.max_distance,
            }},
        )
        _write_debug(
            opts, "matches",
            draw_matches_side_by_side(target, reference, feats_tgt.keypoints, feats_ref.keypoints, dm.good),
        )

    if dm.failure is not None:
        return _not_found(dm.failure, total_matches=len(dm.matches), good_matches=len(dm.good))

    # 2) RANSAC homography target -> reference
    hr = homography_ransac_from_matches(feats_tgt.keypoints, feats_ref.keypoints, dm.good, opts.ransac)
    counts = dict(total_matches=len(dm.matches), good_matches=len(dm.good), inliers=hr.inliers)
    if not hr.ok:
        return _not_found(MatchFailure.HOMOGRAPHY_UNAVAILABLE, **counts)

    # 3) Projected box must sit inside the reference and keep the target's shape
    region, failure = validate_region(
        hr.H,
        target_size,
        _size(reference),
        aspect_tolerance=opts.aspect_tolerance,
        bounds_tolerance_px=opts.bounds_tolerance_px,
    )
    if failure is not None:
        res = _not_found(failure, **counts)
        res.rmse_px = hr.rmse_px
        res.homography = hr.H
        return res

    if opts.debug:
        log.info("Target located", extra={"extra": {**region.to_dict(), **counts, "rmse_px": hr.rmse_px}})
    return LocateResult(region, None, rmse_px=hr.rmse_px, homography=hr.H, **counts)


def locate(reference: np.ndarray | ImageFrame, target: np.ndarray | ImageFrame, options: Optional[MatchOptions] = None) -> LocateResult:
    """
    Find `target` inside `reference` from scratch (extract → match → fit → check).

    Args:
        reference: large image (BGR, BGRA or gray), e.g. a screen capture
        target: small image to look for, e.g. an icon
        options: MatchOptions; scale shrinks both images before matching

    Returns:
        LocateResult whose region is in original reference pixels, or
        Region.NOT_FOUND with the failing stage in `failure`.

    Raises:
        InvalidScaleError: scale outside (0, 1]
    """
    opts = options or MatchOptions()
    scale = check_scale(opts.scale)

    ref = as_array(reference)
    tgt = as_array(target)
    ref_s = downscale(ref, scale)
    tgt_s = downscale(tgt, scale)

    extractor = FeatureExtractor(opts.features)
    feats_ref = extractor.detect_and_compute(ref_s)
    feats_tgt = extractor.detect_and_compute(tgt_s)

    if opts.debug:
        _write_debug(opts, "reference_keypoints", draw_keypoints(ref_s, feats_ref.keypoints))
        _write_debug(opts, "target_keypoints", draw_keypoints(tgt_s, feats_tgt.keypoints))

    res = _run(ref_s, tgt_s, feats_ref, feats_tgt, _size(tgt_s), opts)
    if res.ok and scale != 1.0:
        res.region = _rescale(res.region, 1.0 / scale, _size(ref))
    return res


def _rescale(region: Region, factor: float, bounds) -> Region:
    out = region.scaled(factor)
    w, h = bounds
    x0, y0 = max(0, out.x), max(0, out.y)
    x1, y1 = min(w, out.x + out.width), min(h, out.y + out.height)
    return Region(x0, y0, x1 - x0, y1 - y0)


def _cached_features(kps, des) -> FeatureSet:
    # No descriptors means nothing to match, whatever the keypoints say
    if des is None or np.asarray(des).size == 0:
        return FeatureSet.empty()
    return FeatureSet.create(kps, des)


def locate_with_descriptors(
    reference: np.ndarray | ImageFrame,
    target: np.ndarray | ImageFrame,
    ref_keypoints: Sequence[cv2.KeyPoint],
    ref_descriptors: Optional[np.ndarray],
    tgt_keypoints: Sequence[cv2.KeyPoint],
    tgt_descriptors: Optional[np.ndarray],
    options: Optional[MatchOptions] = None,
) -> LocateResult:
    """
    Same as `locate`, reusing keypoints/descriptors computed earlier with
    `extract` (e.g. one cached reference frame, many targets). The images only
    provide sizes and debug drawings; `options.scale` is validated but not applied.

    Raises:
        InvalidScaleError: scale outside (0, 1]
    """
    opts = options or MatchOptions()
    check_scale(opts.scale)
    ref = as_array(reference)
    tgt = as_array(target)
    feats_ref = _cached_features(ref_keypoints, ref_descriptors)
    feats_tgt = _cached_features(tgt_keypoints, tgt_descriptors)
    return _run(ref, tgt, feats_ref, feats_tgt, _size(tgt), opts)


def match(reference: np.ndarray | ImageFrame, target: np.ndarray | ImageFrame, options: Optional[MatchOptions] = None) -> Region:
    """Region of `target` in `reference`, or Region.NOT_FOUND."""
    return locate(reference, target, options).region


def match_with_descriptors(
    reference: np.ndarray | ImageFrame,
    target: np.ndarray | ImageFrame,
    ref_keypoints: Sequence[cv2.KeyPoint],
    ref_descriptors: Optional[np.ndarray],
    tgt_keypoints: Sequence[cv2.KeyPoint],
    tgt_descriptors: Optional[np.ndarray],
    options: Optional[MatchOptions] = None,
) -> Region:
    """Region from precomputed features, or Region.NOT_FOUND."""
    return locate_with_descriptors(
        reference, target, ref_keypoints, ref_descriptors, tgt_keypoints, tgt_descriptors, options
    ).region
