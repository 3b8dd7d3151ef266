"""
Unit tests for feature extraction, descriptor matching and RANSAC
"""

import pytest
import numpy as np
import cv2
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import FeatureSet, MatchFailure
from locate import features
from locate.features import (
    FeatureExtractor,
    distance_window,
    estimate_homography,
    extract,
    homography_ransac_from_matches,
    keypoint_budget,
    match_descriptors,
)
from locate.options import FeatureConfig, RansacConfig
from tests.synthetic import make_icon


def _flip_bits(row: np.ndarray, nbits: int) -> np.ndarray:
    """Copy of a descriptor row with its first `nbits` bits inverted."""
    out = row.copy()
    for k in range(nbits):
        out[k // 8] ^= np.uint8(1 << (k % 8))
    return out


@pytest.fixture
def ladder():
    """Reference descriptors plus targets at Hamming distance 0..9 from rows 0..9."""
    rng = np.random.default_rng(7)
    des_ref = rng.integers(0, 256, size=(50, 32), dtype=np.uint8)
    des_tgt = np.stack([_flip_bits(des_ref[i], i) for i in range(10)])
    return des_tgt, des_ref


class TestKeypointBudget:
    """Keypoint budget grows with area but never drops below the floor"""

    def test_floor_for_small_images(self):
        """Icons get the 500 keypoint floor"""
        assert keypoint_budget(100 * 50) == 500
        assert keypoint_budget(0) == 500

    def test_scales_with_area(self):
        """Half a percent of the pixel count for large images"""
        assert keypoint_budget(1000 * 800) == 4000
        assert keypoint_budget(1920 * 1080) == int(1920 * 1080 * 0.005)

    def test_detector_receives_budget(self, monkeypatch):
        """ORB is created with the area-derived budget for each image"""
        seen = []
        real = cv2.ORB_create

        def spy(*args, **kwargs):
            seen.append(kwargs["nfeatures"])
            return real(*args, **kwargs)

        monkeypatch.setattr(features.cv2, "ORB_create", spy)
        extract(np.zeros((800, 1000), dtype=np.uint8))
        extract(np.zeros((50, 100), dtype=np.uint8))
        assert seen == [4000, 500]


class TestExtract:
    """Test cases for extract()"""

    def test_zero_area_image_returns_empty_set(self):
        """Zero-area images produce an empty FeatureSet instead of failing"""
        for img in (np.zeros((0, 0), np.uint8), np.zeros((0, 10, 3), np.uint8), np.zeros((10, 0), np.uint8)):
            fs = extract(img)
            assert fs.is_empty
            assert fs.descriptors.shape == (0, 32)

    def test_flat_image_returns_empty_set(self):
        """No texture, no keypoints"""
        fs = extract(np.full((120, 200, 3), 128, dtype=np.uint8))
        assert fs.is_empty
        assert len(fs.descriptors) == 0

    @pytest.mark.parametrize("shape", [(1, 1, 3), (1, 1), (5, 6, 3), (20, 400), (400, 20)])
    def test_tiny_image_returns_empty_set(self, shape):
        """Images narrower than the detector border give an empty set, not a cv2.error"""
        rng = np.random.default_rng(0)
        img = rng.integers(0, 256, size=shape, dtype=np.uint8)
        fs = extract(img)
        assert fs.is_empty
        assert fs.descriptors.shape == (0, 32)

    def test_min_side_follows_edge_threshold(self):
        assert FeatureExtractor().min_side() == 21
        assert FeatureExtractor(FeatureConfig(edge_threshold=31)).min_side() == 63
        assert FeatureExtractor(FeatureConfig(method="akaze")).min_side() == 8

    def test_tiny_image_akaze(self):
        rng = np.random.default_rng(1)
        img = rng.integers(0, 256, size=(3, 3), dtype=np.uint8)
        assert FeatureExtractor(FeatureConfig(method="akaze")).detect_and_compute(img).is_empty

    def test_detector_error_returns_empty_set(self, monkeypatch):
        """An OpenCV failure inside the detector is reported as no features"""

        class Broken:
            def detectAndCompute(self, image, mask):
                raise cv2.error("pyramid level collapsed")

        monkeypatch.setattr(FeatureExtractor, "_create", lambda self, area: Broken())
        fs = extract(make_icon(200, 120, seed=3))
        assert fs.is_empty

    def test_keypoints_align_with_descriptors(self):
        """descriptor[i] describes keypoint[i]"""
        kps, des = extract(make_icon(200, 120, seed=3))
        assert len(kps) > 0
        assert len(kps) == len(des)
        assert des.dtype == np.uint8
        assert des.shape[1] == 32

    def test_descriptors_are_read_only(self):
        """Returned descriptors cannot be modified in place"""
        fs = extract(make_icon(200, 120, seed=3))
        with pytest.raises(ValueError):
            fs.descriptors[0, 0] = 0

    def test_extract_is_deterministic(self):
        """Extracting twice yields identical keypoints and descriptors"""
        img = make_icon(160, 90, seed=11)
        a = extract(img)
        b = extract(img)
        assert len(a.keypoints) == len(b.keypoints)
        assert np.array_equal(a.descriptors, b.descriptors)
        assert [k.pt for k in a.keypoints] == [k.pt for k in b.keypoints]

    def test_color_gray_and_bgra_inputs(self):
        """Color images are converted to gray internally"""
        bgr = make_icon(160, 90, seed=5)
        gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
        bgra = cv2.cvtColor(bgr, cv2.COLOR_BGR2BGRA)
        a, b, c = extract(bgr), extract(gray), extract(bgra)
        assert np.array_equal(a.descriptors, b.descriptors)
        assert np.array_equal(a.descriptors, c.descriptors)

    def test_small_icon_yields_keypoints(self):
        """A 100x50 icon is big enough for the default ORB borders"""
        fs = extract(make_icon(100, 50, seed=0))
        assert len(fs.keypoints) >= 4

    def test_akaze_method(self):
        """AKAZE produces binary MLDB descriptors"""
        fs = FeatureExtractor(FeatureConfig(method="akaze")).detect_and_compute(make_icon(200, 120, seed=3))
        assert len(fs.keypoints) > 0
        assert len(fs.keypoints) == len(fs.descriptors)
        assert fs.descriptors.dtype == np.uint8

    def test_unknown_method(self):
        """Unsupported detector names are rejected"""
        with pytest.raises(ValueError, match="Unsupported method"):
            FeatureExtractor(FeatureConfig(method="sift"))


class TestFeatureSet:
    """FeatureSet invariants"""

    def test_length_mismatch_rejected(self):
        """len(descriptors) must equal len(keypoints)"""
        kps = [cv2.KeyPoint(1.0, 2.0, 7.0)]
        with pytest.raises(ValueError, match="length mismatch"):
            FeatureSet.create(kps, np.zeros((2, 32), np.uint8))

    def test_empty_and_unpacking(self):
        """FeatureSet unpacks as (keypoints, descriptors)"""
        kps, des = FeatureSet.empty()
        assert kps == ()
        assert des.shape == (0, 32)


class TestMatchDescriptors:
    """Test cases for the cross-checked Hamming matcher"""

    def test_empty_sets(self):
        """Either side empty → EMPTY_DESCRIPTORS"""
        des = np.ones((5, 32), np.uint8)
        empty = np.zeros((0, 32), np.uint8)
        assert match_descriptors(empty, des).failure == MatchFailure.EMPTY_DESCRIPTORS
        assert match_descriptors(des, empty).failure == MatchFailure.EMPTY_DESCRIPTORS
        assert match_descriptors(None, des).failure == MatchFailure.EMPTY_DESCRIPTORS

    def test_exact_copies_match_mutually(self, ladder):
        """Every target row finds its own reference row"""
        _, des_ref = ladder
        dm = match_descriptors(des_ref[:10].copy(), des_ref)
        assert dm.ok
        assert len(dm.matches) == 10
        assert all(m.distance == 0 for m in dm.matches)
        assert sorted(m.trainIdx for m in dm.matches) == list(range(10))

    def test_distance_window(self, ladder):
        """Score widens the accepted window above the best match"""
        des_tgt, des_ref = ladder
        dm = match_descriptors(des_tgt, des_ref, min_match_score=3)
        assert dm.min_distance == 0
        assert dm.max_distance == 3
        assert len(dm.matches) == 10
        assert sorted(int(m.distance) for m in dm.good) == [0, 1, 2, 3]
        assert dm.ok

    def test_window_too_tight_is_insufficient(self, ladder):
        """Fewer than four accepted matches → INSUFFICIENT_MATCHES"""
        des_tgt, des_ref = ladder
        dm = match_descriptors(des_tgt, des_ref, min_match_score=2)
        assert len(dm.good) == 3
        assert dm.failure == MatchFailure.INSUFFICIENT_MATCHES

    def test_score_zero_keeps_ties_only(self, ladder):
        """0 accepts only matches tied with the best"""
        des_tgt, des_ref = ladder
        dm = match_descriptors(des_tgt, des_ref, min_match_score=0)
        assert [int(m.distance) for m in dm.good] == [0]

    def test_score_is_clamped(self, ladder):
        """Scores above 256 act as 256; negative scores act as 0"""
        des_tgt, des_ref = ladder
        assert len(match_descriptors(des_tgt, des_ref, min_match_score=10_000).good) == 10
        assert len(match_descriptors(des_tgt, des_ref, min_match_score=-5).good) == 1
        assert distance_window(12.0, 999) == 12.0 + 256
        assert distance_window(12.0, -1) == 12.0

    def test_no_matches(self, monkeypatch):
        """A matcher returning nothing → NO_MATCHES"""

        class _Nothing:
            def match(self, a, b):
                return []

        monkeypatch.setattr(features.cv2, "BFMatcher", lambda *a, **k: _Nothing())
        dm = match_descriptors(np.ones((5, 32), np.uint8), np.ones((5, 32), np.uint8))
        assert dm.failure == MatchFailure.NO_MATCHES

    def test_descriptor_width_mismatch(self):
        """ORB vs AKAZE descriptors cannot be compared"""
        with pytest.raises(ValueError, match="descriptor length mismatch"):
            match_descriptors(np.ones((5, 32), np.uint8), np.ones((5, 61), np.uint8))


def _grid_points(n: int = 25, seed: int = 1) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(0, 200, size=(n, 2)).astype(np.float32)


def _normalized(H: np.ndarray) -> np.ndarray:
    return H / H[2, 2]


class TestEstimateHomography:
    """Test cases for RANSAC homography estimation"""

    H_TRUE = np.array([[0.9, -0.1, 40.0], [0.15, 1.1, 25.0], [1e-4, -2e-4, 1.0]])

    def _project(self, pts):
        return cv2.perspectiveTransform(pts.reshape(-1, 1, 2), self.H_TRUE).reshape(-1, 2)

    def test_recovers_known_transform(self):
        """Clean correspondences give back the generating homography"""
        src = _grid_points()
        hr = estimate_homography(src, self._project(src))
        assert hr.ok
        assert hr.inliers == len(src)
        assert np.allclose(_normalized(hr.H), self.H_TRUE, atol=1e-3)
        assert hr.rmse_px < 0.1

    def test_tolerates_outliers(self):
        """A minority of wrong pairs is rejected as outliers"""
        src = _grid_points(30)
        dst = self._project(src)
        rng = np.random.default_rng(3)
        dst[:6] = rng.uniform(0, 400, size=(6, 2))
        hr = estimate_homography(src, dst, RansacConfig(reproj_px=2.0))
        assert hr.ok
        assert hr.inliers >= 24
        assert np.allclose(_normalized(hr.H), self.H_TRUE, atol=1e-2)
        # Tolerate RANSAC variance: check a projected point, not exact bits
        p = cv2.perspectiveTransform(np.float32([[[100, 100]]]), hr.H).reshape(2)
        q = cv2.perspectiveTransform(np.float32([[[100, 100]]]), self.H_TRUE).reshape(2)
        assert np.linalg.norm(p - q) < 1.0

    def test_too_few_points(self):
        """Three pairs cannot define a homography"""
        src = _grid_points(3)
        hr = estimate_homography(src, src)
        assert not hr.ok
        assert hr.total == 3

    def test_collinear_points_unavailable(self):
        """Degenerate (collinear) configurations give no transform"""
        t = np.linspace(0, 100, 12, dtype=np.float32)
        src = np.stack([t, 2 * t + 5], axis=1)
        dst = src + 10
        hr = estimate_homography(src, dst)
        assert not hr.ok
        assert hr.H is None

    def test_min_inliers(self):
        """Consensus smaller than min_inliers is reported as unavailable"""
        src = _grid_points(10)
        hr = estimate_homography(src, self._project(src), RansacConfig(min_inliers=11))
        assert not hr.ok

    def test_point_count_mismatch(self):
        """src/dst must pair up"""
        with pytest.raises(ValueError):
            estimate_homography(_grid_points(5), _grid_points(6))

    def test_from_matches(self):
        """Keypoints + DMatch lists are turned into point pairs"""
        src = _grid_points(12)
        dst = self._project(src)
        kps_t = [cv2.KeyPoint(float(x), float(y), 7.0) for x, y in src]
        kps_r = [cv2.KeyPoint(float(x), float(y), 7.0) for x, y in dst]
        matches = [cv2.DMatch(i, i, 0.0) for i in range(12)]
        hr = homography_ransac_from_matches(kps_t, kps_r, matches)
        assert hr.ok
        assert np.allclose(_normalized(hr.H), self.H_TRUE, atol=1e-2)

    def test_from_matches_bad_index(self):
        """Match indices must point into the keypoint sequences"""
        kps = [cv2.KeyPoint(1.0, 1.0, 7.0)] * 4
        with pytest.raises(ValueError):
            homography_ransac_from_matches(kps, kps, [cv2.DMatch(0, 9, 0.0)] * 4)
