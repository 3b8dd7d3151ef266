"""
Locate: find a small image (icon) inside a large one (screen capture)

This package provides:
- ORB keypoints + cross-checked Hamming matching + RANSAC homography, with a
  projected-box bounds and aspect-ratio check (handles rotation/scale/occlusion)
- A precomputed-features variant for matching many targets against one cached frame
- Plain normalized cross-correlation template matching for exact copies
- Region-of-interest phrases ("right 1/2 top 1/3") to search part of a screen

Entry point:
    python -m locate.pipeline --target icon.png --reference screen.png
"""
from .correlate import LocateResult, locate, locate_with_descriptors, match, match_with_descriptors
from .features import extract
from .options import MatchOptions
from .preprocess import crop, roi_from_keyphrase
from .template import find_template

__all__ = [
    "LocateResult",
    "MatchOptions",
    "crop",
    "extract",
    "find_template",
    "locate",
    "locate_with_descriptors",
    "match",
    "match_with_descriptors",
    "roi_from_keyphrase",
]
