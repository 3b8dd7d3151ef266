from __future__ import annotations
"""
Tunables for the locator, loadable from config/params.yaml.

Layout of the YAML file (every key optional):

    matching:   {min_match_score, scale, debug, debug_dir}
    features:   {method, budget_ratio, min_features, scale_factor, nlevels,
                 edge_threshold, patch_size, fast_threshold}
    ransac:     {reproj_px, max_iters, confidence, min_inliers}
    validation: {aspect_tolerance, bounds_tolerance_px}
    template:   {threshold, grayscale}
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import yaml


@dataclass
class FeatureConfig:
    method: str = "orb"            # "orb" | "akaze"
    budget_ratio: float = 0.005    # keypoints per pixel of image area
    min_features: int = 500
    scale_factor: float = 1.2
    nlevels: int = 8
    edge_threshold: int = 10
    patch_size: int = 21
    fast_threshold: int = 20


@dataclass
class RansacConfig:
    reproj_px: float = 3.0
    max_iters: int = 2000
    confidence: float = 0.995
    min_inliers: int = 4


@dataclass
class TemplateConfig:
    threshold: Optional[float] = None
    grayscale: bool = False


@dataclass
class MatchOptions:
    """
    Options for one localization call.

    min_match_score: distance window above the best match, clamped to [0, 256].
    scale: uniform downscale applied to both images before matching, in (0, 1].
    debug: log stage statistics; with debug_dir also write visualisations there.
    """
    min_match_score: int = 230
    scale: float = 1.0
    debug: bool = False
    debug_dir: Optional[str] = None
    aspect_tolerance: float = 0.2
    bounds_tolerance_px: float = 2.0
    features: FeatureConfig = field(default_factory=FeatureConfig)
    ransac: RansacConfig = field(default_factory=RansacConfig)
    template: TemplateConfig = field(default_factory=TemplateConfig)

    @classmethod
    def from_dict(cls, P: Optional[Dict[str, Any]]) -> "MatchOptions":
        P = P or {}
        m = P.get("matching", {}) or {}
        v = P.get("validation", {}) or {}
        dbg_dir = m.get("debug_dir")
        return cls(
            min_match_score=int(m.get("min_match_score", 230)),
            scale=float(m.get("scale", 1.0)),
            debug=bool(m.get("debug", False)),
            debug_dir=str(dbg_dir) if dbg_dir else None,
            aspect_tolerance=float(v.get("aspect_tolerance", 0.2)),
            bounds_tolerance_px=float(v.get("bounds_tolerance_px", 2.0)),
            features=_section(FeatureConfig, P.get("features")),
            ransac=_section(RansacConfig, P.get("ransac")),
            template=_section(TemplateConfig, P.get("template")),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "MatchOptions":
        with open(path, "r") as f:
            return cls.from_dict(yaml.safe_load(f))


def _section(kind, raw: Optional[Dict[str, Any]]):
    """Build a config dataclass from a YAML mapping, coercing to the default's type."""
    raw = raw or {}
    base = kind()
    kwargs = {}
    for f in fields(kind):
        if f.name not in raw or raw[f.name] is None:
            continue
        default = getattr(base, f.name)
        kwargs[f.name] = type(default)(raw[f.name]) if default is not None else raw[f.name]
    return kind(**kwargs)
