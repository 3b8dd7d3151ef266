from __future__ import annotations

import argparse
import json
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import yaml

from capture.screen import CaptureError
from common.logging_setup import get_logger, setup_logging
from common.types import InvalidScaleError, Region
from locate.correlate import LocateResult, locate
from locate.options import MatchOptions
from locate.preprocess import crop, roi_from_keyphrase
from locate.template import find_template


log = get_logger("locate.pipeline")

EXIT_FOUND = 0
EXIT_NOT_FOUND = 1
EXIT_USAGE = 2
EXIT_CAPTURE = 3


def _load_yaml(path: str) -> Dict:
    if not Path(path).exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _read_image(path: str) -> np.ndarray:
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Cannot read image: {path}")
    return img


def _reference(args) -> Tuple[np.ndarray, Tuple[int, int]]:
    """Reference image and the screen position of its top-left pixel."""
    if args.screen:
        from capture.screen import select_backend

        backend = select_backend()
        frame = backend.capture_window(args.window) if args.window else backend.capture_region()
        log.info("Captured reference", extra={"extra": frame.to_meta()})
        return frame.frame, frame.origin
    return _read_image(args.reference), (0, 0)


def _options(P: Dict, args) -> MatchOptions:
    opts = MatchOptions.from_dict(P)
    over = {}
    if args.scale is not None:
        over["scale"] = args.scale
    if args.min_score is not None:
        over["min_match_score"] = args.min_score
    if args.debug:
        over["debug"] = True
    if args.debug_dir:
        over["debug_dir"] = args.debug_dir
    return replace(opts, **over) if over else opts


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Locate a target image inside a reference image or the screen")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--target", required=True, help="Image to look for (e.g. an icon)")
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--reference", help="Image to search in")
    src.add_argument("--screen", action="store_true", help="Search the current screen")
    ap.add_argument("--window", default=None, help="With --screen: capture this window title only")
    ap.add_argument("--roi", default=None, help='Search only part of the reference, e.g. "right 1/2 top 1/3"')
    ap.add_argument("--method", choices=("orb", "template"), default="orb")
    ap.add_argument("--scale", type=float, default=None, help="Downscale factor in (0, 1]")
    ap.add_argument("--min-score", type=int, default=None, help="Match distance window, 0..256")
    ap.add_argument("--debug", action="store_true")
    ap.add_argument("--debug-dir", default=None, help="Write debug visualisations here")
    ap.add_argument("--click", action="store_true", help="Click the centre of the found region")
    ap.add_argument("--log-level", default=None)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    P = _load_yaml(args.config)
    setup_logging(args.log_level or P.get("logging", {}).get("level", "INFO"), force=True)

    try:
        opts = _options(P, args)
        target = _read_image(args.target)
        reference, origin = _reference(args)
        roi = None
        if args.roi:
            roi = roi_from_keyphrase(args.roi, (reference.shape[1], reference.shape[0]))
            reference = crop(reference, roi)
            log.info("Searching region of interest", extra={"extra": {"roi": args.roi, **roi.to_dict()}})

        t0 = time.perf_counter()
        if args.method == "template":
            region = find_template(
                reference, target,
                scale=opts.scale,
                grayscale=opts.template.grayscale,
                threshold=opts.template.threshold,
            )
            result = LocateResult(region)
        else:
            result = locate(reference, target, opts)
        dt_ms = int(1000.0 * (time.perf_counter() - t0))
    except CaptureError as e:
        log.error("Capture failed", extra={"extra": {"error": str(e)}})
        return EXIT_CAPTURE
    except (InvalidScaleError, ValueError, FileNotFoundError) as e:
        log.error("Bad invocation", extra={"extra": {"error": str(e), "type": type(e).__name__}})
        return EXIT_USAGE

    # Report in full reference coordinates
    if roi is not None:
        result.region = result.region.offset(roi.x, roi.y)

    row = {"method": args.method, "latency_ms": dt_ms, **result.to_dict()}
    sys.stdout.write(json.dumps(row) + "\n")
    sys.stdout.flush()

    region: Region = result.region
    if not region.found:
        return EXIT_NOT_FOUND
    if args.click:
        from capture.input import click_region

        click_region(region.offset(*origin))
    return EXIT_FOUND


if __name__ == "__main__":
    sys.exit(main())
