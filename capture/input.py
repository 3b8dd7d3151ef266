from __future__ import annotations

import time

from common.logging_setup import get_logger
from common.types import Region


log = get_logger("capture.input")


def click_at(x: int, y: int, settle_s: float = 0.05) -> None:
    """
    Move the cursor to (x, y), give the target window a moment to register
    the hover, then left-click there.
    """
    import pyautogui  # imported lazily: needs a desktop session

    x, y = int(x), int(y)
    pyautogui.moveTo(x, y)
    if settle_s > 0:
        time.sleep(settle_s)
    pyautogui.click(x, y)
    log.info("Clicked", extra={"extra": {"x": x, "y": y}})


def click_region(region: Region, settle_s: float = 0.05) -> None:
    """Click the centre of a located region."""
    if not region.found:
        raise ValueError("Cannot click a region that was not found")
    cx, cy = region.center
    click_at(cx, cy, settle_s=settle_s)
