from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import cv2
import mss
import numpy as np

from common.logging_setup import get_logger
from common.types import ImageFrame
from common.utils import iso_now_ms


log = get_logger("capture")


class CaptureError(RuntimeError):
    """Screen or window capture failed."""


def to_image(buffer: Any) -> np.ndarray:
    """
    Convert a native pixel buffer (mss ScreenShot or an array) to BGR uint8.

    Four-channel buffers are taken as BGRA, which is what mss returns on every
    platform.
    """
    arr = np.asarray(buffer)
    if arr.ndim == 2:
        return arr.astype(np.uint8, copy=False)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise CaptureError(f"Unsupported pixel buffer shape {arr.shape}")
    if arr.shape[2] == 4:
        return cv2.cvtColor(arr.astype(np.uint8, copy=False), cv2.COLOR_BGRA2BGR)
    return np.ascontiguousarray(arr, dtype=np.uint8)


class ScreenCapture(ABC):
    """
    Capability interface for grabbing images from the desktop.

    Implementations return ImageFrame objects holding BGR uint8 images.
    """

    @abstractmethod
    def capture_region(
        self,
        x: int = 0,
        y: int = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> ImageFrame:
        """Grab a screen rectangle; missing width/height extend to the primary monitor's edge."""

    @abstractmethod
    def capture_window(self, title: str) -> ImageFrame:
        """Grab the on-screen area of the first window whose title contains `title`."""

    def to_image(self, buffer: Any) -> np.ndarray:
        return to_image(buffer)


@dataclass
class MssScreenCapture(ScreenCapture):
    """
    Region capture through mss (Windows, macOS, X11).

    Args:
        monitor: index into mss `monitors` used for default sizes (1 = primary)
    """
    monitor: int = 1

    def _primary(self, sct) -> Dict[str, int]:
        mons = sct.monitors
        if len(mons) <= self.monitor:
            raise CaptureError(f"Monitor {self.monitor} not available ({len(mons) - 1} found)")
        return mons[self.monitor]

    def _grab(self, box: Dict[str, int], source: str) -> ImageFrame:
        with mss.mss() as sct:
            shot = sct.grab(box)
        img = self.to_image(shot)
        h, w = img.shape[:2]
        return ImageFrame(
            ts=iso_now_ms(), width=w, height=h, frame=img, source=source,
            origin=(int(box["left"]), int(box["top"])),
        )

    def capture_region(
        self,
        x: int = 0,
        y: int = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> ImageFrame:
        if width is None or height is None:
            # Screen size is queried per call; monitors can change between calls
            with mss.mss() as sct:
                mon = self._primary(sct)
            if width is None:
                width = int(mon["width"]) - (int(x) - int(mon["left"]))
            if height is None:
                height = int(mon["height"]) - (int(y) - int(mon["top"]))
        if width <= 0 or height <= 0:
            raise CaptureError(f"Empty capture region {width}x{height} at ({x},{y})")
        box = {"left": int(x), "top": int(y), "width": int(width), "height": int(height)}
        log.debug("Capturing region", extra={"extra": box})
        return self._grab(box, "screen")

    def find_window(self, title: str) -> Optional[Tuple[int, int, int, int]]:
        """(left, top, width, height) of a window by title, or None."""
        raise CaptureError(f"Window capture is not supported on {sys.platform}")

    def capture_window(self, title: str) -> ImageFrame:
        rect = self.find_window(title)
        if rect is None:
            raise CaptureError(f"No window titled {title!r}")
        left, top, width, height = rect
        if width <= 0 or height <= 0:
            raise CaptureError(f"Window {title!r} has no visible area (minimized?)")
        box = {"left": int(left), "top": int(top), "width": int(width), "height": int(height)}
        log.debug("Capturing window", extra={"extra": {"title": title, **box}})
        return self._grab(box, title)


@dataclass
class WindowsScreenCapture(MssScreenCapture):
    """mss capture plus window lookup by title through pyautogui (Windows only)."""

    def find_window(self, title: str) -> Optional[Tuple[int, int, int, int]]:
        import pyautogui  # imported lazily: needs a desktop session

        wins = [w for w in pyautogui.getWindowsWithTitle(title) if w.title]
        if not wins:
            return None
        w = wins[0]
        return (int(w.left), int(w.top), int(w.width), int(w.height))


def select_backend(platform: Optional[str] = None) -> ScreenCapture:
    """Capture backend for the running (or given) platform."""
    plat = platform or sys.platform
    if plat.startswith("win"):
        return WindowsScreenCapture()
    if plat == "darwin" or plat.startswith("linux"):
        return MssScreenCapture()
    raise CaptureError(f"No capture backend for platform {plat!r}")
