"""
Capture & input: desktop collaborators of the locator

This package provides:
- Screen and window capture into ImageFrames (mss; window lookup via pyautogui on Windows)
- BGRA pixel buffer → BGR image conversion
- Click injection at a point or at the centre of a located Region
"""
from .input import click_at, click_region
from .screen import CaptureError, MssScreenCapture, ScreenCapture, WindowsScreenCapture, select_backend, to_image

__all__ = [
    "CaptureError",
    "MssScreenCapture",
    "ScreenCapture",
    "WindowsScreenCapture",
    "click_at",
    "click_region",
    "select_backend",
    "to_image",
]
