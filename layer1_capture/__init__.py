"""
Layer 1 — Capture
Frames, color conversion and frame sources with keep-only-latest delivery.
"""
from .frames import Frame, FrameFormat, Plane
from .color import ColorConverter
from .source import FrameSource, ThreadedFrameSource, ManualFrameSource
from .camera import CameraFrameSource

__all__ = [
    'Frame',
    'FrameFormat',
    'Plane',
    'ColorConverter',
    'FrameSource',
    'ThreadedFrameSource',
    'ManualFrameSource',
    'CameraFrameSource',
]
