"""
Layer 1 — Frames
Raw sensor frames handed from a frame source to the analysis pipeline.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple


class FrameFormat(str, Enum):
    """Buffer layout of a raw frame."""
    YUV_420_888 = "YUV_420_888"   # Planar luma + two chroma planes (U, V)
    JPEG = "JPEG"                 # Compressed image in plane 0
    BGR888 = "BGR888"             # Packed BGR pixels in plane 0 (OpenCV capture)


@dataclass(frozen=True)
class Plane:
    """One image plane of a raw frame."""
    data: bytes
    row_stride: int
    pixel_stride: int = 1


@dataclass(frozen=True)
class Frame:
    """
    Immutable raw camera frame.

    Owned by the producer until handed to the pipeline, then by the pipeline
    until it is consumed or dropped. close() releases the plane buffers.
    """
    planes: Tuple[Plane, ...]
    format: FrameFormat
    width: int
    height: int
    rotation_degrees: int = 0
    closed: bool = field(default=False, repr=False, compare=False)

    def close(self):
        """Release the frame buffers. Safe to call more than once."""
        object.__setattr__(self, 'planes', ())
        object.__setattr__(self, 'closed', True)

    @classmethod
    def from_bgr(cls, image, rotation_degrees: int = 0) -> "Frame":
        """Wrap an OpenCV BGR image as a BGR888 frame."""
        height, width = image.shape[:2]
        plane = Plane(data=image.tobytes(), row_stride=width * 3, pixel_stride=3)
        return cls(
            planes=(plane,),
            format=FrameFormat.BGR888,
            width=width,
            height=height,
            rotation_degrees=rotation_degrees,
        )

    @classmethod
    def from_encoded(cls, data: bytes, width: int = 0, height: int = 0,
                     rotation_degrees: int = 0) -> "Frame":
        """Wrap a compressed image (JPEG/PNG) as a JPEG frame."""
        plane = Plane(data=bytes(data), row_stride=0)
        return cls(
            planes=(plane,),
            format=FrameFormat.JPEG,
            width=width,
            height=height,
            rotation_degrees=rotation_degrees,
        )
