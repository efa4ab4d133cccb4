"""
Layer 2 – Image Readjustment
Rotation normalization and ID-3 ratio cutout cropping.
"""
from .rotator import rotate_bitmap
from .cutout import (
    DOCUMENT_FRAME_RATIO,
    CutoutRegion,
    compute_cutout_region,
    crop_to_cutout,
)

__all__ = [
    'rotate_bitmap',
    'DOCUMENT_FRAME_RATIO',
    'CutoutRegion',
    'compute_cutout_region',
    'crop_to_cutout',
]
