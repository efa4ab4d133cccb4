"""
Layer 2 – Cutout Cropping
Responsibility: Isolate the passport (or just its MRZ band) without document
detection, from the ISO/IEC 7810 ID-3 page ratio
Output: Cropped BGR image, or the original image when no valid crop exists
"""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

# Passport's size (ISO/IEC 7810 ID-3) is 125mm × 88mm
DOCUMENT_FRAME_RATIO = 1.42

PORTRAIT_WIDTH_FILL = 0.9      # Fill 90% of the width
LANDSCAPE_HEIGHT_FILL = 0.75   # Fill 75% of the height
MRZ_ZONE_OFFSET = 0.6          # MRZ starts 60% down the data page


@dataclass(frozen=True)
class CutoutRegion:
    """Rectangle in bitmap pixel coordinates"""
    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height

    def fits(self, bitmap_width: int, bitmap_height: int) -> bool:
        """Check the region is non-empty and lies inside the bitmap"""
        return (
            self.width > 0 and self.height > 0
            and self.left >= 0 and self.top >= 0
            and self.right <= bitmap_width and self.bottom <= bitmap_height
        )


def compute_cutout_region(bitmap_width: int, bitmap_height: int,
                          crop_to_mrz: bool) -> Optional[CutoutRegion]:
    """
    Compute the document (or MRZ band) cutout for a bitmap size

    Args:
        bitmap_width: Image width in pixels
        bitmap_height: Image height in pixels
        crop_to_mrz: Skip the photo/data area and keep only the MRZ band

    Returns:
        CutoutRegion inside the bitmap, or None if it is empty or out of bounds
    """
    if bitmap_height > bitmap_width:
        width = bitmap_width * PORTRAIT_WIDTH_FILL
        height = width / DOCUMENT_FRAME_RATIO
    else:
        height = bitmap_height * LANDSCAPE_HEIGHT_FILL
        width = height * DOCUMENT_FRAME_RATIO

    mrz_zone_offset = height * MRZ_ZONE_OFFSET if crop_to_mrz else 0.0
    top_offset = (bitmap_height - height) / 2 + mrz_zone_offset
    left_offset = (bitmap_width - width) / 2

    final_width = min(int(width), bitmap_width - int(left_offset))
    final_height = min(int(height - mrz_zone_offset), bitmap_height - int(top_offset))

    # A landscape crop wider than a near-square frame has a negative left
    # offset and is rejected below
    region = CutoutRegion(
        left=int(left_offset),
        top=int(top_offset),
        width=final_width,
        height=final_height,
    )
    if not region.fits(bitmap_width, bitmap_height):
        logger.debug(f"No valid cutout for {bitmap_width}x{bitmap_height}: {region}")
        return None
    return region


def crop_to_cutout(image: np.ndarray, crop_to_mrz: bool) -> np.ndarray:
    """
    Crop an image to its document cutout

    Cropping is best effort: if no valid region exists the original image
    is returned unchanged.

    Args:
        image: BGR image
        crop_to_mrz: True for the MRZ band (live analysis), False for the whole page

    Returns:
        numpy.ndarray: New cropped image, or the original image
    """
    height, width = image.shape[:2]
    region = compute_cutout_region(width, height, crop_to_mrz)
    if region is None:
        logger.debug("Cutout skipped, using full image")
        return image

    cropped = image[region.top:region.bottom, region.left:region.right].copy()
    logger.debug(f"Cutout {region} from {width}x{height} (mrz_only={crop_to_mrz})")
    return cropped
