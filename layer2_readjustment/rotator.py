"""
Layer 2 – Rotation
Responsibility: Upright a bitmap using the sensor rotation metadata
"""
import cv2
import logging
import numpy as np

logger = logging.getLogger(__name__)

_RIGHT_ANGLES = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


def rotate_bitmap(image: np.ndarray, rotation_degrees: int) -> np.ndarray:
    """
    Rotate an image clockwise around its center, growing the canvas to fit

    Args:
        image: BGR image
        rotation_degrees: Clockwise rotation in whole degrees

    Returns:
        numpy.ndarray: The same object for a 0° rotation, otherwise a new image
    """
    degrees = int(rotation_degrees) % 360
    if degrees == 0:
        return image

    if degrees in _RIGHT_ANGLES:
        return cv2.rotate(image, _RIGHT_ANGLES[degrees])

    height, width = image.shape[:2]
    center = (width / 2.0, height / 2.0)

    # OpenCV angles are counter-clockwise
    matrix = cv2.getRotationMatrix2D(center, -degrees, 1.0)
    cos = abs(matrix[0, 0])
    sin = abs(matrix[0, 1])
    out_width = int(round(height * sin + width * cos))
    out_height = int(round(height * cos + width * sin))

    matrix[0, 2] += out_width / 2.0 - center[0]
    matrix[1, 2] += out_height / 2.0 - center[1]

    logger.debug(f"Rotating {width}x{height} by {degrees}° -> {out_width}x{out_height}")
    return cv2.warpAffine(image, matrix, (out_width, out_height), flags=cv2.INTER_LINEAR)
