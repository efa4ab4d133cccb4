"""
Layer 1 — Color Conversion
Responsibility: Decode raw sensor frames into BGR bitmaps
Output: numpy.ndarray (h, w, 3) uint8
"""
import cv2
import logging
import numpy as np

from error_handlers import FrameDecodeError, UnsupportedFormatError
from .frames import Frame, FrameFormat, Plane

logger = logging.getLogger(__name__)


def _sample_plane(plane: Plane, width: int, height: int, fmt) -> np.ndarray:
    """
    Read a (height, width) sample grid out of a strided plane.

    The last row of a sensor plane is often not padded to the full row
    stride, so short buffers are zero-extended before reshaping.
    """
    pixel_stride = max(plane.pixel_stride, 1)
    row_stride = max(plane.row_stride, (width - 1) * pixel_stride + 1)
    needed = (height - 1) * row_stride + (width - 1) * pixel_stride + 1

    buf = np.frombuffer(plane.data, dtype=np.uint8)
    if buf.size < needed:
        raise FrameDecodeError(
            f"plane holds {buf.size} bytes, expected at least {needed}",
            frame_format=fmt,
        )

    full = height * row_stride
    if buf.size < full:
        buf = np.concatenate([buf, np.zeros(full - buf.size, dtype=np.uint8)])

    rows = buf[:full].reshape(height, row_stride)
    return rows[:, 0:(width - 1) * pixel_stride + 1:pixel_stride]


class ColorConverter:
    """Converts raw camera frames to decodable BGR bitmaps"""

    def to_bitmap(self, frame: Frame) -> np.ndarray:
        """
        Decode a frame into a new BGR bitmap.

        Args:
            frame: Raw frame from a frame source

        Returns:
            numpy.ndarray: BGR image with the frame's logical width/height

        Raises:
            FrameDecodeError: If the buffer is released, truncated or corrupt
            UnsupportedFormatError: If the format is unknown and the first
                plane is not a decodable image
        """
        if frame.closed or not frame.planes:
            raise FrameDecodeError("frame buffer already released", frame_format=frame.format.value)

        if frame.format == FrameFormat.YUV_420_888:
            return self._yuv420_to_bgr(frame)
        if frame.format == FrameFormat.BGR888:
            return self._bgr_passthrough(frame)
        return self._decode_compressed(frame)

    def to_nv21(self, frame: Frame) -> np.ndarray:
        """
        Repack a YUV_420_888 frame into an NV21 buffer.

        Luma rows come first, followed by interleaved chroma samples with
        plane 2 (V) ahead of plane 1 (U).

        Returns:
            numpy.ndarray: (height * 3 / 2, width) uint8 NV21 image
        """
        width, height = frame.width, frame.height
        if len(frame.planes) < 3:
            raise FrameDecodeError(
                f"YUV_420_888 frame needs 3 planes, got {len(frame.planes)}",
                frame_format=frame.format.value,
            )
        if width <= 0 or height <= 0 or width % 2 or height % 2:
            raise FrameDecodeError(
                f"YUV_420_888 frame needs even dimensions, got {width}x{height}",
                frame_format=frame.format.value,
            )

        y_plane, u_plane, v_plane = frame.planes[:3]
        chroma_w, chroma_h = width // 2, height // 2

        y = _sample_plane(y_plane, width, height, frame.format.value)
        u = _sample_plane(u_plane, chroma_w, chroma_h, frame.format.value)
        v = _sample_plane(v_plane, chroma_w, chroma_h, frame.format.value)

        vu = np.empty((chroma_h, width), dtype=np.uint8)
        vu[:, 0::2] = v
        vu[:, 1::2] = u

        return np.vstack([y, vu])

    def _yuv420_to_bgr(self, frame: Frame) -> np.ndarray:
        nv21 = self.to_nv21(frame)
        bitmap = cv2.cvtColor(nv21, cv2.COLOR_YUV2BGR_NV21)
        logger.debug(f"Decoded YUV_420_888 frame {frame.width}x{frame.height}")
        return bitmap

    def _bgr_passthrough(self, frame: Frame) -> np.ndarray:
        plane = Plane(
            data=frame.planes[0].data,
            row_stride=frame.planes[0].row_stride,
            pixel_stride=1,
        )
        packed = _sample_plane(plane, frame.width * 3, frame.height, frame.format.value)
        return packed.reshape(frame.height, frame.width, 3).copy()

    def _decode_compressed(self, frame: Frame) -> np.ndarray:
        buf = np.frombuffer(frame.planes[0].data, dtype=np.uint8)
        bitmap = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
        if bitmap is None:
            logger.warning(f"Could not decode {frame.format.value} frame ({buf.size} bytes)")
            raise UnsupportedFormatError(frame.format.value)
        logger.debug(f"Decoded {frame.format.value} frame - Shape: {bitmap.shape}")
        return bitmap
