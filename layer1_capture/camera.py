"""
Layer 1 — Camera Frame Source
Responsibility: Camera initialization, continuous frame capture, still photos
Output: BGR888 frames offered to the analysis worker
"""
import cv2
import logging
import os
import threading
from typing import Optional

import numpy as np

from error_handlers import CameraInitError, CameraNotFoundError, CaptureError
from .frames import Frame
from .source import ThreadedFrameSource

logger = logging.getLogger(__name__)


class CameraFrameSource(ThreadedFrameSource):
    """Handles USB camera initialization and streams frames to the analyzer"""

    # Default camera configuration
    DEFAULT_CONFIG = {
        'width': 1920,
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer for low latency
        'rotation': 0,     # Clockwise degrees to upright the sensor image
    }

    def __init__(self, camera_index=2, front_camera_index=0, config: Optional[dict] = None):
        """
        Initialize camera frame source

        Args:
            camera_index: V4L2 device index of the back (document) camera
            front_camera_index: V4L2 device index used when front-facing is requested
            config: Optional configuration override
        """
        super().__init__(name="camera")
        self.camera_index = camera_index
        self.front_camera_index = front_camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self.active_index: Optional[int] = None
        self._camera_lock = threading.Lock()
        self._capture_thread: Optional[threading.Thread] = None
        self._capturing = threading.Event()
        logger.info(f"Camera source created for device index {camera_index}")

    def _check_camera_exists(self, index):
        """Check if camera device exists"""
        device_path = f"/dev/video{index}"
        if not os.path.exists(device_path):
            logger.error(f"Camera device not found: {device_path}")
            raise CameraNotFoundError(index)
        return True

    def _open(self, use_front_facing: bool):
        """
        Open and configure the camera, then start the capture loop

        Raises:
            CameraNotFoundError: If camera device doesn't exist
            CameraInitError: If camera fails to initialize
        """
        index = self.front_camera_index if use_front_facing else self.camera_index
        logger.info(f"Attempting to initialize camera at index {index}")

        self._check_camera_exists(index)

        try:
            camera = cv2.VideoCapture(index, cv2.CAP_V4L2)
        except cv2.error as e:
            logger.error(f"Error initializing camera: {e}")
            raise CameraInitError(index, reason=str(e))

        if not camera.isOpened():
            logger.error(f"Failed to open camera at index {index}")
            raise CameraInitError(index, reason="Camera opened but isOpened() returned False")

        self._configure_camera(camera)

        with self._camera_lock:
            self.camera = camera
            self.active_index = index

        self._capturing.set()
        self._capture_thread = threading.Thread(
            target=self._capture_loop,
            name="camera-capture",
            daemon=True,
        )
        self._capture_thread.start()

    def _configure_camera(self, camera):
        """Apply camera configuration settings."""
        cfg = self.config
        camera.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*cfg['codec']))
        camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
        camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
        camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

        actual_width = camera.get(cv2.CAP_PROP_FRAME_WIDTH)
        actual_height = camera.get(cv2.CAP_PROP_FRAME_HEIGHT)
        actual_fps = camera.get(cv2.CAP_PROP_FPS)
        logger.info("Camera initialized successfully")
        logger.debug(f"Resolution: {actual_width}x{actual_height}")
        logger.debug(f"FPS: {actual_fps}")

    def _capture_loop(self):
        """Read frames until stopped, offering each to the analysis worker"""
        failures = 0
        while self._capturing.is_set():
            with self._camera_lock:
                camera = self.camera
                if camera is None:
                    break
                ret, image = camera.read()

            if not ret or image is None:
                failures += 1
                if failures % 30 == 1:
                    logger.warning("Failed to read frame from camera")
                self._capturing.wait(0.05)
                continue

            failures = 0
            self.offer(Frame.from_bgr(image, rotation_degrees=self.config['rotation']))

    def _close(self):
        """Stop the capture loop and release camera resources"""
        self._capturing.clear()
        thread = self._capture_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._capture_thread = None

        with self._camera_lock:
            if self.camera is not None:
                logger.info("Releasing camera")
                self.camera.release()
                self.camera = None
                self.active_index = None

    def _apply_torch(self, on: bool):
        # UVC cameras expose no torch control; the state is kept for restarts
        logger.info(f"Torch {'on' if on else 'off'} requested for /dev/video{self.active_index}")

    def take_photo(self) -> np.ndarray:
        """
        Capture a single full resolution frame

        Returns:
            numpy.ndarray: Upright BGR image

        Raises:
            CaptureError: If the camera is not running or the read fails
        """
        with self._camera_lock:
            if self.camera is None or not self.camera.isOpened():
                raise CaptureError("Image capture not initialized", error_code="CAMERA_ERROR")
            ret, image = self.camera.read()

        if not ret or image is None:
            raise CaptureError("Failed to capture frame from camera")

        rotation = self.config['rotation'] % 360
        if rotation:
            from layer2_readjustment import rotate_bitmap
            image = rotate_bitmap(image, rotation)
        return image

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.stop()
        return False
