"""
Layer 1 — Frame Sources
Delivers frames to a registered analyzer on a dedicated single worker thread
with keep-only-latest backpressure.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np

from error_handlers import CaptureError
from .frames import Frame

logger = logging.getLogger(__name__)

Analyzer = Callable[[Frame], None]


class FrameSource(ABC):
    """Capability interface the scanner session consumes."""

    @abstractmethod
    def set_analyzer(self, analyzer: Optional[Analyzer]):
        """Register the callback that receives frames on the worker thread."""

    @abstractmethod
    def start(self, use_front_facing: bool = False):
        """
        Begin delivering frames.

        Raises:
            SourceBindingError: If the source cannot be started
        """

    @abstractmethod
    def stop(self):
        """Stop delivering frames. Returns after any in-flight analysis."""

    @abstractmethod
    def set_torch(self, on: bool):
        """Illumination hint."""

    @abstractmethod
    def take_photo(self) -> np.ndarray:
        """
        One-shot full resolution capture.

        Raises:
            CaptureError: If the source cannot capture
        """

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether frames are currently being delivered."""


class ThreadedFrameSource(FrameSource):
    """
    Frame source base with one analysis worker and a single pending slot.

    Producers call offer(). A frame offered while another is still pending
    replaces it and the older frame is closed without being analyzed, so at
    most one frame ever waits for the worker.
    """

    def __init__(self, name: str = "frame-source"):
        self.name = name
        self._analyzer: Optional[Analyzer] = None
        self._cond = threading.Condition()
        self._pending: Optional[Frame] = None
        self._running = False
        self._worker: Optional[threading.Thread] = None
        self._torch_on = False

        # Counters
        self.frames_offered = 0
        self.frames_dropped = 0
        self.frames_delivered = 0

    def set_analyzer(self, analyzer: Optional[Analyzer]):
        self._analyzer = analyzer

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def torch_on(self) -> bool:
        return self._torch_on

    @property
    def pending_count(self) -> int:
        """Number of frames waiting for the worker (0 or 1)."""
        with self._cond:
            return 0 if self._pending is None else 1

    def start(self, use_front_facing: bool = False):
        if self._running:
            logger.debug(f"{self.name}: already running")
            return

        self._open(use_front_facing)

        with self._cond:
            self._running = True
        self._worker = threading.Thread(
            target=self._worker_loop,
            name=f"{self.name}-analyzer",
            daemon=True,
        )
        self._worker.start()
        logger.info(f"{self.name}: started (front_facing={use_front_facing})")

    def stop(self):
        with self._cond:
            if not self._running:
                return
            self._running = False
            dropped = self._pending
            self._pending = None
            if dropped is not None:
                self.frames_dropped += 1
            self._cond.notify_all()

        if dropped is not None:
            dropped.close()

        self._close()

        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join()
        self._worker = None
        logger.info(f"{self.name}: stopped ({self.frames_delivered} delivered, "
                    f"{self.frames_dropped} dropped)")

    def set_torch(self, on: bool):
        self._torch_on = on
        self._apply_torch(on)

    def offer(self, frame: Frame) -> bool:
        """
        Hand a frame to the worker, replacing any frame still pending.

        Returns:
            bool: False if the source is stopped and the frame was released
        """
        with self._cond:
            self.frames_offered += 1
            if not self._running:
                frame.close()
                self.frames_dropped += 1
                return False

            replaced = self._pending
            self._pending = frame
            if replaced is not None:
                self.frames_dropped += 1
            self._cond.notify()

        if replaced is not None:
            replaced.close()
            logger.debug(f"{self.name}: replaced pending frame")
        return True

    def _worker_loop(self):
        while True:
            with self._cond:
                while self._running and self._pending is None:
                    self._cond.wait()
                if not self._running:
                    return
                frame = self._pending
                self._pending = None
                analyzer = self._analyzer
                if analyzer is None:
                    self.frames_dropped += 1
                else:
                    self.frames_delivered += 1

            if analyzer is None:
                frame.close()
                continue

            try:
                analyzer(frame)
            except Exception as e:
                logger.error(f"{self.name}: analyzer raised: {e}")
                logger.exception("Full traceback:")
            finally:
                frame.close()

    # Hooks for concrete sources

    def _open(self, use_front_facing: bool):
        """Acquire the underlying device. Raise SourceBindingError on failure."""

    def _close(self):
        """Release the underlying device."""

    def _apply_torch(self, on: bool):
        logger.debug(f"{self.name}: torch {'on' if on else 'off'} (no illumination control)")


class ManualFrameSource(ThreadedFrameSource):
    """
    Frame source fed by its host (HTTP uploads, tests, replays).

    take_photo() returns a copy of the image last given to set_photo().
    """

    def __init__(self, name: str = "manual-source"):
        super().__init__(name=name)
        self._last_photo: Optional[np.ndarray] = None
        self._photo_lock = threading.Lock()

    def set_photo(self, image: np.ndarray):
        """Provide the image returned by the next take_photo() call."""
        with self._photo_lock:
            self._last_photo = image

    def take_photo(self) -> np.ndarray:
        if not self.is_running:
            raise CaptureError("Image capture not initialized", error_code="CAMERA_ERROR")
        with self._photo_lock:
            if self._last_photo is None:
                raise CaptureError("no still image available")
            return self._last_photo.copy()
