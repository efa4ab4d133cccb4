"""
Pytest configuration and fixtures for MRZ scanner tests.
"""
import os
import sys
import threading
import time

import cv2
import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from error_handlers import EngineError  # noqa: E402
from layer3_mrz import EngineHandle, OCREngine, PageSegMode  # noqa: E402
from pipeline import ResultSink  # noqa: E402


TD3_MRZ = [
    "P<USASMITH<<JOHN<JAMES<<<<<<<<<<<<<<<<<<<<<<",
    "AB12345678USA8501011M3001012<<<<<<<<<<<<<<06",
]


class StubEngine(OCREngine):
    """OCR engine returning fixed text and recording every call."""

    def __init__(self, text="", fail=False, gate=None):
        self.text = text
        self.fail = fail
        self.gate = gate                  # threading.Event recognize() waits on
        self.started = threading.Event()  # set when recognize() is entered
        self.handles = []
        self.images = []
        self.released = []
        self._lock = threading.Lock()

    def configure(self, trained_data_dir, language, mode):
        handle = EngineHandle(
            trained_data_dir=str(trained_data_dir),
            language=language,
            mode=PageSegMode(mode),
        )
        with self._lock:
            self.handles.append(handle)
        return handle

    def recognize(self, handle, image):
        with self._lock:
            self.images.append(image)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise EngineError("stub failure")
        return self.text

    def release(self, handle):
        with self._lock:
            self.released.append(handle)

    @property
    def calls(self):
        with self._lock:
            return len(self.images)


class RecordingSink(ResultSink):
    """Collects callbacks and the thread they arrived on."""

    def __init__(self):
        self.parsed = []
        self.errors = []
        self.threads = []
        self._cond = threading.Condition()

    def on_parsed(self, mrz):
        with self._cond:
            self.parsed.append(mrz)
            self.threads.append(threading.current_thread().name)
            self._cond.notify_all()

    def on_error(self, kind, message):
        with self._cond:
            self.errors.append((kind, message))
            self.threads.append(threading.current_thread().name)
            self._cond.notify_all()

    def wait_for(self, count, timeout=5.0):
        """Wait until at least `count` callbacks arrived."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while len(self.parsed) + len(self.errors) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True


@pytest.fixture
def sample_mrz_td3():
    """Sample TD3 MRZ (passport)."""
    return list(TD3_MRZ)


@pytest.fixture
def mrz_bitmap():
    """Portrait 1000x1600 page with a two-line MRZ rendered in its cutout band."""
    image = np.full((1600, 1000, 3), 255, dtype=np.uint8)
    # Cutout for 1000x1600 with crop_to_mrz is rows 863..1116
    for i, line in enumerate(TD3_MRZ):
        cv2.putText(image, line, (60, 920 + i * 60), cv2.FONT_HERSHEY_PLAIN,
                    1.4, (0, 0, 0), 2, cv2.LINE_AA)
    return image


@pytest.fixture
def stub_engine():
    """Engine returning the TD3 MRZ below some OCR noise."""
    noise = ["REPUBLIC OF UTOPIA", "PASSPORT  PASSEPORT", "<<", ""]
    return StubEngine(text="\n".join(noise + TD3_MRZ))


@pytest.fixture
def sink():
    return RecordingSink()
