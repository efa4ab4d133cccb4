"""
Tests for Layer 1 — frames, color conversion and frame sources.
"""
import threading
import time

import cv2
import numpy as np
import pytest

from error_handlers import (
    CameraNotFoundError,
    CaptureError,
    FrameDecodeError,
    UnsupportedFormatError,
)
from layer1_capture import (
    CameraFrameSource,
    ColorConverter,
    Frame,
    FrameFormat,
    ManualFrameSource,
    Plane,
)


def _gradient(width=64, height=48):
    """BGR test image with distinct values per channel."""
    x = np.linspace(0, 255, width, dtype=np.uint8)
    y = np.linspace(0, 255, height, dtype=np.uint8)
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[..., 0] = x[None, :]
    image[..., 1] = y[:, None]
    image[..., 2] = 128
    return image


def _planar_frame(bgr):
    """YUV_420_888 frame with fully planar (pixel stride 1) chroma."""
    height, width = bgr.shape[:2]
    i420 = cv2.cvtColor(bgr, cv2.COLOR_BGR2YUV_I420).ravel()
    y_size, c_size = width * height, (width // 2) * (height // 2)
    planes = (
        Plane(i420[:y_size].tobytes(), row_stride=width),
        Plane(i420[y_size:y_size + c_size].tobytes(), row_stride=width // 2),
        Plane(i420[y_size + c_size:].tobytes(), row_stride=width // 2),
    )
    return Frame(planes=planes, format=FrameFormat.YUV_420_888, width=width, height=height), i420


def _semi_planar_frame(nv21, width, height):
    """YUV_420_888 frame laid out like an NV21 sensor buffer (pixel stride 2)."""
    y_size = width * height
    vu = nv21.ravel()[y_size:]
    planes = (
        Plane(nv21.ravel()[:y_size].tobytes(), row_stride=width),
        Plane(vu[1:].tobytes(), row_stride=width, pixel_stride=2),   # U starts one byte in
        Plane(vu[:-1].tobytes(), row_stride=width, pixel_stride=2),  # V
    )
    return Frame(planes=planes, format=FrameFormat.YUV_420_888, width=width, height=height)


class TestFrame:
    """Test frame ownership helpers."""

    def test_close_releases_planes(self):
        frame = Frame.from_bgr(_gradient())
        frame.close()
        frame.close()
        assert frame.closed
        assert frame.planes == ()

    def test_from_bgr_metadata(self):
        frame = Frame.from_bgr(_gradient(64, 48), rotation_degrees=90)
        assert (frame.width, frame.height) == (64, 48)
        assert frame.format == FrameFormat.BGR888
        assert frame.rotation_degrees == 90


class TestColorConverter:
    """Test raw frame decoding."""

    def test_nv21_repack_puts_v_before_u(self):
        width, height = 4, 2
        planes = (
            Plane(bytes(range(8)), row_stride=4),
            Plane(bytes([10, 11]), row_stride=2),   # U
            Plane(bytes([20, 21]), row_stride=2),   # V
        )
        frame = Frame(planes=planes, format=FrameFormat.YUV_420_888, width=width, height=height)

        nv21 = ColorConverter().to_nv21(frame)

        assert nv21.shape == (3, 4)
        assert nv21[:2].ravel().tolist() == list(range(8))
        assert nv21[2].tolist() == [20, 10, 21, 11]

    def test_planar_chroma_decodes(self):
        bgr = _gradient()
        frame, i420 = _planar_frame(bgr)
        expected = cv2.cvtColor(i420.reshape(72, 64), cv2.COLOR_YUV2BGR_I420)

        bitmap = ColorConverter().to_bitmap(frame)

        assert bitmap.shape == (48, 64, 3)
        assert np.abs(bitmap.astype(int) - expected.astype(int)).max() <= 2

    def test_semi_planar_chroma_decodes(self):
        bgr = _gradient()
        i420 = cv2.cvtColor(bgr, cv2.COLOR_BGR2YUV_I420).ravel()
        y_size, c_size = 64 * 48, 32 * 24
        u = i420[y_size:y_size + c_size]
        v = i420[y_size + c_size:]
        vu = np.empty(2 * c_size, dtype=np.uint8)
        vu[0::2], vu[1::2] = v, u
        nv21 = np.concatenate([i420[:y_size], vu]).reshape(72, 64)

        bitmap = ColorConverter().to_bitmap(_semi_planar_frame(nv21, 64, 48))

        assert np.array_equal(bitmap, cv2.cvtColor(nv21, cv2.COLOR_YUV2BGR_NV21))

    def test_row_padding_is_stripped(self):
        frame, _ = _planar_frame(_gradient())
        y = np.frombuffer(frame.planes[0].data, dtype=np.uint8).reshape(48, 64)
        padded_y = np.hstack([y, np.zeros((48, 16), dtype=np.uint8)]).ravel()[:-16]
        padded = Frame(
            planes=(Plane(padded_y.tobytes(), row_stride=80),) + frame.planes[1:],
            format=FrameFormat.YUV_420_888, width=64, height=48,
        )
        converter = ColorConverter()
        assert np.array_equal(converter.to_nv21(padded), converter.to_nv21(frame))

    def test_truncated_plane_raises(self):
        frame, _ = _planar_frame(_gradient())
        short = Frame(
            planes=(Plane(frame.planes[0].data[:100], row_stride=64),) + frame.planes[1:],
            format=FrameFormat.YUV_420_888, width=64, height=48,
        )
        with pytest.raises(FrameDecodeError):
            ColorConverter().to_bitmap(short)

    def test_odd_dimensions_raise(self):
        planes = (Plane(bytes(15), 5), Plane(bytes(4), 2), Plane(bytes(4), 2))
        frame = Frame(planes=planes, format=FrameFormat.YUV_420_888, width=5, height=3)
        with pytest.raises(FrameDecodeError):
            ColorConverter().to_bitmap(frame)

    def test_closed_frame_raises(self):
        frame = Frame.from_bgr(_gradient())
        frame.close()
        with pytest.raises(FrameDecodeError):
            ColorConverter().to_bitmap(frame)

    def test_bgr_passthrough_copies(self):
        bgr = _gradient()
        bitmap = ColorConverter().to_bitmap(Frame.from_bgr(bgr))
        assert np.array_equal(bitmap, bgr)

    def test_compressed_image_decodes(self):
        bgr = _gradient()
        ok, png = cv2.imencode('.png', bgr)
        assert ok
        bitmap = ColorConverter().to_bitmap(Frame.from_encoded(png.tobytes()))
        assert np.array_equal(bitmap, bgr)

    def test_garbage_is_unsupported(self):
        frame = Frame.from_encoded(b"definitely not an image")
        with pytest.raises(UnsupportedFormatError) as exc_info:
            ColorConverter().to_bitmap(frame)
        assert exc_info.value.error_code == "UNSUPPORTED_FORMAT"
        assert exc_info.value.to_dict()["error_kind"] == "DECODE_FAILURE"


class TestManualFrameSource:
    """Test keep-only-latest delivery."""

    def test_offer_before_start_releases_frame(self):
        source = ManualFrameSource()
        frame = Frame.from_bgr(_gradient())
        assert source.offer(frame) is False
        assert frame.closed

    def test_keeps_only_latest_pending_frame(self):
        gate = threading.Event()
        entered = threading.Event()
        delivered = []

        def analyzer(frame):
            delivered.append(frame.rotation_degrees)
            entered.set()
            gate.wait(timeout=5)

        source = ManualFrameSource()
        source.set_analyzer(analyzer)
        source.start()
        try:
            source.offer(Frame.from_bgr(_gradient(), rotation_degrees=0))
            assert entered.wait(timeout=5)

            offered = [Frame.from_bgr(_gradient(), rotation_degrees=i) for i in range(1, 6)]
            for frame in offered:
                source.offer(frame)
                assert source.pending_count <= 1

            # All but the newest pending frame were released unanalyzed
            assert all(frame.closed for frame in offered[:-1])
            gate.set()

            deadline = time.monotonic() + 5
            while len(delivered) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            gate.set()
            source.stop()

        assert delivered == [0, 5]
        assert source.frames_dropped == 4
        assert offered[-1].closed

    def test_stop_waits_for_in_flight_analysis(self):
        gate = threading.Event()
        entered = threading.Event()
        finished = []

        def analyzer(frame):
            entered.set()
            gate.wait(timeout=5)
            finished.append(True)

        source = ManualFrameSource()
        source.set_analyzer(analyzer)
        source.start()
        source.offer(Frame.from_bgr(_gradient()))
        assert entered.wait(timeout=5)

        stopper = threading.Thread(target=source.stop)
        stopper.start()
        stopper.join(timeout=0.2)
        assert stopper.is_alive()

        gate.set()
        stopper.join(timeout=5)
        assert not stopper.is_alive()
        assert finished == [True]
        assert not source.is_running

    def test_analyzer_exception_does_not_stop_worker(self):
        calls = []

        def analyzer(frame):
            calls.append(frame)
            raise RuntimeError("boom")

        source = ManualFrameSource()
        source.set_analyzer(analyzer)
        source.start()
        try:
            for _ in range(2):
                source.offer(Frame.from_bgr(_gradient()))
                deadline = time.monotonic() + 5
                while source.pending_count and time.monotonic() < deadline:
                    time.sleep(0.01)
                time.sleep(0.05)
        finally:
            source.stop()
        assert len(calls) == 2
        assert all(frame.closed for frame in calls)

    def test_take_photo(self):
        source = ManualFrameSource()
        with pytest.raises(CaptureError):
            source.take_photo()

        source.start()
        try:
            with pytest.raises(CaptureError):
                source.take_photo()
            still = _gradient()
            source.set_photo(still)
            photo = source.take_photo()
            assert np.array_equal(photo, still)
            assert photo is not still
        finally:
            source.stop()

    def test_torch_state(self):
        source = ManualFrameSource()
        source.set_torch(True)
        assert source.torch_on
        source.set_torch(False)
        assert not source.torch_on


class FakeCapture:
    """Stand-in for cv2.VideoCapture yielding a fixed image."""

    def __init__(self, index, backend=None):
        self.index = index
        self.props = {}
        self.released = False
        self.image = _gradient(32, 24)

    def isOpened(self):
        return not self.released

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        return self.props.get(prop, 0)

    def read(self):
        time.sleep(0.005)
        return True, self.image.copy()

    def release(self):
        self.released = True


class TestCameraFrameSource:
    """Test the OpenCV camera source with a fake capture device."""

    def test_missing_device_raises(self):
        source = CameraFrameSource(camera_index=97)
        with pytest.raises(CameraNotFoundError):
            source.start()
        assert not source.is_running

    def test_streams_frames_and_photos(self, monkeypatch):
        monkeypatch.setattr(CameraFrameSource, "_check_camera_exists", lambda self, index: True)
        monkeypatch.setattr(cv2, "VideoCapture", FakeCapture)

        received = []
        got_frame = threading.Event()

        def analyzer(frame):
            received.append((frame.width, frame.height, frame.rotation_degrees))
            got_frame.set()

        source = CameraFrameSource(camera_index=2, front_camera_index=5, config={'rotation': 90})
        source.set_analyzer(analyzer)
        source.start(use_front_facing=True)
        try:
            assert got_frame.wait(timeout=5)
            assert source.active_index == 5
            photo = source.take_photo()
            # Rotated upright by 90°
            assert photo.shape == (32, 24, 3)
            capture = source.camera
        finally:
            source.stop()

        assert received[0] == (32, 24, 90)
        assert capture.released
        assert source.camera is None
        with pytest.raises(CaptureError):
            source.take_photo()
