"""
Tests for the frame pipeline, scanner session and Flask host.
"""
import threading
import time

import cv2
import numpy as np
import pytest

from app import HostEventBuffer, create_app
from config import ScannerConfig
from conftest import TD3_MRZ, RecordingSink, StubEngine
from error_handlers import (
    CaptureError,
    ErrorKind,
    InitializationError,
    SourceBindingError,
    handle_error,
)
from layer1_capture import CameraFrameSource, Frame, ManualFrameSource
from layer3_mrz import AssetProvider, PageSegMode, TesseractEngine
from pipeline import (
    Dispatcher,
    FramePipeline,
    PipelineResult,
    ScannerSession,
    SessionStatus,
)

EXPECTED_MRZ = "\n".join(TD3_MRZ)
MRZ_BAND = (slice(863, 1116), slice(50, 950))


class StaticAssets(AssetProvider):
    """Asset provider resolving into a fixed directory"""

    def __init__(self, directory, missing=False):
        self.directory = directory
        self.missing = missing
        self.requested = []

    def resolve(self, name):
        self.requested.append(name)
        if self.missing:
            raise InitializationError(name, reason=f"{name} not bundled")
        return self.directory / name


class BusySource(ManualFrameSource):
    """Manual source whose device is always unavailable"""

    def _open(self, use_front_facing):
        raise SourceBindingError("device busy")


def _png(image):
    ok, buffer = cv2.imencode('.png', image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def make_session(tmp_path):
    """Factory for sessions over a manual frame source; disposes them afterwards."""
    sessions = []

    def factory(engine, sink, source=None, assets=None):
        session = ScannerSession(
            source=source or ManualFrameSource(),
            engine=engine,
            sink=sink,
            asset_provider=assets or StaticAssets(tmp_path / "tessdata"),
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.dispose()


class TestPipelineResult:
    """Test result serialization."""

    def test_parsed(self):
        result = PipelineResult.parsed("ABC")
        assert result.success
        assert result.to_dict() == {'success': True, 'mrz': 'ABC'}

    def test_failed(self):
        result = PipelineResult.failed(ErrorKind.DECODE_FAILURE, "bad frame")
        assert not result.success
        assert result.to_dict() == {
            'success': False,
            'error_kind': 'DECODE_FAILURE',
            'error': 'bad frame',
        }


class TestFramePipeline:
    """Test a single analysis run."""

    def test_end_to_end_mrz_band(self, mrz_bitmap, stub_engine):
        frame = Frame.from_bgr(mrz_bitmap)
        pipeline = FramePipeline(stub_engine, trained_data_dir="/cache/tessdata")

        result = pipeline.analyze(frame, crop_to_mrz=True)

        assert result.success
        assert result.mrz == EXPECTED_MRZ
        assert result.mrz.split("\n") == TD3_MRZ
        assert frame.closed
        assert stub_engine.images[0].shape == (253, 900, 3)
        assert np.array_equal(stub_engine.images[0], mrz_bitmap[MRZ_BAND])

        handle = stub_engine.handles[0]
        assert handle.language == "ocrb"
        assert handle.mode == PageSegMode.SINGLE_BLOCK
        assert stub_engine.released == [handle]

    def test_whole_document_crop(self, mrz_bitmap, stub_engine):
        FramePipeline(stub_engine).analyze(Frame.from_bgr(mrz_bitmap), crop_to_mrz=False)
        assert stub_engine.images[0].shape == (633, 900, 3)

    def test_rotation_is_applied_before_cropping(self, mrz_bitmap, stub_engine):
        """A sensor image turned 90° counterclockwise is uprighted first."""
        sideways = cv2.rotate(mrz_bitmap, cv2.ROTATE_90_COUNTERCLOCKWISE)
        frame = Frame.from_bgr(sideways, rotation_degrees=90)

        result = FramePipeline(stub_engine).analyze(frame)

        assert result.success
        assert np.array_equal(stub_engine.images[0], mrz_bitmap[MRZ_BAND])

    def test_compressed_frame(self, mrz_bitmap, stub_engine):
        result = FramePipeline(stub_engine).analyze(Frame.from_encoded(_png(mrz_bitmap)))
        assert result.mrz == EXPECTED_MRZ

    def test_engine_failure_degrades_to_empty_text(self, mrz_bitmap):
        engine = StubEngine(fail=True)
        result = FramePipeline(engine).analyze(Frame.from_bgr(mrz_bitmap))

        assert result.success
        assert result.mrz == ""
        assert len(engine.released) == 1

    def test_unconfigured_tesseract_degrades_to_empty_text(self, mrz_bitmap):
        """Without trained data Tesseract cannot be configured."""
        result = FramePipeline(TesseractEngine(), trained_data_dir=None).analyze(
            Frame.from_bgr(mrz_bitmap))
        assert result == PipelineResult.parsed("")

    def test_noise_only_yields_last_line(self, mrz_bitmap):
        engine = StubEngine(text="PASSPORT\nUTOPIA")
        result = FramePipeline(engine).analyze(Frame.from_bgr(mrz_bitmap))
        assert result.mrz == "UTOPIA"

    def test_decode_failure(self, stub_engine):
        frame = Frame.from_encoded(b"not an image")
        result = FramePipeline(stub_engine).analyze(frame)

        assert not result.success
        assert result.error_kind == ErrorKind.DECODE_FAILURE
        assert result.error.startswith("Image analysis failed:")
        assert frame.closed
        assert stub_engine.calls == 0

    def test_unexpected_error_is_analysis_failure(self, stub_engine):
        class BrokenConverter:
            def to_bitmap(self, frame):
                raise RuntimeError("sensor exploded")

        frame = Frame.from_bgr(np.zeros((10, 10, 3), dtype=np.uint8))
        result = FramePipeline(stub_engine, converter=BrokenConverter()).analyze(frame)

        assert result.error_kind == ErrorKind.ANALYSIS_FAILURE
        assert "sensor exploded" in result.error
        assert frame.closed


class TestDispatcher:
    """Test main-thread delivery."""

    def test_delivers_in_order_on_one_thread(self):
        sink = RecordingSink()
        dispatcher = Dispatcher(sink)
        for i in range(5):
            dispatcher.dispatch(PipelineResult.parsed(str(i)))
        dispatcher.report_error(ErrorKind.ENGINE_FAILURE, "late")
        dispatcher.shutdown(wait=True)

        assert sink.parsed == ["0", "1", "2", "3", "4"]
        assert sink.errors == [(ErrorKind.ENGINE_FAILURE, "late")]
        assert len(set(sink.threads)) == 1
        assert sink.threads[0].startswith("mrz-main")

    def test_sink_exception_does_not_stop_delivery(self):
        received = []

        class FlakySink(RecordingSink):
            def on_parsed(self, mrz):
                if mrz == "bad":
                    raise ValueError("host went away")
                received.append(mrz)

        dispatcher = Dispatcher(FlakySink())
        dispatcher.dispatch(PipelineResult.parsed("bad"))
        dispatcher.dispatch(PipelineResult.parsed("good"))
        dispatcher.shutdown(wait=True)
        assert received == ["good"]

    def test_shutdown_from_sink_callback(self):
        queued = threading.Event()
        done = threading.Event()
        failures = []

        class StoppingSink(RecordingSink):
            def on_parsed(self, mrz):
                queued.wait(timeout=5)
                try:
                    dispatcher.shutdown(wait=True)
                except Exception as e:
                    failures.append(e)
                super().on_parsed(mrz)
                done.set()

        sink = StoppingSink()
        dispatcher = Dispatcher(sink)
        assert not dispatcher.on_dispatch_thread()
        dispatcher.dispatch(PipelineResult.parsed("first"))
        dispatcher.dispatch(PipelineResult.parsed("queued"))
        queued.set()

        assert done.wait(timeout=5)
        assert failures == []
        # Already queued deliveries still run after the callback returns
        assert sink.wait_for(2)
        dispatcher.dispatch(PipelineResult.parsed("late"))
        assert sink.parsed == ["first", "queued"]

    def test_closed_dispatcher_drops_results(self):
        sink = RecordingSink()
        dispatcher = Dispatcher(sink)
        dispatcher.shutdown(wait=True)
        dispatcher.dispatch(PipelineResult.parsed("late"))
        assert sink.parsed == []


class TestScannerSession:
    """Test session lifecycle, backpressure and error reporting."""

    def test_parses_streamed_frame_on_main_thread(self, make_session, stub_engine, sink, mrz_bitmap, tmp_path):
        session = make_session(stub_engine, sink)
        assert session.start() is True

        session.source.offer(Frame.from_bgr(mrz_bitmap))

        assert sink.wait_for(1)
        assert sink.parsed == [EXPECTED_MRZ]
        assert sink.threads[0].startswith("mrz-main")
        assert stub_engine.handles[0].trained_data_dir == str(tmp_path / "tessdata")
        assert session.last_result == PipelineResult.parsed(EXPECTED_MRZ)

    def test_trained_data_resolved_once(self, make_session, stub_engine, sink, tmp_path):
        assets = StaticAssets(tmp_path / "tessdata")
        make_session(stub_engine, sink, assets=assets)
        assert assets.requested == ["ocrb.traineddata"]

    def test_initialization_failure_is_reported(self, make_session, stub_engine, sink, tmp_path, mrz_bitmap):
        session = make_session(stub_engine, sink, assets=StaticAssets(tmp_path, missing=True))

        assert sink.wait_for(1)
        kind, message = sink.errors[0]
        assert kind == ErrorKind.INITIALIZATION_FAILURE
        assert message.startswith("Failed to initialize OCR")

        # The session keeps running without trained data
        assert session.start()
        session.source.offer(Frame.from_bgr(mrz_bitmap))
        assert sink.wait_for(2)
        assert stub_engine.handles[0].trained_data_dir == "None"

    def test_source_binding_failure_is_reported(self, make_session, stub_engine, sink):
        session = make_session(stub_engine, sink, source=BusySource())

        assert session.start(use_front_facing=True) is False
        assert sink.wait_for(1)
        assert sink.errors[0] == (ErrorKind.SOURCE_BINDING_FAILURE, "Camera binding failed: device busy")
        assert session.state.accepting is False

    def test_failed_run_goes_to_on_error(self, make_session, stub_engine, sink):
        session = make_session(stub_engine, sink)
        session.start()
        session.source.offer(Frame.from_encoded(b"\x00\x01garbage"))

        assert sink.wait_for(1)
        kind, message = sink.errors[0]
        assert kind == ErrorKind.DECODE_FAILURE
        assert message.startswith("Image analysis failed:")
        assert sink.parsed == []

    def test_frames_dropped_while_stopped(self, make_session, stub_engine, sink, mrz_bitmap):
        session = make_session(stub_engine, sink)
        frame = Frame.from_bgr(mrz_bitmap)

        session.on_frame(frame)

        assert frame.closed
        assert session.state.frames_dropped == 1
        assert stub_engine.calls == 0

    def test_single_run_at_a_time(self, make_session, sink, mrz_bitmap):
        gate = threading.Event()
        engine = StubEngine(text=EXPECTED_MRZ, gate=gate)
        session = make_session(engine, sink)
        session.start()

        runner = threading.Thread(target=session.on_frame, args=(Frame.from_bgr(mrz_bitmap),))
        runner.start()
        assert engine.started.wait(timeout=5)
        assert session.status == SessionStatus.ANALYZING

        busy_frame = Frame.from_bgr(mrz_bitmap)
        session.on_frame(busy_frame)
        assert busy_frame.closed
        assert session.state.frames_dropped == 1

        gate.set()
        runner.join(timeout=5)
        assert sink.wait_for(1)
        assert engine.calls == 1
        assert session.status == SessionStatus.IDLE

    def test_backpressure_keeps_latest_frame(self, make_session, sink, mrz_bitmap):
        """Six frames during one slow run produce exactly two runs."""
        gate = threading.Event()
        engine = StubEngine(text=EXPECTED_MRZ, gate=gate)
        session = make_session(engine, sink)
        session.start()

        session.source.offer(Frame.from_bgr(mrz_bitmap))
        assert engine.started.wait(timeout=5)
        for _ in range(5):
            session.source.offer(Frame.from_bgr(mrz_bitmap))
            assert session.source.pending_count <= 1

        gate.set()
        assert sink.wait_for(2)
        session.stop()

        assert engine.calls == 2
        assert session.source.frames_dropped == 4
        assert session.state.runs_completed == 2
        assert sink.parsed == [EXPECTED_MRZ, EXPECTED_MRZ]

    def test_stop_waits_for_in_flight_run(self, make_session, sink, mrz_bitmap):
        gate = threading.Event()
        engine = StubEngine(text=EXPECTED_MRZ, gate=gate)
        session = make_session(engine, sink)
        session.start()
        session.source.offer(Frame.from_bgr(mrz_bitmap))
        assert engine.started.wait(timeout=5)

        stopper = threading.Thread(target=session.stop)
        stopper.start()
        stopper.join(timeout=0.2)
        assert stopper.is_alive()

        gate.set()
        stopper.join(timeout=5)
        assert not stopper.is_alive()
        assert session.state.runs_completed == 1
        assert sink.wait_for(1)

        late = Frame.from_bgr(mrz_bitmap)
        assert session.source.offer(late) is False
        assert late.closed

    def test_torch_survives_restart(self, make_session, stub_engine, sink):
        session = make_session(stub_engine, sink)
        session.set_torch(True)
        session.start()
        session.stop()
        session.start()

        assert session.source.torch_on
        assert session.state.torch_on
        assert session.config.torch_on

    def test_capture_photo(self, make_session, stub_engine, sink, mrz_bitmap):
        session = make_session(stub_engine, sink)
        session.start()
        session.source.set_photo(mrz_bitmap)

        cropped = cv2.imdecode(np.frombuffer(session.capture_photo(crop=True), np.uint8), cv2.IMREAD_COLOR)
        full = cv2.imdecode(np.frombuffer(session.capture_photo(crop=False), np.uint8), cv2.IMREAD_COLOR)

        assert cropped.shape == (633, 900, 3)
        assert full.shape == (1600, 1000, 3)
        # Stills do not produce onParsed callbacks
        assert sink.parsed == []

    def test_capture_photo_before_start(self, make_session, stub_engine, sink):
        session = make_session(stub_engine, sink)
        with pytest.raises(CaptureError) as exc_info:
            session.capture_photo()
        assert exc_info.value.error_code == "CAMERA_ERROR"
        assert exc_info.value.kind == ErrorKind.CAPTURE_FAILURE
        # Capture errors go to the caller only
        assert not sink.wait_for(1, timeout=0.1)

    def test_dispose_is_idempotent(self, make_session, stub_engine, sink):
        session = make_session(stub_engine, sink)
        session.start()
        session.dispose()
        session.dispose()

        assert not session.source.is_running
        with pytest.raises(RuntimeError):
            session.start()

    def test_dispose_from_result_callback(self, make_session, stub_engine, mrz_bitmap):
        """The host may close the scanner as soon as an MRZ arrives."""
        closed = threading.Event()
        failures = []

        class ClosingSink(RecordingSink):
            def on_parsed(self, mrz):
                super().on_parsed(mrz)
                try:
                    session.dispose()
                except Exception as e:
                    failures.append(e)
                closed.set()

        closing_sink = ClosingSink()
        session = make_session(stub_engine, closing_sink)
        session.start()
        session.source.offer(Frame.from_bgr(mrz_bitmap))

        assert closed.wait(timeout=5)
        assert failures == []
        assert closing_sink.parsed == [EXPECTED_MRZ]
        assert closing_sink.threads[0].startswith("mrz-main")
        assert not session.source.is_running
        with pytest.raises(RuntimeError):
            session.start()

    def test_context_manager(self, stub_engine, sink):
        with ScannerSession(ManualFrameSource(), stub_engine, sink) as session:
            session.start()
        assert not session.source.is_running


@pytest.fixture
def host(stub_engine, tmp_path):
    """Flask test client over a manual-source session."""
    events = HostEventBuffer()
    session = ScannerSession(
        source=ManualFrameSource(),
        engine=stub_engine,
        sink=events,
        asset_provider=StaticAssets(tmp_path / "tessdata"),
    )
    app = create_app(config=ScannerConfig(frame_source="manual"), session=session, events=events)
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client, session
    session.dispose()


def _poll_events(client, count, timeout=5.0):
    events = []
    deadline = time.monotonic() + timeout
    while len(events) < count and time.monotonic() < deadline:
        events.extend(client.get('/events').get_json()["events"])
        time.sleep(0.02)
    return events


class TestHostApp:
    """Test the Flask method-channel shim."""

    def test_health(self, host):
        client, _ = host
        response = client.get('/health')
        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["session"]["accepting"] is False

    def test_frame_upload_produces_on_parsed(self, host, mrz_bitmap):
        client, _ = host
        assert client.post('/start', json={"isFrontCam": False}).get_json() == {"success": True}

        response = client.post('/frames', data=_png(mrz_bitmap), content_type='application/octet-stream')
        assert response.status_code == 202

        events = _poll_events(client, 1)
        assert events == [{"method": "onParsed", "arguments": EXPECTED_MRZ}]

    def test_bad_frame_produces_on_error(self, host):
        client, _ = host
        client.post('/start')
        client.post('/frames', data=b"garbage", content_type='application/octet-stream')

        events = _poll_events(client, 1)
        assert events[0]["method"] == "onError"
        assert events[0]["kind"] == "DECODE_FAILURE"

    def test_frame_before_start(self, host, mrz_bitmap):
        client, _ = host
        response = client.post('/frames', data=_png(mrz_bitmap), content_type='application/octet-stream')
        assert response.status_code == 409
        assert response.get_json()["error_code"] == "NOT_STARTED"

    def test_empty_frame(self, host):
        client, _ = host
        client.post('/start')
        response = client.post('/frames', data=b"", content_type='application/octet-stream')
        assert response.status_code == 400
        assert response.get_json()["error_code"] == "NO_FRAME"

    @pytest.mark.parametrize("rotation", ["abc", "90.5", ""])
    def test_invalid_rotation(self, host, mrz_bitmap, rotation):
        client, session = host
        client.post('/start')
        response = client.post(f'/frames?rotation={rotation}', data=_png(mrz_bitmap),
                               content_type='application/octet-stream')
        assert response.status_code == 400
        assert response.get_json()["error_code"] == "INVALID_ROTATION"
        assert session.source.frames_offered == 0

    def test_rotated_frame_upload(self, host, mrz_bitmap):
        client, _ = host
        client.post('/start')
        sideways = cv2.rotate(mrz_bitmap, cv2.ROTATE_90_COUNTERCLOCKWISE)
        response = client.post('/frames?rotation=90', data=_png(sideways),
                               content_type='application/octet-stream')
        assert response.status_code == 202
        assert _poll_events(client, 1) == [{"method": "onParsed", "arguments": EXPECTED_MRZ}]

    def test_take_photo(self, host, mrz_bitmap):
        client, _ = host
        client.post('/start')
        assert client.post('/stills', data=_png(mrz_bitmap),
                           content_type='application/octet-stream').status_code == 200

        response = client.post('/takePhoto')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        photo = cv2.imdecode(np.frombuffer(response.data, np.uint8), cv2.IMREAD_COLOR)
        assert photo.shape == (633, 900, 3)

        response = client.post('/takePhoto', json={"crop": False})
        photo = cv2.imdecode(np.frombuffer(response.data, np.uint8), cv2.IMREAD_COLOR)
        assert photo.shape == (1600, 1000, 3)

    def test_take_photo_error(self, host):
        client, _ = host
        response = client.post('/takePhoto')
        assert response.status_code == 500
        data = response.get_json()
        assert data["error_code"] == "CAMERA_ERROR"
        assert data["error_kind"] == "CAPTURE_FAILURE"

    def test_invalid_still(self, host):
        client, _ = host
        response = client.post('/stills', data=b"nope", content_type='application/octet-stream')
        assert response.status_code == 400
        assert response.get_json()["error_code"] == "INVALID_IMAGE"

    def test_flashlight_and_stop(self, host):
        client, session = host
        client.post('/start')
        assert client.post('/flashlightOn').get_json() == {"success": True}
        assert session.source.torch_on
        client.post('/flashlightOff')
        assert not session.source.torch_on

        assert client.post('/stop').get_json() == {"success": True}
        assert session.state.accepting is False

    def test_unknown_method(self, host):
        client, _ = host
        response = client.post('/scanBarcode')
        assert response.status_code == 404
        assert response.get_json()["error_code"] == "NOT_IMPLEMENTED"

    def test_frames_need_manual_source(self, stub_engine):
        events = HostEventBuffer()
        session = ScannerSession(CameraFrameSource(camera_index=97), stub_engine, events)
        app = create_app(config=ScannerConfig(), session=session, events=events)
        try:
            response = app.test_client().post('/frames', data=b"x", content_type='application/octet-stream')
            assert response.status_code == 409
            assert response.get_json()["error_code"] == "FRAME_UPLOAD_UNSUPPORTED"
        finally:
            session.dispose()


class TestHostEventBuffer:
    """Test event buffering."""

    def test_drain_keeps_newest(self):
        buffer = HostEventBuffer(max_events=2)
        buffer.on_parsed("A")
        buffer.on_parsed("B")
        buffer.on_error(ErrorKind.ENGINE_FAILURE, "C")

        assert buffer.drain() == [
            {"method": "onParsed", "arguments": "B"},
            {"method": "onError", "arguments": "C", "kind": "ENGINE_FAILURE"},
        ]
        assert buffer.drain() == []


class TestConfig:
    """Test environment configuration."""

    def test_defaults(self):
        config = ScannerConfig()
        assert config.language == "ocrb"
        assert config.frame_source == "camera"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CAMERA_INDEX", "4")
        monkeypatch.setenv("FRAME_SOURCE", "MANUAL")
        monkeypatch.setenv("TRAINED_DATA_NAME", "mrz.traineddata")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        config = ScannerConfig.from_env()

        assert config.camera_index == 4
        assert config.frame_source == "manual"
        assert config.language == "mrz"
        assert config.log_level == "DEBUG"


class TestHandleError:
    """Test error response formatting."""

    def test_scanner_error(self):
        response = handle_error(SourceBindingError("device busy"))
        assert response["error_code"] == "SOURCE_BINDING_FAILED"
        assert response["error_kind"] == "SOURCE_BINDING_FAILURE"

    def test_unexpected_error(self):
        response = handle_error(ValueError("boom"))
        assert response["error_code"] == "UNEXPECTED_ERROR"
        assert response["details"]["error_type"] == "ValueError"
