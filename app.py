"""
MRZ Scanner Host
Thin Flask shim translating host calls into ScannerSession operations.

Routes mirror the scanner method channel:
- start / stop / flashlightOn / flashlightOff / takePhoto
- onParsed / onError callbacks are buffered and polled from /events
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import cv2
import logging
import threading
from collections import deque

import numpy as np

from config import ScannerConfig
from error_handlers import CaptureError, ErrorKind, handle_error
from layer1_capture import CameraFrameSource, Frame, ManualFrameSource
from layer3_mrz import TesseractEngine, TrainedDataCache
from pipeline import ResultSink, ScannerSession, SessionConfig

logger = logging.getLogger(__name__)


class HostEventBuffer(ResultSink):
    """Buffers session callbacks until the host polls them"""

    def __init__(self, max_events=100):
        self._events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def on_parsed(self, mrz):
        with self._lock:
            self._events.append({"method": "onParsed", "arguments": mrz})

    def on_error(self, kind, message):
        with self._lock:
            self._events.append({
                "method": "onError",
                "arguments": message,
                "kind": kind.value if isinstance(kind, ErrorKind) else str(kind),
            })

    def drain(self):
        """Return and clear all buffered events, oldest first"""
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events


def build_session(config: ScannerConfig, sink: ResultSink) -> ScannerSession:
    """Wire the configured frame source, Tesseract and trained data cache"""
    if config.frame_source == "manual":
        source = ManualFrameSource()
    else:
        source = CameraFrameSource(
            camera_index=config.camera_index,
            front_camera_index=config.front_camera_index,
            config={
                'width': config.camera_width,
                'height': config.camera_height,
                'fps': config.camera_fps,
                'rotation': config.camera_rotation,
            },
        )

    return ScannerSession(
        source=source,
        engine=TesseractEngine(),
        sink=sink,
        asset_provider=TrainedDataCache(config.assets_dir, config.cache_dir),
        config=SessionConfig(language=config.language),
    )


def _json_flag(name, default):
    data = request.get_json(silent=True) or {}
    value = data.get(name, request.args.get(name))
    if value is None:
        return default
    if isinstance(value, str):
        return value.lower() in ('1', 'true', 'yes')
    return bool(value)


def create_app(config=None, session=None, events=None):
    """
    Create the Flask host

    Args:
        config: ScannerConfig (read from the environment if None)
        session: Prebuilt ScannerSession (built from config if None)
        events: HostEventBuffer the session reports to

    Returns:
        Flask: Configured application
    """
    config = config or ScannerConfig.from_env()
    events = events or HostEventBuffer(max_events=config.event_buffer_size)
    session = session or build_session(config, events)

    app = Flask(__name__)
    # Enable CORS for cross-origin requests from the kiosk front end
    CORS(app, origins=["*"])
    app.config['SCANNER_SESSION'] = session
    app.config['SCANNER_EVENTS'] = events

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "healthy", "session": session.state.to_dict()})

    @app.route('/start', methods=['POST'])
    def start():
        is_front_cam = _json_flag('isFrontCam', False)
        logger.info(f"Start request received (isFrontCam={is_front_cam})")
        success = session.start(use_front_facing=is_front_cam)
        return jsonify({"success": success})

    @app.route('/stop', methods=['POST'])
    def stop():
        logger.info("Stop request received")
        session.stop()
        return jsonify({"success": True})

    @app.route('/flashlightOn', methods=['POST'])
    def flashlight_on():
        session.set_torch(True)
        return jsonify({"success": True})

    @app.route('/flashlightOff', methods=['POST'])
    def flashlight_off():
        session.set_torch(False)
        return jsonify({"success": True})

    @app.route('/takePhoto', methods=['POST'])
    def take_photo():
        should_crop = _json_flag('crop', True)
        logger.info(f"Photo request received (crop={should_crop})")
        try:
            photo = session.capture_photo(crop=should_crop)
        except CaptureError as e:
            return jsonify(handle_error(e)), 500
        return Response(photo, mimetype='image/jpeg')

    @app.route('/frames', methods=['POST'])
    def frames():
        source = session.source
        if not isinstance(source, ManualFrameSource):
            return jsonify({
                "success": False,
                "error": "Frame uploads need FRAME_SOURCE=manual",
                "error_code": "FRAME_UPLOAD_UNSUPPORTED",
            }), 409

        data = _uploaded_bytes()
        if not data:
            return jsonify({"success": False, "error": "No frame data", "error_code": "NO_FRAME"}), 400

        try:
            rotation = int(request.form.get('rotation', request.args.get('rotation', 0)))
        except (TypeError, ValueError):
            return jsonify({
                "success": False,
                "error": "rotation must be a whole number of degrees",
                "error_code": "INVALID_ROTATION",
            }), 400

        accepted = source.offer(Frame.from_encoded(data, rotation_degrees=rotation))
        if not accepted:
            return jsonify({"success": False, "error": "Scanner not started", "error_code": "NOT_STARTED"}), 409
        return jsonify({"success": True, "accepted": True}), 202

    @app.route('/stills', methods=['POST'])
    def stills():
        source = session.source
        if not isinstance(source, ManualFrameSource):
            return jsonify({"success": False, "error_code": "FRAME_UPLOAD_UNSUPPORTED"}), 409

        data = _uploaded_bytes()
        image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR) if data else None
        if image is None:
            return jsonify({"success": False, "error": "Invalid image", "error_code": "INVALID_IMAGE"}), 400

        source.set_photo(image)
        return jsonify({"success": True})

    @app.route('/events', methods=['GET'])
    def poll_events():
        return jsonify({"events": events.drain()})

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"success": False, "error": "Not found", "error_code": "NOT_IMPLEMENTED"}), 404

    @app.errorhandler(Exception)
    def method_call_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"success": False, "error": error.description}), error.code
        response = handle_error(error)
        response["error"] = f"Method call failed: {error}"
        response["error_code"] = "METHOD_CALL_ERROR"
        return jsonify(response), 500

    return app


def _uploaded_bytes():
    upload = request.files.get('frame') or request.files.get('image')
    if upload is not None:
        return upload.read()
    return request.get_data()


if __name__ == '__main__':
    scanner_config = ScannerConfig.from_env()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, scanner_config.log_level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    app = create_app(scanner_config)
    logger.info(f"MRZ scanner host starting (source={scanner_config.frame_source})")
    try:
        app.run(host='0.0.0.0', port=5000, threaded=True)
    finally:
        app.config['SCANNER_SESSION'].dispose()
