"""
MRZ Scanner Pipeline
Sequences the layers for every analyzed frame and owns the scanner session.

Frame -> Layer 1 (color) -> Layer 2 (rotate, cutout) -> Layer 3 (OCR, MRZ)
      -> result dispatched on the main thread
"""
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

import cv2
import numpy as np

from error_handlers import (
    CaptureError,
    ErrorKind,
    ScannerError,
    error_kind_of,
)
from layer1_capture import ColorConverter, Frame, FrameSource
from layer2_readjustment import crop_to_cutout, rotate_bitmap
from layer3_mrz import AssetProvider, MRZExtractor, OCREngine, PageSegMode

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    """Orchestrator states"""
    IDLE = "idle"
    ANALYZING = "analyzing"
    DISPATCHING = "dispatching"


@dataclass(frozen=True)
class SessionConfig:
    """Immutable settings a session is started with."""
    use_front_facing: bool = False
    torch_on: bool = False
    crop_to_mrz: bool = True          # Live analysis crops to the MRZ band only
    language: str = "ocrb"            # Trained data is <language>.traineddata
    page_seg_mode: PageSegMode = PageSegMode.SINGLE_BLOCK


@dataclass
class SessionState:
    """Mutable session record, written only by the session."""
    status: SessionStatus = SessionStatus.IDLE
    accepting: bool = False
    use_front_facing: bool = False
    torch_on: bool = False
    runs_started: int = 0
    runs_completed: int = 0
    frames_dropped: int = 0

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value,
            'accepting': self.accepting,
            'use_front_facing': self.use_front_facing,
            'torch_on': self.torch_on,
            'runs_started': self.runs_started,
            'runs_completed': self.runs_completed,
            'frames_dropped': self.frames_dropped,
        }


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one analysis run: parsed MRZ text or a failure."""
    success: bool
    mrz: str = ""
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def parsed(cls, mrz: str) -> "PipelineResult":
        return cls(success=True, mrz=mrz)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str) -> "PipelineResult":
        return cls(success=False, error_kind=kind, error=message)

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        if self.success:
            return {'success': True, 'mrz': self.mrz}
        return {
            'success': False,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'error': self.error,
        }


class ResultSink(ABC):
    """Receives results and errors on the dispatch thread"""

    @abstractmethod
    def on_parsed(self, mrz: str):
        """Called once per successful analysis run."""

    @abstractmethod
    def on_error(self, kind: ErrorKind, message: str):
        """Called for failed runs and broadcast session errors."""


class Dispatcher:
    """
    Delivers results to the sink on a single "main" thread.

    Deliveries run in submission order, separate from the analysis worker.
    """

    def __init__(self, sink: ResultSink):
        self.sink = sink
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mrz-main")
        self._closed = False
        self._local = threading.local()

    def dispatch(self, result: PipelineResult):
        if result.success:
            self._submit(self.sink.on_parsed, result.mrz)
        else:
            self._submit(self.sink.on_error, result.error_kind, result.error)

    def report_error(self, kind: ErrorKind, message: str):
        self._submit(self.sink.on_error, kind, message)

    def _submit(self, callback, *args):
        if self._closed:
            logger.warning(f"Dispatcher closed, dropping {callback.__name__}{args}")
            return
        self._executor.submit(self._deliver, callback, *args)

    def _deliver(self, callback, *args):
        self._local.delivering = True
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Result sink raised: {e}")
            logger.exception("Full traceback:")
        finally:
            self._local.delivering = False

    def on_dispatch_thread(self) -> bool:
        """Whether the caller is running inside a sink callback."""
        return getattr(self._local, "delivering", False)

    def shutdown(self, wait: bool = True):
        """
        Deliver everything already submitted, then stop the main thread.

        From inside a sink callback the main thread cannot join itself, so
        the remaining deliveries finish after the callback returns.
        """
        self._closed = True
        if wait and self.on_dispatch_thread():
            logger.debug("Dispatcher shutdown requested from a sink callback")
            wait = False
        self._executor.shutdown(wait=wait)


class FramePipeline:
    """
    Runs one frame through every layer and returns a PipelineResult.

    Never raises: every failure inside a run becomes a failed result, except
    OCR failures which degrade to empty text.
    """

    def __init__(self, engine: OCREngine, trained_data_dir=None, language="ocrb",
                 page_seg_mode=PageSegMode.SINGLE_BLOCK,
                 converter: Optional[ColorConverter] = None,
                 extractor: Optional[MRZExtractor] = None):
        self.engine = engine
        self.trained_data_dir = trained_data_dir
        self.language = language
        self.page_seg_mode = page_seg_mode
        self.converter = converter or ColorConverter()
        self.extractor = extractor or MRZExtractor()

    def analyze(self, frame: Frame, crop_to_mrz: bool = True) -> PipelineResult:
        """
        Analyze a frame

        Args:
            frame: Raw frame; released as soon as it has been decoded
            crop_to_mrz: Crop to the MRZ band instead of the whole page

        Returns:
            PipelineResult: Parsed MRZ text (possibly empty) or a failure
        """
        try:
            rotation = frame.rotation_degrees
            try:
                bitmap = self.converter.to_bitmap(frame)
            finally:
                frame.close()

            rotated = rotate_bitmap(bitmap, rotation)
            cropped = crop_to_cutout(rotated, crop_to_mrz)
            raw_text = self.recognize(cropped)
            mrz = self.extractor.extract(raw_text)
            return PipelineResult.parsed(mrz)

        except Exception as e:
            kind = error_kind_of(e)
            reason = e.message if isinstance(e, ScannerError) else str(e)
            logger.error(f"Image analysis failed ({kind.value}): {reason}")
            if not isinstance(e, ScannerError):
                logger.exception("Full traceback:")
            return PipelineResult.failed(kind, f"Image analysis failed: {reason}")

    def recognize(self, image: np.ndarray) -> str:
        """
        Acquire, configure, use and release an engine for one image

        Returns:
            str: Recognized text, or "" if the engine failed
        """
        handle = None
        try:
            handle = self.engine.configure(self.trained_data_dir, self.language, self.page_seg_mode)
            return self.engine.recognize(handle, image)
        except Exception as e:
            logger.warning(f"OCR failed, using empty text: {e}")
            return ""
        finally:
            if handle is not None:
                try:
                    self.engine.release(handle)
                except Exception as e:
                    logger.warning(f"OCR engine release failed: {e}")


class ScannerSession:
    """
    Host-facing scanner session.

    Wires a frame source to the frame pipeline, allows one analysis at a
    time and routes every result to the sink through the dispatcher.
    """

    def __init__(self, source: FrameSource, engine: OCREngine, sink: ResultSink,
                 asset_provider: Optional[AssetProvider] = None,
                 config: Optional[SessionConfig] = None,
                 dispatcher: Optional[Dispatcher] = None):
        logger.info("Initializing ScannerSession")
        self.source = source
        self.config = config or SessionConfig()
        self.state = SessionState(
            use_front_facing=self.config.use_front_facing,
            torch_on=self.config.torch_on,
        )
        self.dispatcher = dispatcher or Dispatcher(sink)
        self.last_result: Optional[PipelineResult] = None

        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._disposed = False

        trained_data_dir = self._prepare_trained_data(asset_provider)
        self.pipeline = FramePipeline(
            engine,
            trained_data_dir=trained_data_dir,
            language=self.config.language,
            page_seg_mode=self.config.page_seg_mode,
        )
        self.source.set_analyzer(self.on_frame)
        logger.info("ScannerSession initialized")

    def _prepare_trained_data(self, asset_provider):
        """Resolve the trained data once; failure is reported, not raised."""
        if asset_provider is None:
            logger.warning("No trained data provider, OCR will return empty text")
            return None

        name = f"{self.config.language}.traineddata"
        try:
            path = asset_provider.resolve(name)
        except Exception as e:
            reason = e.message if isinstance(e, ScannerError) else f"Failed to initialize OCR: {e}"
            logger.error(reason)
            self.dispatcher.report_error(ErrorKind.INITIALIZATION_FAILURE, reason)
            return None
        return path.parent

    # Host operations

    def start(self, use_front_facing: bool = False) -> bool:
        """
        Begin accepting frames

        Returns:
            bool: True if the frame source started
        """
        if self._disposed:
            raise RuntimeError("ScannerSession has been disposed")

        with self._state_lock:
            self.config = replace(
                self.config,
                use_front_facing=use_front_facing,
                torch_on=self.state.torch_on,
            )
            self.state.use_front_facing = use_front_facing
            self.state.accepting = True

        try:
            self.source.start(use_front_facing)
        except Exception as e:
            with self._state_lock:
                self.state.accepting = False
            reason = e.message if isinstance(e, ScannerError) else f"Camera initialization failed: {e}"
            logger.error(reason)
            self.dispatcher.report_error(ErrorKind.SOURCE_BINDING_FAILURE, reason)
            return False

        if self.state.torch_on:
            self.source.set_torch(True)

        logger.info(f"Scanner started (front_facing={use_front_facing})")
        return True

    def stop(self):
        """Stop accepting frames; an in-flight run is allowed to finish."""
        with self._state_lock:
            self.state.accepting = False
        self.source.stop()
        logger.info("Scanner stopped")

    def set_torch(self, on: bool):
        """Pass-through illumination hint, remembered across restarts."""
        with self._state_lock:
            self.state.torch_on = on
        self.source.set_torch(on)

    def capture_photo(self, crop: bool = True) -> bytes:
        """
        One-shot capture outside the streaming analysis path

        Args:
            crop: Crop to the whole-document cutout before encoding

        Returns:
            bytes: JPEG image

        Raises:
            CaptureError: Reported only to this caller
        """
        try:
            image = self.source.take_photo()
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(e)

        try:
            final = crop_to_cutout(image, crop_to_mrz=False) if crop else image
            ok, buffer = cv2.imencode('.jpg', final, [cv2.IMWRITE_JPEG_QUALITY, 100])
        except Exception as e:
            raise CaptureError(f"Failed to process photo: {e}", error_code="PHOTO_PROCESSING_ERROR")
        if not ok:
            raise CaptureError("JPEG encoding failed", error_code="PHOTO_PROCESSING_ERROR")

        logger.info(f"Photo captured ({len(buffer)} bytes, crop={crop})")
        return buffer.tobytes()

    def dispose(self):
        """Stop the session and shut down the dispatch thread. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        self.stop()
        self.source.set_analyzer(None)
        self.dispatcher.shutdown(wait=True)
        logger.info("ScannerSession disposed")

    # Frame analysis (frame source worker thread)

    def on_frame(self, frame: Frame):
        """Analyze a frame unless the session is stopped or already busy"""
        with self._state_lock:
            accepting = self.state.accepting

        if not accepting or not self._run_lock.acquire(blocking=False):
            frame.close()
            with self._state_lock:
                self.state.frames_dropped += 1
            logger.debug("Frame dropped (session stopped or busy)")
            return

        try:
            self._set_status(SessionStatus.ANALYZING)
            with self._state_lock:
                self.state.runs_started += 1

            result = self.pipeline.analyze(frame, crop_to_mrz=self.config.crop_to_mrz)

            self._set_status(SessionStatus.DISPATCHING)
            self.last_result = result
            self.dispatcher.dispatch(result)
            with self._state_lock:
                self.state.runs_completed += 1
        finally:
            self._set_status(SessionStatus.IDLE)
            self._run_lock.release()

    def _set_status(self, status: SessionStatus):
        with self._state_lock:
            self.state.status = status

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.dispose()
        return False
