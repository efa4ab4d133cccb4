"""
Layer 3 — MRZ Extraction
Component: OCR engine
Responsibility: Turn a cropped bitmap into raw text with Tesseract
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

import cv2
import numpy as np
import pytesseract

from error_handlers import EngineError

logger = logging.getLogger(__name__)


class PageSegMode(IntEnum):
    """Tesseract page segmentation mode used by the scanner"""
    SINGLE_BLOCK = 6     # Dense uniform block of text, e.g. MRZ lines


@dataclass(frozen=True)
class EngineHandle:
    """Configured engine state for a single recognition"""
    trained_data_dir: str
    language: str
    mode: PageSegMode

    @property
    def tesseract_config(self) -> str:
        return f'--tessdata-dir "{self.trained_data_dir}" --psm {int(self.mode)}'


class OCREngine(ABC):
    """OCR capability consumed by the analysis pipeline"""

    @abstractmethod
    def configure(self, trained_data_dir, language: str, mode: PageSegMode) -> EngineHandle:
        """
        Prepare an engine handle.

        Raises:
            EngineError: If the engine cannot be configured
        """

    @abstractmethod
    def recognize(self, handle: EngineHandle, image: np.ndarray) -> str:
        """
        Recognize text in a BGR image.

        Raises:
            EngineError: On internal engine failure
        """

    def release(self, handle: EngineHandle):
        """Free resources held by a handle."""


class TesseractEngine(OCREngine):
    """Tesseract OCR through pytesseract"""

    def __init__(self, tesseract_cmd=None, timeout=0):
        """
        Initialize Tesseract engine

        Args:
            tesseract_cmd: Optional path to the tesseract binary
            timeout: Seconds before a recognition is aborted (0 = no limit)
        """
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.timeout = timeout

    def configure(self, trained_data_dir, language: str, mode: PageSegMode) -> EngineHandle:
        if trained_data_dir is None:
            raise EngineError("trained data directory is not available")

        directory = Path(trained_data_dir)
        if not (directory / f"{language}.traineddata").exists():
            raise EngineError(f"{language}.traineddata not found in {directory}")

        return EngineHandle(
            trained_data_dir=str(directory),
            language=language,
            mode=PageSegMode(mode),
        )

    def recognize(self, handle: EngineHandle, image: np.ndarray) -> str:
        try:
            rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB) if image.ndim == 3 else image
            text = pytesseract.image_to_string(
                rgb,
                lang=handle.language,
                config=handle.tesseract_config,
                timeout=self.timeout,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError,
                RuntimeError, OSError) as e:
            raise EngineError(e)

        logger.debug(f"Tesseract returned {len(text)} characters")
        # Tesseract terminates its output with a newline and form feed
        return text.strip()
