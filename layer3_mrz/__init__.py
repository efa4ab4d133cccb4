"""
Layer 3 — MRZ Extraction
Handles OCR invocation, trained data resolution and MRZ isolation
"""
from .engine import OCREngine, TesseractEngine, EngineHandle, PageSegMode
from .assets import AssetProvider, TrainedDataCache
from .extractor import MRZExtractor, extract_mrz

__all__ = [
    'OCREngine',
    'TesseractEngine',
    'EngineHandle',
    'PageSegMode',
    'AssetProvider',
    'TrainedDataCache',
    'MRZExtractor',
    'extract_mrz',
]
