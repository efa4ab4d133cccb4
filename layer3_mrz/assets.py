"""
Layer 3 — MRZ Extraction
Component: Trained data assets
Responsibility: Resolve the OCR trained data file to a readable cached path
"""
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

from error_handlers import InitializationError

logger = logging.getLogger(__name__)


class AssetProvider(ABC):
    """Resolves named trained-data resources to file paths"""

    @abstractmethod
    def resolve(self, name: str) -> Path:
        """
        Return a readable path for the named asset.

        Raises:
            InitializationError: If the asset is missing or unreadable
        """


class TrainedDataCache(AssetProvider):
    """
    Copies bundled trained data into a tessdata/ cache directory once.

    Directory structure:
        <cache_dir>/
        └── tessdata/
            └── ocrb.traineddata
    """

    def __init__(self, assets_dir, cache_dir):
        """
        Initialize trained data cache

        Args:
            assets_dir: Directory holding the bundled .traineddata files
            cache_dir: Base directory for the tessdata/ cache
        """
        self.assets_dir = Path(assets_dir)
        self.cache_dir = Path(cache_dir)
        self.tessdata_dir = self.cache_dir / "tessdata"
        logger.debug(f"Trained data assets: {self.assets_dir} -> {self.tessdata_dir}")

    def resolve(self, name: str) -> Path:
        target = self.tessdata_dir / name
        if target.exists():
            logger.debug(f"Using cached trained data: {target}")
            return target

        source = self.assets_dir / name
        if not source.is_file():
            logger.error(f"Trained data asset not found: {source}")
            raise InitializationError(name, reason=f"asset not found: {source}")

        try:
            self.tessdata_dir.mkdir(parents=True, exist_ok=True)
            # Copy to a temp name first so a partial copy is never reused
            partial = target.with_suffix(target.suffix + ".part")
            shutil.copyfile(source, partial)
            os.replace(partial, target)
        except OSError as e:
            logger.error(f"Failed to cache trained data: {e}")
            raise InitializationError(name, reason=str(e))

        logger.info(f"Cached trained data: {target}")
        return target
