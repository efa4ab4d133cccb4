"""
Configuration and constants for the MRZ stream scanner.
"""
import os
from dataclasses import dataclass
from pathlib import Path


def _env_int(name, default):
    return int(os.environ.get(name, default))


@dataclass(frozen=True)
class ScannerConfig:
    """Process-wide scanner configuration."""
    # Camera settings
    camera_index: int = 2
    front_camera_index: int = 0
    camera_width: int = 1920
    camera_height: int = 1080
    camera_fps: int = 30
    camera_rotation: int = 0          # Sensor mounting rotation (clockwise degrees)

    # OCR trained data
    assets_dir: str = "models"        # Directory containing ocrb.traineddata
    cache_dir: str = "Logs/cache"     # tessdata/ is created below this
    trained_data_name: str = "ocrb.traineddata"

    # Host settings
    frame_source: str = "camera"      # "camera" (OpenCV device) or "manual" (HTTP uploads)
    event_buffer_size: int = 100      # Max undelivered events kept for polling
    log_level: str = "INFO"

    @property
    def language(self) -> str:
        """OCR language id derived from the trained data file name."""
        return Path(self.trained_data_name).stem

    @classmethod
    def from_env(cls) -> "ScannerConfig":
        """Build configuration from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            camera_index=_env_int('CAMERA_INDEX', defaults.camera_index),
            front_camera_index=_env_int('FRONT_CAMERA_INDEX', defaults.front_camera_index),
            camera_width=_env_int('CAMERA_WIDTH', defaults.camera_width),
            camera_height=_env_int('CAMERA_HEIGHT', defaults.camera_height),
            camera_fps=_env_int('CAMERA_FPS', defaults.camera_fps),
            camera_rotation=_env_int('CAMERA_ROTATION', defaults.camera_rotation),
            assets_dir=os.environ.get('ASSETS_DIR', defaults.assets_dir),
            cache_dir=os.environ.get('CACHE_DIR', defaults.cache_dir),
            trained_data_name=os.environ.get('TRAINED_DATA_NAME', defaults.trained_data_name),
            frame_source=os.environ.get('FRAME_SOURCE', defaults.frame_source).lower(),
            event_buffer_size=_env_int('EVENT_BUFFER_SIZE', defaults.event_buffer_size),
            log_level=os.environ.get('LOG_LEVEL', defaults.log_level).upper(),
        )
