"""
Runtime configuration, read from the environment (capture_station/.env is loaded if present).

  CAMERA_ADAPTER      cv2 | mock                         (default cv2)
  ANALYSIS_ADAPTER    http | mock                        (default http)
  ANALYSIS_BASE_URL   analysis backend root              (default http://127.0.0.1:3000)
  ANALYSIS_TIMEOUT_S  per-request timeout, seconds       (default 60)
  READY_TIMEOUT_MS    wait for the first frame           (default 3000)
  SUCCESS_RESET_MS    success banner before auto-reset   (default 2000)
  JPEG_QUALITY        still quality, 0..1                (default 0.9)
  DEFAULT_FACING      front | rear  (default: rear for products, front for profiles)
  FACING_PREFS_PATH   JSON file keeping the facing hint  (default: not persisted)
  SESSION_IDLE_TIMEOUT_S  dispose sessions unseen this long, 0 = never (default 300)

Camera device indexes (CAMERA_INDEX*) are read by the cv2 adapter itself.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from capture_station.orchestrator.contracts import SessionConfig

ENV_PATH = Path(__file__).resolve().parent / ".env"


@dataclass
class Settings:
    camera_adapter: str = "cv2"
    analysis_adapter: str = "http"
    analysis_base_url: str = "http://127.0.0.1:3000"
    analysis_timeout: float = 60.0
    ready_timeout_ms: int = 3000
    success_reset_ms: int = 2000
    jpeg_quality: float = 0.9
    default_facing: Optional[str] = None
    facing_prefs_path: Optional[str] = None
    session_idle_timeout: float = 300.0

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(dotenv_path=ENV_PATH, override=False)
        return cls(
            camera_adapter=os.getenv("CAMERA_ADAPTER", "cv2").lower(),
            analysis_adapter=os.getenv("ANALYSIS_ADAPTER", "http").lower(),
            analysis_base_url=os.getenv("ANALYSIS_BASE_URL", "http://127.0.0.1:3000"),
            analysis_timeout=float(os.getenv("ANALYSIS_TIMEOUT_S", "60")),
            ready_timeout_ms=int(os.getenv("READY_TIMEOUT_MS", "3000")),
            success_reset_ms=int(os.getenv("SUCCESS_RESET_MS", "2000")),
            jpeg_quality=float(os.getenv("JPEG_QUALITY", "0.9")),
            default_facing=(os.getenv("DEFAULT_FACING") or "").lower() or None,
            facing_prefs_path=os.getenv("FACING_PREFS_PATH") or None,
            session_idle_timeout=float(os.getenv("SESSION_IDLE_TIMEOUT_S", "300")),
        )

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            ready_timeout=self.ready_timeout_ms / 1000,
            success_reset_delay=self.success_reset_ms / 1000,
            jpeg_quality=self.jpeg_quality,
        )
