import base64
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

CaptureState = Literal["idle", "acquiring", "live", "previewing", "submitting", "succeeded", "failed"]
FacingName = Literal["front", "rear"]
SessionKind = Literal["product", "profile"]

IDLE = "idle"
ACQUIRING = "acquiring"
LIVE = "live"
PREVIEWING = "previewing"
SUBMITTING = "submitting"
SUCCEEDED = "succeeded"
FAILED = "failed"

# states in which the session owns the device stream
STREAM_STATES = (ACQUIRING, LIVE, PREVIEWING)
# states in which a captured still must exist
IMAGE_STATES = (PREVIEWING, SUBMITTING)

# browser-style facingMode names, used on the wire
FACING_MODE = {"front": "user", "rear": "environment"}


@dataclass
class SessionConfig:
    ready_timeout: float = 3.0          # seconds to wait for the first frame before going live anyway
    success_reset_delay: float = 2.0    # seconds a success stays visible before auto-reset to idle
    jpeg_quality: float = 0.9           # 0..1, like canvas.toDataURL
    ideal_width: int = 1280
    ideal_height: int = 720


@dataclass
class StreamConstraints:
    facing: FacingName = "rear"
    width: int = 1280       # ideal, not exact
    height: int = 720       # ideal, not exact
    audio: bool = False

    @property
    def facing_mode(self) -> str:
        return FACING_MODE[self.facing]


@dataclass
class ImageHandle:
    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"
    captured_at: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_data_url(self) -> str:
        b64 = base64.standard_b64encode(self.data).decode("utf-8")
        return f"data:{self.mime_type};base64,{b64}"


@dataclass
class ProgressEvent:
    kind: str                       # iniciando | analisando_ia | gerando_sku | ... | concluido
    item: Optional[int] = None      # numeroPeca
    total: Optional[int] = None     # totalPecas
    message: Optional[str] = None
    sku: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class AnalysisResult:
    ok: bool = True
    message: Optional[str] = None
    products: list[dict] = field(default_factory=list)
    sku_style_me: Optional[str] = None
    analysis: Optional[dict] = None     # profile body analysis
    raw: dict = field(default_factory=dict)


@dataclass
class OpResult:
    ok: bool
    state: CaptureState
    error_code: Optional[str] = None
    message: Optional[str] = None
    value: Any = None
