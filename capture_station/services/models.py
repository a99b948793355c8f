from pydantic import BaseModel, Field
from typing import Literal, Optional

class CreateSessionRequest(BaseModel):
    kind: Literal["product", "profile"] = "product"
    store_id: Optional[str] = None   # lojaId, required for product capture

class AcquireRequest(BaseModel):
    facing: Optional[Literal["front", "rear"]] = None   # None = last used

class SubmitRequest(BaseModel):
    # extra identifiers merged over the session context for this submission
    context: dict[str, str] = Field(default_factory=dict)

class ProgressOut(BaseModel):
    kind: str
    item: Optional[int] = None
    total: Optional[int] = None
    message: Optional[str] = None
    sku: Optional[str] = None

class AnalysisOut(BaseModel):
    ok: bool
    message: Optional[str] = None
    produtos: list[dict] = Field(default_factory=list)
    skuStyleMe: Optional[str] = None
    analise: Optional[dict] = None

class ImageOut(BaseModel):
    width: int
    height: int
    size: int
    mime_type: str

class OpResponse(BaseModel):
    ok: bool
    state: str
    error_code: Optional[str] = None
    message: Optional[str] = None
    result: Optional[AnalysisOut] = None
    image: Optional[ImageOut] = None

class SessionResponse(BaseModel):
    ok: bool
    session_id: str
    kind: str
    state: str
    facing: str
    store_id: Optional[str] = None
    last_error: Optional[str] = None
    has_image: bool = False
    progress: Optional[ProgressOut] = None
    result: Optional[AnalysisOut] = None

class StatusResponse(BaseModel):
    sessions: dict[str, str]          # session_id -> state
    last_error: Optional[str] = None
    logs: list[str]
