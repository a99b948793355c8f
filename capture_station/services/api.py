import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import Response

from capture_station.adapters.analysis.http_analysis import HttpProductAnalysis, HttpProfileAnalysis
from capture_station.adapters.analysis.mock_analysis import MockAnalysis
from capture_station.adapters.camera.mock_camera import MockCameraProvider
from capture_station.orchestrator import errors
from capture_station.orchestrator.contracts import AnalysisResult, ImageHandle, OpResult
from capture_station.orchestrator.state_machine import CaptureSession
from capture_station.services.models import (
    AcquireRequest, AnalysisOut, CreateSessionRequest, ImageOut, OpResponse, ProgressOut,
    SessionResponse, StatusResponse, SubmitRequest,
)
from capture_station.services.session_registry import SessionRegistry
from capture_station.services.status_store import StatusStore
from capture_station.settings import Settings

router = APIRouter()


def make_provider(settings: Settings, status: StatusStore):
    # Camera adapter: CAMERA_ADAPTER=cv2 (default) | mock
    if settings.camera_adapter == "mock":
        status.log("camera adapter: mock")
        return MockCameraProvider(status)
    from capture_station.adapters.camera.cv2_camera import CV2CameraProvider
    status.log("camera adapter: cv2")
    return CV2CameraProvider(status)


def make_endpoints(settings: Settings, status: StatusStore) -> dict:
    # Analysis adapter: ANALYSIS_ADAPTER=http (default) | mock
    if settings.analysis_adapter == "mock":
        status.log("analysis adapter: mock")
        return {"product": MockAnalysis(status), "profile": MockAnalysis(status, profile=True)}
    status.log(f"analysis adapter: http -> {settings.analysis_base_url}")
    return {
        "product": HttpProductAnalysis(status, base_url=settings.analysis_base_url,
                                       timeout=settings.analysis_timeout),
        "profile": HttpProfileAnalysis(status, base_url=settings.analysis_base_url,
                                       timeout=settings.analysis_timeout),
    }


async def _expire_idle_sessions(registry: SessionRegistry, max_idle: float):
    # catches sessions whose page went away without a DELETE
    interval = min(30.0, max(0.05, max_idle / 4))
    while True:
        await asyncio.sleep(interval)
        registry.expire_idle(max_idle)


def create_app(settings: Settings | None = None, provider=None, endpoints: dict | None = None,
               status: StatusStore | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    status = status or StatusStore()
    provider = provider or make_provider(settings, status)
    endpoints = endpoints or make_endpoints(settings, status)
    registry = SessionRegistry(
        status, provider, endpoints,
        config=settings.session_config(),
        prefs_path=settings.facing_prefs_path,
        default_facing=settings.default_facing,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if settings.session_idle_timeout > 0:
            sweeper = asyncio.create_task(_expire_idle_sessions(registry, settings.session_idle_timeout))
        yield
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        status.log(f"shutdown: disposing {len(registry.sessions)} session(s)")
        registry.dispose_all()

    app = FastAPI(title="capture-station", lifespan=lifespan)
    app.state.settings = settings
    app.state.status = status
    app.state.provider = provider
    app.state.registry = registry
    app.include_router(router)
    return app


# ── helpers ────────────────────────────────────────────────────────────────

def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _analysis_out(r: AnalysisResult) -> AnalysisOut:
    return AnalysisOut(ok=r.ok, message=r.message, produtos=r.products, skuStyleMe=r.sku_style_me, analise=r.analysis)


def _op_response(r: OpResult) -> OpResponse:
    out = OpResponse(ok=r.ok, state=r.state, error_code=r.error_code, message=r.message)
    if isinstance(r.value, AnalysisResult):
        out.result = _analysis_out(r.value)
    elif isinstance(r.value, ImageHandle):
        out.image = ImageOut(width=r.value.width, height=r.value.height, size=r.value.size,
                             mime_type=r.value.mime_type)
    return out


def _no_session(sid: str) -> OpResponse:
    return OpResponse(ok=False, state="unknown", error_code=errors.ERR_NO_SESSION, message=f"session {sid} not found")


def _session_response(s: CaptureSession) -> SessionResponse:
    p = s.progress
    return SessionResponse(
        ok=True,
        session_id=s.session_id,
        kind=s.kind,
        state=s.state,
        facing=s.facing,
        store_id=s.context.get("lojaId"),
        last_error=s.last_error,
        has_image=s.captured_image is not None,
        progress=ProgressOut(kind=p.kind, item=p.item, total=p.total, message=p.message, sku=p.sku) if p else None,
        result=_analysis_out(s.last_result) if s.last_result else None,
    )


def _get_or_404(request: Request, sid: str) -> CaptureSession:
    session = _registry(request).get(sid)
    if session is None:
        raise HTTPException(status_code=404, detail=f"session {sid} not found")
    return session


# ── routes ─────────────────────────────────────────────────────────────────

@router.post("/sessions", response_model=SessionResponse)
async def create_session(req: CreateSessionRequest, request: Request):
    try:
        session = _registry(request).create(req.kind, store_id=req.store_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _session_response(session)


@router.get("/sessions/{sid}", response_model=SessionResponse)
async def get_session(sid: str, request: Request):
    return _session_response(_get_or_404(request, sid))


@router.delete("/sessions/{sid}", response_model=OpResponse)
async def delete_session(sid: str, request: Request):
    if not _registry(request).dispose(sid):
        return _no_session(sid)
    return OpResponse(ok=True, state="idle")


@router.post("/sessions/{sid}/acquire", response_model=OpResponse)
async def acquire(sid: str, request: Request, req: Optional[AcquireRequest] = None):
    session = _registry(request).get(sid)
    if session is None:
        return _no_session(sid)
    return _op_response(await session.acquire(req.facing if req else None))


@router.post("/sessions/{sid}/switch", response_model=OpResponse)
async def switch_camera(sid: str, request: Request, req: Optional[AcquireRequest] = None):
    """Flip between front and rear while live, or go to the given facing."""
    session = _registry(request).get(sid)
    if session is None:
        return _no_session(sid)
    return _op_response(await session.switch_facing(req.facing if req else None))


@router.post("/sessions/{sid}/capture", response_model=OpResponse)
async def capture(sid: str, request: Request):
    session = _registry(request).get(sid)
    if session is None:
        return _no_session(sid)
    return _op_response(session.capture())


@router.post("/sessions/{sid}/retake", response_model=OpResponse)
async def retake(sid: str, request: Request):
    session = _registry(request).get(sid)
    if session is None:
        return _no_session(sid)
    return _op_response(session.retake())


@router.post("/sessions/{sid}/submit", response_model=OpResponse)
async def submit(sid: str, request: Request, req: Optional[SubmitRequest] = None):
    session = _registry(request).get(sid)
    if session is None:
        return _no_session(sid)
    return _op_response(await session.submit(req.context if req else None))


@router.post("/sessions/{sid}/cancel", response_model=OpResponse)
async def cancel(sid: str, request: Request):
    session = _registry(request).get(sid)
    if session is None:
        return _no_session(sid)
    return _op_response(session.cancel())


@router.get("/sessions/{sid}/image")
async def captured_image(sid: str, request: Request):
    """The still waiting for confirmation (previewing / submitting)."""
    image = _get_or_404(request, sid).captured_image
    if image is None:
        raise HTTPException(status_code=404, detail="no captured image")
    return Response(content=image.data, media_type=image.mime_type)


@router.get("/sessions/{sid}/frame")
async def live_frame(sid: str, request: Request):
    """One JPEG of the live stream; the page polls this for its preview."""
    frame = _get_or_404(request, sid).preview_frame()
    if frame is None:
        raise HTTPException(status_code=404, detail="camera not live")
    return Response(content=frame.data, media_type=frame.mime_type, headers={"Cache-Control": "no-store"})


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    status = request.app.state.status
    sessions = {sid: s.state for sid, s in _registry(request).sessions.items()}
    return StatusResponse(sessions=sessions, last_error=status.last_error, logs=status.logs)


@router.get("/health")
def health(request: Request):
    """Adapter wiring and whether a camera backend is usable at all."""
    provider = request.app.state.provider
    registry = _registry(request)
    checks = {
        "api": True,
        "camera_adapter": type(provider).__name__,
        "analysis_adapters": {kind: type(ep).__name__ for kind, ep in registry.endpoints.items()},
        "sessions": len(registry.sessions),
    }
    try:
        checks["camera_supported"] = provider.supported
    except Exception as e:
        checks["camera_supported"] = False
        checks["camera_error"] = str(e)
    checks["all_ok"] = checks["api"] and checks["camera_supported"]
    return checks


app = create_app()
