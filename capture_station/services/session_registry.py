import time
import uuid

from capture_station.orchestrator.contracts import ACQUIRING, SUBMITTING, SessionConfig
from capture_station.orchestrator.preferences import FacingPreference
from capture_station.orchestrator.state_machine import CaptureSession

# product shots use the back camera, profile shots the selfie camera
DEFAULT_FACING = {"product": "rear", "profile": "front"}


class SessionRegistry:
    """Owns every live CaptureSession of the service, keyed by a short id.

    Every lookup through get() counts as activity; expire_idle() disposes
    sessions nobody has looked at for a while.
    """

    def __init__(self, status_store, provider, endpoints: dict, config: SessionConfig | None = None,
                 prefs_path: str | None = None, default_facing: str | None = None):
        self.status = status_store
        self.provider = provider
        self.endpoints = endpoints
        self.config = config or SessionConfig()
        self.preferences = {
            kind: FacingPreference(status_store, default=default_facing or DEFAULT_FACING.get(kind, "rear"),
                                   path=prefs_path, key=kind)
            for kind in endpoints
        }
        self.sessions: dict[str, CaptureSession] = {}
        self._last_seen: dict[str, float] = {}

    def create(self, kind: str, store_id: str | None = None) -> CaptureSession:
        if kind not in self.endpoints:
            raise ValueError(f"unknown capture kind {kind!r}")
        if kind == "product" and not store_id:
            raise ValueError("store_id is required for product capture")
        sid = uuid.uuid4().hex[:8]
        session = CaptureSession(
            provider=self.provider,
            endpoint=self.endpoints[kind],
            status_store=self.status,
            preference=self.preferences[kind],
            config=self.config,
            session_id=sid,
            kind=kind,
            context={"lojaId": store_id} if store_id else None,
        )
        self.sessions[sid] = session
        self._last_seen[sid] = time.monotonic()
        self.status.log(f"SESSION_START: {sid} kind={kind}")
        return session

    def get(self, sid: str) -> CaptureSession | None:
        session = self.sessions.get(sid)
        if session is not None:
            self._last_seen[sid] = time.monotonic()
        return session

    def dispose(self, sid: str) -> bool:
        session = self.sessions.pop(sid, None)
        self._last_seen.pop(sid, None)
        if session is None:
            return False
        session.dispose()
        return True

    def dispose_all(self):
        for sid in list(self.sessions):
            self.dispose(sid)

    def expire_idle(self, max_idle: float, now: float | None = None) -> list[str]:
        """Dispose sessions unseen for more than max_idle seconds; in-flight ones are left alone."""
        now = time.monotonic() if now is None else now
        stale = [
            sid for sid, seen in self._last_seen.items()
            if now - seen > max_idle and self.sessions[sid].state not in (ACQUIRING, SUBMITTING)
        ]
        for sid in stale:
            self.status.log(f"SESSION_EXPIRED: {sid} idle for more than {max_idle:g}s")
            self.dispose(sid)
        return stale
