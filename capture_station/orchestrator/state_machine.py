import asyncio

from capture_station.adapters.camera.jpeg import encode_jpeg
from capture_station.orchestrator import errors
from capture_station.orchestrator.contracts import (
    ACQUIRING, FAILED, IDLE, LIVE, PREVIEWING, SUBMITTING, SUCCEEDED,
    AnalysisResult, CaptureState, ImageHandle, OpResult, ProgressEvent, SessionConfig, StreamConstraints,
)
from capture_station.orchestrator.errors import CameraUnsupported, CaptureStationError, NotReady

_CANCELLED = object()


class CaptureSession:
    """Camera lifecycle plus the capture -> preview -> submit flow for one hosting surface.

    acquire() and submit() are coroutines; everything else is synchronous.
    Operations never raise for domain failures: they return an OpResult and
    keep the user-facing message in last_error.
    """

    def __init__(self, provider, endpoint, status_store, preference, config: SessionConfig | None = None,
                 session_id: str = "local", kind: str = "product", context: dict | None = None):
        self.provider = provider
        self.endpoint = endpoint
        self.status = status_store
        self.preference = preference
        self.config = config or SessionConfig()
        self.session_id = session_id
        self.kind = kind
        self.context = dict(context or {})

        self.state: CaptureState = IDLE
        self.stream = None
        self._live_facing: str | None = None
        self.captured_image: ImageHandle | None = None
        self.last_error: str | None = None
        self.last_result: AnalysisResult | None = None
        self.progress: ProgressEvent | None = None
        self.disposed = False

        # bumped by cancel(); every async completion compares against it
        self._generation = 0
        self._inflight: asyncio.Task | None = None
        self._reset_timer: asyncio.TimerHandle | None = None
        self._enter_listeners = []
        self._exit_listeners = []
        self._progress_listeners = []

    @property
    def facing(self) -> str:
        return self.preference.value

    def log(self, msg: str):
        self.status.log(f"session {self.session_id}: {msg}")

    # ── listeners ──────────────────────────────────────────────────────────

    def on_enter_state(self, callback):
        self._enter_listeners.append(callback)

    def on_exit_state(self, callback):
        self._exit_listeners.append(callback)

    def on_progress(self, callback):
        self._progress_listeners.append(callback)

    def _notify(self, listeners, arg):
        for cb in list(listeners):
            try:
                cb(self, arg)
            except Exception as e:
                self.log(f"listener error {type(e).__name__}: {e}")

    def _transition(self, new: CaptureState):
        old = self.state
        if old == new:
            return
        self._notify(self._exit_listeners, old)
        self.state = new
        self.log(f"{old} -> {new}")
        self._notify(self._enter_listeners, new)

    # ── results ────────────────────────────────────────────────────────────

    def _ok(self, value=None) -> OpResult:
        return OpResult(ok=True, state=self.state, value=value)

    def _reject(self, code: str, message: str) -> OpResult:
        self.log(f"rejected: {message}")
        return OpResult(ok=False, state=self.state, error_code=code, message=message)

    def _cancelled(self) -> OpResult:
        return OpResult(ok=False, state=self.state, error_code=errors.ERR_CANCELLED, message="Cancelled")

    def _check(self, op: str, allowed: tuple) -> OpResult | None:
        if self.disposed:
            return self._reject(errors.ERR_DISPOSED, f"{op}: session disposed")
        if self.state in allowed:
            return None
        if self.state in (ACQUIRING, SUBMITTING):
            return self._reject(errors.ERR_BUSY, f"{op}: busy ({self.state})")
        return self._reject(errors.ERR_INVALID_STATE, f"{op}: not allowed in {self.state}")

    def _fail(self, exc: CaptureStationError, settle: CaptureState, gen: int) -> OpResult:
        self.last_error = exc.message
        self.status.last_error = exc.message
        self.log(f"{exc.code}: {exc.message}")
        if settle == IDLE:
            self._release_stream()
            self.captured_image = None
        self._transition(FAILED)
        # a listener may have cancelled or disposed us while in FAILED
        if gen == self._generation and not self.disposed:
            self._transition(settle)
        return OpResult(ok=False, state=self.state, error_code=exc.code, message=exc.message)

    # ── resources ──────────────────────────────────────────────────────────

    def _release_stream(self):
        stream, self.stream = self.stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as e:
            self.log(f"stream stop failed {type(e).__name__}: {e}")

    def _cancel_reset_timer(self):
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    async def _run_inflight(self, coro, gen: int):
        """Await coro as the cancellable in-flight task; _CANCELLED if cancel() got to it first."""
        task = asyncio.ensure_future(coro)
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            if gen != self._generation:
                return _CANCELLED
            # the caller itself was cancelled: leave nothing open behind
            self.cancel()
            raise
        finally:
            if self._inflight is task:
                self._inflight = None

    async def _wait_ready(self, stream) -> bool:
        try:
            await asyncio.wait_for(stream.wait_ready(), timeout=self.config.ready_timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ── operations ─────────────────────────────────────────────────────────

    async def acquire(self, facing: str | None = None) -> OpResult:
        """Open the camera and go live.

        Live is confirmed by the stream's ready signal or after
        config.ready_timeout, whichever comes first. Calling it while live
        is a no-op.
        """
        if not self.disposed and self.state == LIVE:
            if facing is not None and facing != self._live_facing:
                return await self.switch_facing(facing)
            self.log("acquire: already live")
            return self._ok()
        rejected = self._check("acquire", (IDLE, SUCCEEDED))
        if rejected:
            return rejected
        if facing is not None:
            try:
                self.preference.set(facing)
            except ValueError as e:
                return self._reject(errors.ERR_INVALID_ARGUMENT, str(e))
        return await self._open()

    async def switch_facing(self, facing: str | None = None) -> OpResult:
        """Swap to the other camera (or the given one) while live.

        The current stream is stopped before the new one is requested, so
        there is never more than one open. The session goes back through
        acquiring; a failure to reopen settles in idle like any acquire.
        """
        rejected = self._check("switch_facing", (LIVE,))
        if rejected:
            return rejected
        target = facing or ("front" if self._live_facing == "rear" else "rear")
        try:
            self.preference.set(target)
        except ValueError as e:
            return self._reject(errors.ERR_INVALID_ARGUMENT, str(e))
        self.log(f"switching camera {self._live_facing} -> {target}")
        self._release_stream()
        return await self._open()

    async def _open(self) -> OpResult:
        self._cancel_reset_timer()
        self._generation += 1
        gen = self._generation
        self.last_error = None
        self.last_result = None
        self.progress = None
        self._transition(ACQUIRING)
        if gen != self._generation:
            return self._cancelled()

        constraints = StreamConstraints(
            facing=self.preference.value,
            width=self.config.ideal_width,
            height=self.config.ideal_height,
        )
        try:
            if not self.provider.supported:
                raise CameraUnsupported()
            stream = await self.provider.open_stream(constraints)
        except CaptureStationError as e:
            if gen != self._generation:
                return self._cancelled()
            return self._fail(e, settle=IDLE, gen=gen)
        except Exception as e:
            if gen != self._generation:
                return self._cancelled()
            self.log(f"acquire: unexpected {type(e).__name__}: {e}")
            return self._fail(CaptureStationError(str(e) or None), settle=IDLE, gen=gen)

        if gen != self._generation:
            stream.stop()
            self.log("acquire: stream arrived after cancel, released")
            return self._cancelled()
        self.stream = stream
        self._live_facing = constraints.facing

        ready = await self._run_inflight(self._wait_ready(stream), gen)
        if ready is _CANCELLED or gen != self._generation:
            return self._cancelled()
        if not ready:
            self.log(f"acquire: no ready signal after {self.config.ready_timeout}s, going live anyway")
        self._transition(LIVE)
        return self._ok()

    def capture(self) -> OpResult:
        rejected = self._check("capture", (LIVE,))
        if rejected:
            return rejected
        frame = self.stream.latest_frame() if self.stream is not None else None
        try:
            image = encode_jpeg(frame, self.config.jpeg_quality)
        except NotReady as e:
            self.last_error = e.message
            self.log(f"{e.code}: {e.message}")
            return OpResult(ok=False, state=self.state, error_code=e.code, message=e.message)

        self.stream.pause()
        self.captured_image = image
        self.log(f"captured {image.width}x{image.height} ({image.size} bytes)")
        self._transition(PREVIEWING)
        return self._ok(image)

    def retake(self) -> OpResult:
        rejected = self._check("retake", (PREVIEWING,))
        if rejected:
            return rejected
        self.captured_image = None
        if self.stream is not None:
            self.stream.resume()
        self._transition(LIVE)
        return self._ok()

    async def submit(self, context: dict | None = None) -> OpResult:
        """Send the still for analysis.

        On failure the session settles back in previewing with last_error set,
        keeping both the still and the stream so the user can retry or retake.
        On success the stream is released and the session auto-resets to idle
        after config.success_reset_delay.
        """
        rejected = self._check("submit", (PREVIEWING,))
        if rejected:
            return rejected
        if self.captured_image is None:
            return self._reject(errors.ERR_INVALID_STATE, "submit: nothing captured")

        gen = self._generation
        payload = dict(self.context)
        payload.update(context or {})
        image = self.captured_image
        self.last_error = None
        self.progress = None
        self._transition(SUBMITTING)
        if gen != self._generation:
            return self._cancelled()

        try:
            outcome = await self._run_inflight(
                self.endpoint.analyze(image, payload, on_progress=self._progress_handler(gen)), gen)
        except CaptureStationError as e:
            if gen != self._generation:
                return self._cancelled()
            return self._fail(e, settle=PREVIEWING, gen=gen)
        except Exception as e:
            if gen != self._generation:
                return self._cancelled()
            self.log(f"submit: unexpected {type(e).__name__}: {e}")
            return self._fail(CaptureStationError(errors.GENERIC_SUBMIT_MESSAGE), settle=PREVIEWING, gen=gen)

        if outcome is _CANCELLED or gen != self._generation:
            return self._cancelled()

        self._release_stream()
        self.captured_image = None
        self.last_result = outcome
        self._transition(SUCCEEDED)
        if gen == self._generation and self.state == SUCCEEDED:
            self._reset_timer = asyncio.get_running_loop().call_later(
                self.config.success_reset_delay, self._auto_reset, gen)
        return OpResult(ok=True, state=self.state, value=outcome)

    def _progress_handler(self, gen: int):
        def handle(event: ProgressEvent):
            if gen != self._generation or self.disposed:
                return
            self.progress = event
            self._notify(self._progress_listeners, event)
        return handle

    def _auto_reset(self, gen: int):
        self._reset_timer = None
        if gen != self._generation or self.disposed or self.state != SUCCEEDED:
            return
        self.log("auto-reset after success")
        self._transition(IDLE)

    def cancel(self) -> OpResult:
        """Back to idle from anywhere. Pending work is abandoned; its results are discarded."""
        self._generation += 1
        self._cancel_reset_timer()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._release_stream()
        self.captured_image = None
        self.last_error = None
        self.progress = None
        self._transition(IDLE)
        return self._ok()

    def dispose(self) -> OpResult:
        if self.disposed:
            return self._ok()
        self.cancel()
        self._enter_listeners.clear()
        self._exit_listeners.clear()
        self._progress_listeners.clear()
        self.disposed = True
        self.log("disposed")
        return self._ok()

    # ── read side ──────────────────────────────────────────────────────────

    def preview_frame(self) -> ImageHandle | None:
        """JPEG snapshot of what the stream shows right now, for a live preview."""
        if self.stream is None or self.state not in (LIVE, PREVIEWING):
            return None
        try:
            return encode_jpeg(self.stream.latest_frame(), self.config.jpeg_quality)
        except NotReady:
            return None
