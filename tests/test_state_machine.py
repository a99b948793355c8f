"""Tests for the CaptureSession lifecycle, driven by the mock camera and mock analysis adapters."""

import asyncio
import random

import pytest

from capture_station.adapters.analysis.base import AnalysisEndpoint
from capture_station.adapters.analysis.mock_analysis import MockAnalysis
from capture_station.adapters.camera.mock_camera import MockCameraProvider
from capture_station.orchestrator import errors
from capture_station.orchestrator.contracts import (
    ACQUIRING, FAILED, IDLE, IMAGE_STATES, LIVE, PREVIEWING, STREAM_STATES, SUBMITTING, SUCCEEDED,
    AnalysisResult, SessionConfig,
)
from capture_station.orchestrator.errors import (
    CameraNoDevice, CameraPermissionDenied, NetworkFailure, ServerRejected,
)


class FixedSku(AnalysisEndpoint):
    name = "fixed_sku"

    def __init__(self, sku: str):
        self.sku = sku

    async def analyze(self, image, context, on_progress=None):
        return AnalysisResult(ok=True, products=[{"skuStyleMe": self.sku}], sku_style_me=self.sku)


class Crashing(AnalysisEndpoint):
    name = "crashing"

    async def analyze(self, image, context, on_progress=None):
        raise RuntimeError("socket exploded")


def record_states(session) -> list:
    entered = []
    session.on_enter_state(lambda s, state: entered.append(state))
    return entered


def assert_invariants(session, provider):
    assert session.state != FAILED
    assert (session.captured_image is not None) == (session.state in IMAGE_STATES)
    assert (session.stream is not None) == (session.state in STREAM_STATES)
    assert len(provider.open_streams) <= 1
    if session.stream is not None:
        assert provider.open_streams == [session.stream]


async def go_previewing(session):
    assert (await session.acquire()).ok
    result = session.capture()
    assert result.ok, result.message
    return result


# =============================================================================
# Acquire
# =============================================================================

class TestAcquire:

    @pytest.mark.asyncio
    async def test_acquire_goes_live_with_one_stream(self, session, provider):
        entered = record_states(session)

        result = await session.acquire()

        assert result.ok
        assert result.state == LIVE
        assert session.state == LIVE
        assert entered == [ACQUIRING, LIVE]
        assert len(provider.open_streams) == 1
        assert session.stream is provider.open_streams[0]

    @pytest.mark.asyncio
    async def test_acquire_requests_audio_free_stream_with_ideal_size(self, session, provider):
        await session.acquire()

        constraints = session.stream.constraints
        assert constraints.audio is False
        assert (constraints.width, constraints.height) == (1280, 720)
        assert constraints.facing == "rear"
        assert constraints.facing_mode == "environment"

    @pytest.mark.asyncio
    async def test_acquire_while_live_is_noop(self, session, provider):
        await session.acquire()
        first_stream = session.stream

        result = await session.acquire()

        assert result.ok
        assert session.state == LIVE
        assert session.stream is first_stream
        assert provider.opened_total == 1

    @pytest.mark.asyncio
    async def test_acquire_while_acquiring_is_busy(self, make_session, status):
        provider = MockCameraProvider(status, open_delay=0.1)
        session = make_session(provider=provider)

        first = asyncio.create_task(session.acquire())
        await asyncio.sleep(0.01)
        assert session.state == ACQUIRING

        second = await session.acquire()
        assert not second.ok
        assert second.error_code == errors.ERR_BUSY

        assert (await first).ok
        assert provider.opened_total == 1

    @pytest.mark.asyncio
    async def test_ready_signal_wins_over_timeout(self, make_session, status):
        provider = MockCameraProvider(status, ready_delay=0.01)
        session = make_session(provider=provider, config=SessionConfig(ready_timeout=5.0))
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await session.acquire()

        assert result.ok
        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_goes_live_when_ready_signal_never_fires(self, make_session, status):
        provider = MockCameraProvider(status, ready_delay=None)
        session = make_session(provider=provider, config=SessionConfig(ready_timeout=0.1))
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await session.acquire()
        elapsed = loop.time() - started

        assert result.ok
        assert session.state == LIVE
        assert 0.09 <= elapsed < 1.0
        assert any("going live anyway" in line for line in status.logs)

    @pytest.mark.asyncio
    async def test_permission_denied_settles_idle_with_message(self, make_session, status):
        provider = MockCameraProvider(status, fail_with=CameraPermissionDenied())
        session = make_session(provider=provider)
        entered = record_states(session)

        result = await session.acquire()

        assert not result.ok
        assert result.error_code == errors.ERR_CAMERA_PERMISSION_DENIED
        assert session.state == IDLE
        assert session.last_error == "Camera access was denied"
        assert status.last_error == "Camera access was denied"
        assert entered == [ACQUIRING, FAILED, IDLE]
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_no_device(self, make_session, status):
        provider = MockCameraProvider(status, fail_with=CameraNoDevice())
        session = make_session(provider=provider)

        result = await session.acquire()

        assert result.error_code == errors.ERR_CAMERA_NO_DEVICE
        assert session.state == IDLE
        assert session.last_error == "No camera found"

    @pytest.mark.asyncio
    async def test_unsupported_environment(self, make_session, status):
        provider = MockCameraProvider(status, supported=False)
        session = make_session(provider=provider)

        result = await session.acquire()

        assert result.error_code == errors.ERR_CAMERA_UNSUPPORTED
        assert session.state == IDLE
        assert provider.opened_total == 0

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, make_session, status):
        provider = MockCameraProvider(status, fail_with=CameraPermissionDenied())
        session = make_session(provider=provider)
        await session.acquire()

        provider.fail_with = None
        result = await session.acquire()

        assert result.ok
        assert session.state == LIVE
        assert session.last_error is None

    @pytest.mark.asyncio
    async def test_unknown_facing_rejected(self, session, provider):
        result = await session.acquire("sideways")

        assert not result.ok
        assert result.error_code == errors.ERR_INVALID_ARGUMENT
        assert session.state == IDLE
        assert provider.opened_total == 0


# =============================================================================
# Facing preference
# =============================================================================

class TestFacing:

    @pytest.mark.asyncio
    async def test_requested_facing_is_remembered(self, session, preference):
        await session.acquire("front")
        assert session.stream.constraints.facing == "front"
        assert preference.value == "front"

        session.cancel()
        await session.acquire()

        assert session.stream.constraints.facing == "front"

    @pytest.mark.asyncio
    async def test_preference_outlives_the_session(self, make_session, provider):
        first = make_session(session_id="a")
        await first.acquire("front")
        first.dispose()

        second = make_session(session_id="b")
        await second.acquire()

        assert second.stream.constraints.facing == "front"
        assert second.facing == "front"


class TestSwitchFacing:

    @pytest.fixture
    def peaks(self, provider):
        """Number of open streams right after each open_stream call."""
        seen = []
        original = provider.open_stream

        async def counting(constraints):
            stream = await original(constraints)
            seen.append(len(provider.open_streams))
            return stream

        provider.open_stream = counting
        return seen

    @pytest.mark.asyncio
    async def test_switch_flips_to_other_camera(self, session, provider, preference, peaks):
        await session.acquire()
        entered = record_states(session)

        result = await session.switch_facing()

        assert result.ok
        assert session.state == LIVE
        assert session.stream.constraints.facing == "front"
        assert preference.value == "front"
        assert entered == [ACQUIRING, LIVE]
        assert provider.opened_total == 2
        assert peaks == [1, 1]

        await session.switch_facing()
        assert session.stream.constraints.facing == "rear"
        assert max(peaks) == 1

    @pytest.mark.asyncio
    async def test_switch_to_given_facing(self, session, provider):
        await session.acquire("rear")

        result = await session.switch_facing("front")

        assert result.ok
        assert session.stream.constraints.facing == "front"
        assert len(provider.open_streams) == 1

    @pytest.mark.asyncio
    async def test_acquire_with_other_facing_while_live_switches(self, session, provider, preference, peaks):
        await session.acquire("rear")

        result = await session.acquire("front")

        assert result.ok
        assert session.state == LIVE
        assert session.stream.constraints.facing == "front"
        assert preference.value == "front"
        assert max(peaks) == 1

    @pytest.mark.asyncio
    async def test_acquire_with_same_facing_while_live_is_noop(self, session, provider):
        await session.acquire("rear")

        assert (await session.acquire("rear")).ok
        assert provider.opened_total == 1

    @pytest.mark.asyncio
    async def test_switch_outside_live(self, session):
        result = await session.switch_facing()
        assert result.error_code == errors.ERR_INVALID_STATE

        await go_previewing(session)
        assert (await session.switch_facing()).error_code == errors.ERR_INVALID_STATE
        assert session.state == PREVIEWING

        session.dispose()
        assert (await session.switch_facing()).error_code == errors.ERR_DISPOSED

    @pytest.mark.asyncio
    async def test_unknown_facing_keeps_current_stream(self, session):
        await session.acquire()
        stream = session.stream

        result = await session.switch_facing("sideways")

        assert result.error_code == errors.ERR_INVALID_ARGUMENT
        assert session.state == LIVE
        assert session.stream is stream

    @pytest.mark.asyncio
    async def test_failed_reopen_settles_idle(self, session, provider):
        await session.acquire()
        provider.fail_with = CameraNoDevice()

        result = await session.switch_facing()

        assert result.error_code == errors.ERR_CAMERA_NO_DEVICE
        assert session.state == IDLE
        assert session.last_error == "No camera found"
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_cancel_during_switch(self, make_session, status):
        provider = MockCameraProvider(status)
        session = make_session(provider=provider)
        await session.acquire()
        provider.open_delay = 0.05

        pending = asyncio.create_task(session.switch_facing())
        await asyncio.sleep(0.01)
        session.cancel()
        result = await pending

        assert result.error_code == errors.ERR_CANCELLED
        assert session.state == IDLE
        assert provider.open_streams == []


# =============================================================================
# Capture / retake
# =============================================================================

class TestCapture:

    @pytest.mark.asyncio
    async def test_capture_freezes_a_jpeg_still(self, session):
        await session.acquire()

        result = session.capture()

        assert result.ok
        assert session.state == PREVIEWING
        image = session.captured_image
        assert result.value is image
        assert image.mime_type == "image/jpeg"
        assert image.data[:2] == b"\xff\xd8"
        assert (image.width, image.height) == (1280, 720)
        assert image.to_data_url().startswith("data:image/jpeg;base64,")
        assert session.stream.paused

    @pytest.mark.asyncio
    async def test_capture_before_first_frame_is_not_ready(self, make_session, status):
        provider = MockCameraProvider(status, ready_delay=None)
        session = make_session(provider=provider, config=SessionConfig(ready_timeout=0.05))
        await session.acquire()

        result = session.capture()

        assert not result.ok
        assert result.error_code == errors.ERR_CAPTURE_NOT_READY
        assert session.state == LIVE
        assert session.captured_image is None
        assert session.last_error

        session.stream.mark_ready()
        assert session.capture().ok

    @pytest.mark.asyncio
    async def test_capture_outside_live_is_invalid(self, session):
        result = session.capture()

        assert not result.ok
        assert result.error_code == errors.ERR_INVALID_STATE
        assert session.state == IDLE

    @pytest.mark.asyncio
    async def test_retake_discards_still_and_resumes(self, session):
        await go_previewing(session)
        first = session.captured_image

        result = session.retake()

        assert result.ok
        assert session.state == LIVE
        assert session.captured_image is None
        assert not session.stream.paused

        second = session.capture()
        assert second.ok
        assert session.captured_image is second.value
        assert second.value.data != first.data

    @pytest.mark.asyncio
    async def test_retake_outside_previewing_is_invalid(self, session):
        await session.acquire()

        result = session.retake()

        assert result.error_code == errors.ERR_INVALID_STATE
        assert session.state == LIVE

    @pytest.mark.asyncio
    async def test_preview_frame_only_while_streaming(self, session):
        assert session.preview_frame() is None
        await session.acquire()

        frame = session.preview_frame()

        assert frame is not None
        assert frame.data[:2] == b"\xff\xd8"
        session.cancel()
        assert session.preview_frame() is None


# =============================================================================
# Submit
# =============================================================================

class TestSubmit:

    @pytest.mark.asyncio
    async def test_success_releases_camera_and_auto_resets(self, make_session, provider):
        session = make_session(endpoint=FixedSku("ABC123"))
        entered = record_states(session)
        await go_previewing(session)

        result = await session.submit()

        assert result.ok
        assert result.state == SUCCEEDED
        assert result.value.sku_style_me == "ABC123"
        assert session.last_result.sku_style_me == "ABC123"
        assert session.captured_image is None
        assert session.stream is None
        assert provider.open_streams == []

        await asyncio.sleep(0.2)
        assert session.state == IDLE
        assert entered == [ACQUIRING, LIVE, PREVIEWING, SUBMITTING, SUCCEEDED, IDLE]

    @pytest.mark.asyncio
    async def test_submit_sends_session_context_and_still(self, session, endpoint):
        await go_previewing(session)
        size = session.captured_image.size

        await session.submit({"origem": "balcao"})

        assert endpoint.calls == [{"size": size, "context": {"lojaId": "loja-1", "origem": "balcao"}}]

    @pytest.mark.asyncio
    async def test_rejection_returns_to_preview_with_server_message(self, make_session, status, provider):
        endpoint = MockAnalysis(status, fail_with=ServerRejected("SKU duplicado"))
        session = make_session(endpoint=endpoint)
        entered = record_states(session)
        await go_previewing(session)
        still = session.captured_image

        result = await session.submit()

        assert not result.ok
        assert result.error_code == errors.ERR_SUBMIT_REJECTED
        assert result.message == "SKU duplicado"
        assert session.state == PREVIEWING
        assert session.last_error == "SKU duplicado"
        assert session.captured_image is still
        assert len(provider.open_streams) == 1
        assert entered[-3:] == [SUBMITTING, FAILED, PREVIEWING]

    @pytest.mark.asyncio
    async def test_retry_after_rejection_succeeds(self, make_session, status, provider):
        endpoint = MockAnalysis(status, fail_with=ServerRejected("SKU duplicado"))
        session = make_session(endpoint=endpoint)
        await go_previewing(session)
        await session.submit()

        endpoint.fail_with = None
        result = await session.submit()

        assert result.ok
        assert session.state == SUCCEEDED
        assert session.last_error is None
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_network_failure_message(self, make_session, status):
        session = make_session(endpoint=MockAnalysis(status, fail_with=NetworkFailure()))
        await go_previewing(session)

        result = await session.submit()

        assert result.error_code == errors.ERR_SUBMIT_NETWORK_FAILURE
        assert session.state == PREVIEWING
        assert session.last_error == "Could not reach the analysis service"

    @pytest.mark.asyncio
    async def test_unexpected_endpoint_error_uses_generic_message(self, make_session):
        session = make_session(endpoint=Crashing())
        await go_previewing(session)

        result = await session.submit()

        assert not result.ok
        assert session.state == PREVIEWING
        assert session.last_error == errors.GENERIC_SUBMIT_MESSAGE

    @pytest.mark.asyncio
    async def test_submit_while_submitting_is_busy(self, make_session, status):
        endpoint = MockAnalysis(status, delay=0.1)
        session = make_session(endpoint=endpoint)
        await go_previewing(session)

        first = asyncio.create_task(session.submit())
        await asyncio.sleep(0.01)
        assert session.state == SUBMITTING

        second = await session.submit()
        assert second.error_code == errors.ERR_BUSY

        assert (await first).ok
        assert len(endpoint.calls) == 1

    @pytest.mark.asyncio
    async def test_submit_outside_previewing_is_invalid(self, session):
        await session.acquire()

        result = await session.submit()

        assert result.error_code == errors.ERR_INVALID_STATE
        assert session.state == LIVE

    @pytest.mark.asyncio
    async def test_progress_events_reach_listeners(self, session):
        seen = []
        session.on_progress(lambda s, event: seen.append(event.kind))
        await go_previewing(session)

        await session.submit()

        assert seen == ["analisando_ia"]
        assert session.progress.kind == "analisando_ia"

    @pytest.mark.asyncio
    async def test_acquire_from_succeeded_starts_next_capture(self, session, provider):
        await go_previewing(session)
        await session.submit()
        assert session.state == SUCCEEDED

        result = await session.acquire()

        assert result.ok
        assert session.state == LIVE
        assert session.last_result is None
        await asyncio.sleep(0.2)
        assert session.state == LIVE


# =============================================================================
# Cancel / dispose
# =============================================================================

class TestCancel:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", [LIVE, PREVIEWING, SUCCEEDED])
    async def test_cancel_from_settled_state(self, session, provider, target):
        await session.acquire()
        if target in (PREVIEWING, SUCCEEDED):
            session.capture()
        if target == SUCCEEDED:
            await session.submit()
        assert session.state == target

        result = session.cancel()

        assert result.ok
        assert session.state == IDLE
        assert session.captured_image is None
        assert session.stream is None
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_cancel_while_opening_releases_late_stream(self, make_session, status):
        provider = MockCameraProvider(status, open_delay=0.05)
        session = make_session(provider=provider)

        pending = asyncio.create_task(session.acquire())
        await asyncio.sleep(0.01)
        session.cancel()
        result = await pending

        assert result.error_code == errors.ERR_CANCELLED
        assert session.state == IDLE
        assert provider.opened_total == 1
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_cancel_during_ready_wait(self, make_session, status):
        provider = MockCameraProvider(status, ready_delay=None)
        session = make_session(provider=provider, config=SessionConfig(ready_timeout=5.0))
        loop = asyncio.get_running_loop()

        pending = asyncio.create_task(session.acquire())
        await asyncio.sleep(0.02)
        assert session.state == ACQUIRING
        started = loop.time()
        session.cancel()
        result = await pending

        assert result.error_code == errors.ERR_CANCELLED
        assert loop.time() - started < 1.0
        assert session.state == IDLE
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_cancel_during_submit_discards_result(self, make_session, status, provider):
        endpoint = MockAnalysis(status, delay=1.0)
        session = make_session(endpoint=endpoint)
        await go_previewing(session)

        pending = asyncio.create_task(session.submit())
        await asyncio.sleep(0.01)
        assert session.state == SUBMITTING
        session.cancel()
        result = await pending

        assert result.error_code == errors.ERR_CANCELLED
        assert session.state == IDLE
        assert session.last_result is None
        assert session.captured_image is None
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_cancel_from_failed_state(self, make_session, status, provider):
        session = make_session(endpoint=MockAnalysis(status, fail_with=ServerRejected("SKU duplicado")))
        session.on_enter_state(lambda s, state: s.cancel() if state == FAILED else None)
        await go_previewing(session)

        await session.submit()

        assert session.state == IDLE
        assert session.captured_image is None
        assert provider.open_streams == []

    @pytest.mark.asyncio
    async def test_cancel_stops_pending_auto_reset(self, session):
        await go_previewing(session)
        await session.submit()
        session.cancel()
        await session.acquire()

        await asyncio.sleep(0.2)

        assert session.state == LIVE

    @pytest.mark.asyncio
    async def test_cancel_from_idle_is_harmless(self, session):
        entered = record_states(session)

        assert session.cancel().ok
        assert session.state == IDLE
        assert entered == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delay", [0.0, 0.005, 0.02, 0.04, 0.07, 0.1])
    async def test_cancel_at_any_point_leaves_nothing_open(self, make_session, status, delay):
        provider = MockCameraProvider(status, open_delay=0.02, ready_delay=0.02)
        endpoint = MockAnalysis(status, delay=0.03)
        session = make_session(provider=provider, endpoint=endpoint)

        async def flow():
            await session.acquire()
            if session.state == LIVE:
                session.capture()
            if session.state == PREVIEWING:
                await session.submit()

        pending = asyncio.create_task(flow())
        await asyncio.sleep(delay)
        session.cancel()
        await pending
        await asyncio.sleep(0.1)

        assert session.state == IDLE
        assert session.captured_image is None
        assert session.stream is None
        assert provider.open_streams == []


class TestDispose:

    @pytest.mark.asyncio
    async def test_dispose_releases_and_rejects_everything(self, session, provider):
        await go_previewing(session)

        assert session.dispose().ok

        assert session.disposed
        assert provider.open_streams == []
        for result in (await session.acquire(), session.capture(), session.retake(), await session.submit()):
            assert not result.ok
            assert result.error_code == errors.ERR_DISPOSED

    @pytest.mark.asyncio
    async def test_dispose_during_submit_ignores_late_result(self, make_session, status):
        session = make_session(endpoint=MockAnalysis(status, delay=0.05))
        entered = record_states(session)
        await go_previewing(session)

        pending = asyncio.create_task(session.submit())
        await asyncio.sleep(0.01)
        session.dispose()
        await pending
        await asyncio.sleep(0.1)

        assert session.state == IDLE
        assert session.last_result is None
        assert entered[-1] == IDLE

    @pytest.mark.asyncio
    async def test_dispose_twice(self, session):
        session.dispose()
        assert session.dispose().ok


# =============================================================================
# Listeners
# =============================================================================

class TestListeners:

    @pytest.mark.asyncio
    async def test_exit_listener_sees_previous_state(self, session):
        exited = []
        session.on_exit_state(lambda s, state: exited.append(state))

        await session.acquire()

        assert exited == [IDLE, ACQUIRING]

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_break_transitions(self, session, status):
        def boom(s, state):
            raise RuntimeError("listener bug")
        session.on_enter_state(boom)

        result = await session.acquire()

        assert result.ok
        assert session.state == LIVE
        assert any("listener error" in line for line in status.logs)


# =============================================================================
# Invariants under random operation sequences
# =============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(8))
async def test_invariants_hold_for_random_sequences(make_session, status, seed):
    rng = random.Random(seed)
    provider = MockCameraProvider(status)
    endpoint = MockAnalysis(status)
    session = make_session(provider=provider, endpoint=endpoint,
                           config=SessionConfig(ready_timeout=0.05, success_reset_delay=0.01))

    for _ in range(60):
        provider.fail_with = CameraPermissionDenied() if rng.random() < 0.15 else None
        endpoint.fail_with = ServerRejected("SKU duplicado") if rng.random() < 0.3 else None
        op = rng.choice(["acquire", "switch", "capture", "retake", "submit", "cancel", "wait"])
        if op == "acquire":
            await session.acquire(rng.choice([None, "front", "rear"]))
        elif op == "switch":
            await session.switch_facing(rng.choice([None, "front", "rear"]))
        elif op == "capture":
            session.capture()
        elif op == "retake":
            session.retake()
        elif op == "submit":
            await session.submit()
        elif op == "cancel":
            session.cancel()
        else:
            await asyncio.sleep(0.02)
        assert_invariants(session, provider)

    session.dispose()
    assert provider.open_streams == []
