"""Mock camera: synthetic test-pattern frames, no hardware needed.

Knobs for tests and demos:
  fail_with     exception raised by open_stream (e.g. CameraPermissionDenied())
  ready_delay   seconds before the first frame; None means the ready signal never fires
  open_delay    seconds open_stream takes (simulates the permission prompt)
"""
import asyncio

import numpy as np

from capture_station.adapters.camera.base import MediaDeviceProvider, Stream
from capture_station.orchestrator.contracts import StreamConstraints
from capture_station.orchestrator.errors import CameraError


class MockStream(Stream):
    def __init__(self, provider: "MockCameraProvider", constraints: StreamConstraints, ready_delay: float | None):
        self._provider = provider
        self.constraints = constraints
        self.width = constraints.width
        self.height = constraints.height
        self._ready = asyncio.Event()
        self._active = True
        self._paused = False
        self._frame_no = 0
        self._ready_timer = None
        if ready_delay is not None:
            self._ready_timer = asyncio.get_running_loop().call_later(ready_delay, self._ready.set)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def paused(self) -> bool:
        return self._paused

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def latest_frame(self):
        if not self._active or not self._ready.is_set():
            return None
        if not self._paused:
            self._frame_no += 1
        return self._pattern(self._frame_no)

    def _pattern(self, n: int):
        # vertical colour bars, shifted by the frame number so consecutive stills differ
        frame = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        bars = [(255, 255, 255), (0, 255, 255), (255, 255, 0), (0, 255, 0),
                (255, 0, 255), (0, 0, 255), (255, 0, 0), (0, 0, 0)]
        bar_w = max(1, self.width // len(bars))
        for i in range(len(bars)):
            color = bars[(i + n) % len(bars)]
            frame[:, i * bar_w:(i + 1) * bar_w] = color
        return frame

    def mark_ready(self):
        self._ready.set()

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._ready_timer is not None:
            self._ready_timer.cancel()
        self._provider._released(self)


class MockCameraProvider(MediaDeviceProvider):
    def __init__(self, status_store, fail_with: CameraError | None = None,
                 ready_delay: float | None = 0.0, open_delay: float = 0.0, supported: bool = True):
        self.status = status_store
        self.fail_with = fail_with
        self.ready_delay = ready_delay
        self.open_delay = open_delay
        self._supported = supported
        self.open_streams: list[MockStream] = []
        self.opened_total = 0

    @property
    def supported(self) -> bool:
        return self._supported

    async def open_stream(self, constraints: StreamConstraints) -> MockStream:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_with is not None:
            self.status.log(f"mock_camera: open failed ({self.fail_with.code})")
            raise self.fail_with
        stream = MockStream(self, constraints, self.ready_delay)
        self.open_streams.append(stream)
        self.opened_total += 1
        self.status.log(f"mock_camera: stream opened facing={constraints.facing} "
                        f"{constraints.width}x{constraints.height}")
        return stream

    def _released(self, stream: MockStream):
        if stream in self.open_streams:
            self.open_streams.remove(stream)
        self.status.log("mock_camera: stream stopped")
