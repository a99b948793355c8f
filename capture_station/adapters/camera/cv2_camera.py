"""
OpenCV webcam provider.

Facing maps to a device index:
  CAMERA_INDEX_FRONT  (default: CAMERA_INDEX, default 0)
  CAMERA_INDEX_REAR   (default: the front index; most laptops only have one)

A grabber thread keeps the latest frame; the first good frame fires the
stream's ready signal on the event loop. stop() only signals the thread,
which releases the device itself, so the loop never waits on a stalled read.
"""
import asyncio
import os
import sys
import threading
import time

import cv2

from capture_station.adapters.camera.base import MediaDeviceProvider, Stream
from capture_station.orchestrator.contracts import StreamConstraints
from capture_station.orchestrator.errors import CameraNoDevice, CameraPermissionDenied, CameraUnsupported

RELEASE_TIMEOUT = 2.0   # seconds to wait for a stopped stream to let go of its device


class CV2Stream(Stream):
    def __init__(self, status_store, cap, index: int, loop: asyncio.AbstractEventLoop):
        self.status = status_store
        self.index = index
        self._cap = cap
        self._loop = loop
        self._lock = threading.Lock()
        self._latest = None
        self._paused = False
        self._running = True
        self._ready = asyncio.Event()
        self._thread = threading.Thread(target=self._grab_loop, name=f"cv2-grab-{index}", daemon=True)
        self._thread.start()

    @property
    def active(self) -> bool:
        return self._running

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def latest_frame(self):
        with self._lock:
            return self._latest

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def stop(self) -> None:
        """Non-blocking: the grabber thread releases the device when it exits."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._latest = None
        self.status.log(f"cv2_camera: device {self.index} stopping")

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the device to be released; True once it is. Blocks, so run it off the loop."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _grab_loop(self):
        try:
            self._grab_frames()
        finally:
            self._cap.release()
            self.status.log(f"cv2_camera: device {self.index} released")

    def _grab_frames(self):
        signalled = False
        misses = 0
        while self._running:
            ret, frame = self._cap.read()
            if not ret or frame is None:
                misses += 1
                if misses == 30:
                    self.status.log(f"cv2_camera: device {self.index} is not delivering frames")
                time.sleep(0.01)
                continue
            misses = 0
            with self._lock:
                if not self._running:
                    break
                if not self._paused:
                    self._latest = frame
            if not signalled:
                signalled = True
                self._signal_ready()

    def _signal_ready(self):
        try:
            self._loop.call_soon_threadsafe(self._ready.set)
        except RuntimeError:
            # loop already closed; nobody is waiting any more
            self.status.log(f"cv2_camera: device {self.index} ready after loop shutdown")


class CV2CameraProvider(MediaDeviceProvider):
    def __init__(self, status_store, front_index: int | None = None, rear_index: int | None = None):
        self.status = status_store
        default = int(os.getenv("CAMERA_INDEX", "0"))
        if front_index is None:
            front_index = int(os.getenv("CAMERA_INDEX_FRONT", str(default)))
        if rear_index is None and os.getenv("CAMERA_INDEX_REAR"):
            rear_index = int(os.getenv("CAMERA_INDEX_REAR"))
        self._front = front_index
        self._rear = rear_index
        self._streams: dict[int, CV2Stream] = {}   # last stream opened per device index

    @property
    def supported(self) -> bool:
        return len(cv2.videoio_registry.getCameraBackends()) > 0

    def device_index(self, facing: str) -> int:
        if facing == "rear" and self._rear is not None:
            return self._rear
        return self._front

    def _check_device(self, index: int):
        if not sys.platform.startswith("linux"):
            return
        path = f"/dev/video{index}"
        if not os.path.exists(path):
            raise CameraNoDevice(f"No camera at {path}")
        if not os.access(path, os.R_OK | os.W_OK):
            raise CameraPermissionDenied(f"Camera access was denied ({path})")

    def _open(self, index: int, constraints: StreamConstraints):
        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            raise CameraNoDevice(f"Could not open camera {index}")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        return cap

    async def open_stream(self, constraints: StreamConstraints) -> CV2Stream:
        if not self.supported:
            raise CameraUnsupported()
        index = self.device_index(constraints.facing)
        self._check_device(index)
        previous = self._streams.get(index)
        if previous is not None and not previous.active:
            # a stopped stream may still hold the device until its grabber exits
            if not await asyncio.to_thread(previous.join, RELEASE_TIMEOUT):
                raise CameraNoDevice(f"Camera {index} is still busy")
        self.status.log(f"cv2_camera: opening device {index} facing={constraints.facing}")
        cap = await asyncio.to_thread(self._open, index, constraints)
        stream = CV2Stream(self.status, cap, index, asyncio.get_running_loop())
        self._streams[index] = stream
        return stream
