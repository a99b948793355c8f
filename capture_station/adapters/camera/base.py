from abc import ABC, abstractmethod

from capture_station.orchestrator.contracts import StreamConstraints


class Stream(ABC):
    """A live handle on camera hardware. Must be stopped explicitly."""

    @property
    @abstractmethod
    def active(self) -> bool:
        ...

    @abstractmethod
    async def wait_ready(self) -> None:
        """Return once the stream produced its first frame. May never return."""
        ...

    @abstractmethod
    def latest_frame(self):
        """Latest frame as an HxWx3 BGR array, or None before the first frame."""
        ...

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop every track. Safe to call more than once."""
        ...


class MediaDeviceProvider(ABC):
    @property
    def supported(self) -> bool:
        return True

    @abstractmethod
    async def open_stream(self, constraints: StreamConstraints) -> Stream:
        """Open a stream or raise CameraUnsupported / CameraPermissionDenied / CameraNoDevice."""
        ...
