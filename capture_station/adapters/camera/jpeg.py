import cv2

from capture_station.orchestrator.contracts import ImageHandle
from capture_station.orchestrator.errors import NotReady


def frame_size(frame) -> tuple[int, int]:
    """(width, height) of a frame, (0, 0) when there is nothing to read."""
    if frame is None or getattr(frame, "ndim", 0) < 2:
        return 0, 0
    h, w = frame.shape[:2]
    return int(w), int(h)


def encode_jpeg(frame, quality: float = 0.9) -> ImageHandle:
    """Encode a BGR frame at its native size. quality is 0..1 like canvas.toDataURL."""
    width, height = frame_size(frame)
    if not width or not height:
        raise NotReady()
    q = max(0, min(100, int(round(quality * 100))))
    ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, q])
    if not ok:
        raise NotReady("Could not encode the current frame")
    return ImageHandle(data=buf.tobytes(), width=width, height=height)
