"""Error codes and the exception taxonomy shared by adapters and the controller.

Adapters raise these; the capture session catches them at the operation
boundary and turns them into an ``OpResult`` carrying ``code`` and ``message``.
"""

ERR_BUSY = "BUSY"
ERR_INVALID_STATE = "INVALID_STATE"
ERR_DISPOSED = "DISPOSED"
ERR_CANCELLED = "CANCELLED"
ERR_NO_SESSION = "NO_SESSION"
ERR_INVALID_ARGUMENT = "INVALID_ARGUMENT"
ERR_UNKNOWN = "UNKNOWN"

ERR_CAMERA_UNSUPPORTED = "CAMERA_UNSUPPORTED"
ERR_CAMERA_PERMISSION_DENIED = "CAMERA_PERMISSION_DENIED"
ERR_CAMERA_NO_DEVICE = "CAMERA_NO_DEVICE"
ERR_CAPTURE_NOT_READY = "CAPTURE_NOT_READY"
ERR_SUBMIT_NETWORK_FAILURE = "SUBMIT_NETWORK_FAILURE"
ERR_SUBMIT_REJECTED = "SUBMIT_REJECTED"

GENERIC_SUBMIT_MESSAGE = "Failed to process the photo"


class CaptureStationError(Exception):
    code = ERR_UNKNOWN
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class CameraError(CaptureStationError):
    pass


class CameraUnsupported(CameraError):
    code = ERR_CAMERA_UNSUPPORTED
    default_message = "This environment does not support camera access"


class CameraPermissionDenied(CameraError):
    code = ERR_CAMERA_PERMISSION_DENIED
    default_message = "Camera access was denied"


class CameraNoDevice(CameraError):
    code = ERR_CAMERA_NO_DEVICE
    default_message = "No camera found"


class CaptureError(CaptureStationError):
    pass


class NotReady(CaptureError):
    code = ERR_CAPTURE_NOT_READY
    default_message = "The camera is not producing frames yet"


class SubmitError(CaptureStationError):
    pass


class NetworkFailure(SubmitError):
    code = ERR_SUBMIT_NETWORK_FAILURE
    default_message = "Could not reach the analysis service"


class ServerRejected(SubmitError):
    code = ERR_SUBMIT_REJECTED
    default_message = GENERIC_SUBMIT_MESSAGE

    def __init__(self, message: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
