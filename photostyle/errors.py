from enum import Enum

class ErrorKind(str, Enum):
    IMAGE_SAVE_FAILED = "image_save_failed"
    INVALID_RESPONSE = "invalid_response"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    STORAGE_FAILED = "storage_failed"

_MESSAGES = {
    ErrorKind.IMAGE_SAVE_FAILED: "Failed to save image",
    ErrorKind.INVALID_RESPONSE: "Invalid response from server",
    ErrorKind.NETWORK_ERROR: "Network error occurred",
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.INSUFFICIENT_CREDITS: "Insufficient credits. Please purchase more credits to continue.",
    ErrorKind.STORAGE_FAILED: "Failed to save project",
}

def user_message(kind: ErrorKind) -> str:
    return _MESSAGES[ErrorKind(kind)]

def recovery_action(kind: ErrorKind) -> str:
    """
    What the presentation layer should offer next to the message:
    a purchase/reward flow for missing credits, a plain retry for the rest.
    """
    if ErrorKind(kind) is ErrorKind.INSUFFICIENT_CREDITS:
        return "purchase_credits"
    return "retry"

class ProcessingError(Exception):
    kind = ErrorKind.NETWORK_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message or user_message(self.kind))

    @property
    def user_message(self) -> str:
        return user_message(self.kind)

class ImageSaveFailed(ProcessingError):
    kind = ErrorKind.IMAGE_SAVE_FAILED

class InvalidResponse(ProcessingError):
    kind = ErrorKind.INVALID_RESPONSE

class ImageDecodeFailed(InvalidResponse):
    """The payload was found but its bytes are not a decodable image."""

class NetworkError(ProcessingError):
    kind = ErrorKind.NETWORK_ERROR

class TransferTimeout(NetworkError):
    kind = ErrorKind.TIMEOUT

class InsufficientCredits(ProcessingError):
    kind = ErrorKind.INSUFFICIENT_CREDITS

class StorageFailed(ProcessingError):
    kind = ErrorKind.STORAGE_FAILED

class JobAlreadyActive(RuntimeError):
    pass
