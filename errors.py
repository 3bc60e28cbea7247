"""Audiobook service errors and their HTTP status codes."""

from typing import Optional


class AudiobookError(Exception):
    """Base error; carries the HTTP status the API layer should answer with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class InvalidArgument(AudiobookError):
    status_code = 400


class NotFound(AudiobookError):
    status_code = 404


class Conflict(AudiobookError):
    status_code = 409


class SettingsMismatch(Conflict):
    """Incoming generation settings differ from the ones recorded for the book."""

    def __init__(self, stored_settings: dict):
        super().__init__("Audiobook settings mismatch")
        self.stored_settings = stored_settings

    def to_dict(self) -> dict:
        return {"error": self.message, "settings": self.stored_settings}


class MixedFormats(Conflict):
    status_code = 400

    def __init__(self, message: str = "Mixed chapter formats detected; reset the audiobook to continue"):
        super().__init__(message)


class Cancelled(AudiobookError):
    """The caller went away; never logged as a failure."""

    status_code = 499

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class TranscodeFailed(AudiobookError):
    """ffmpeg/ffprobe exited non-zero or produced unreadable output."""

    def __init__(self, operation: str, detail: Optional[str] = None):
        super().__init__(f"Transcode failed during {operation}")
        self.operation = operation
        # Server-side only; never rendered into a response
        self.detail = detail


class StorageFailure(AudiobookError):
    pass
