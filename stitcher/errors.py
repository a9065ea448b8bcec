from __future__ import annotations


class StitchError(Exception):
    """Base class for failures that abort a stitching job."""

    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputValidationError(StitchError):
    """Raised before any I/O when the request payload cannot be processed."""

    http_status = 400


class MissingAssetError(StitchError):
    """Raised when a required local asset (the outro clip) is absent."""


class DownloadError(StitchError):
    """Raised when a remote asset cannot be fetched within the timeout."""


class ProbeError(StitchError):
    """Raised when ffprobe cannot read a local file."""


class InvalidMediaError(ProbeError):
    """Raised when a probed file is readable but not a usable video."""


class TranscodeError(StitchError):
    """Raised when ffmpeg reports a failure; carries its output verbatim."""


class CleanupWarning(Warning):
    """Workspace removal failed. Logged, never raised."""
