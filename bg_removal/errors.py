"""
Exception taxonomy for background removal jobs.

Every error is terminal for the job that raised it; nothing is retried here.
"""

from __future__ import annotations

from typing import Optional


class BackgroundRemovalError(Exception):
    """Base class for all engine failures."""
    pass


class InputTooLarge(BackgroundRemovalError):
    """Raised before decoding when the input exceeds a byte or pixel cap."""
    pass


class UnsupportedFormat(BackgroundRemovalError):
    """Raised when an image format is outside the accepted set."""
    pass


class DecodeFailure(BackgroundRemovalError):
    """Raised when image bytes cannot be decoded."""
    pass


class EncodeFailure(BackgroundRemovalError):
    """Raised when the final buffer cannot be serialized."""
    pass


class ProcessingCancelled(BackgroundRemovalError):
    """Raised when a caller cancels a running job."""

    def __init__(self, stage: str):
        super().__init__(f"Processing cancelled before stage '{stage}'")
        self.stage = stage


class ProcessingFailure(BackgroundRemovalError):
    """A pipeline stage failed; carries the stage name and original cause."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown error"
        super().__init__(f"Stage '{stage}' failed: {detail}")
        self.stage = stage
        self.cause = cause
