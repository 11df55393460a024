from .contracts import BackgroundConfig, CompositingOptions, MaxDimensions, ProcessingOptions, Region
from .errors import (
    BackgroundRemovalError,
    DecodeFailure,
    EncodeFailure,
    InputTooLarge,
    ProcessingCancelled,
    ProcessingFailure,
    UnsupportedFormat,
)
from .pipeline import (
    BackgroundRemovalPipeline,
    CancellationToken,
    ProcessingResult,
    compose_background,
    remove_background,
)

__all__ = [
    "BackgroundConfig",
    "BackgroundRemovalError",
    "BackgroundRemovalPipeline",
    "CancellationToken",
    "CompositingOptions",
    "DecodeFailure",
    "EncodeFailure",
    "InputTooLarge",
    "MaxDimensions",
    "ProcessingCancelled",
    "ProcessingFailure",
    "ProcessingOptions",
    "ProcessingResult",
    "Region",
    "UnsupportedFormat",
    "compose_background",
    "remove_background",
]
