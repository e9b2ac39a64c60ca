"""
Exceptions raised by the conversion pipeline
"""


class ConversionError(Exception):
    """Base class for every fatal conversion failure."""


class SourceError(ConversionError):
    """The input video could not be opened, measured, seeked or decoded."""


class NoFramesError(ConversionError):
    """There are no frames to encode."""


class EncoderUnsupportedError(ConversionError):
    """The primary encoder cannot be configured; the fallback path should run."""


class EncoderError(ConversionError):
    """An encoder or writer failed while producing the output container."""


class ConversionCancelled(ConversionError):
    """The caller's cancel event was set."""
