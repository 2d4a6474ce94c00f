"""Error taxonomy for the streaming generation run.

Every error aborts the run. There is no retry or partial-result recovery.
"""


class StreamError(Exception):
    """Base class for all errors raised during a generation run."""


class InputError(StreamError):
    """Input audio could not be read or decoded."""


class ConfigError(StreamError):
    """Inconsistent configuration (codebook counts, conditioning, frame size)."""


class ModelError(StreamError):
    """Shape or dimension mismatch reported by the stepper or the codec."""


class IoError(StreamError):
    """Output could not be written."""
