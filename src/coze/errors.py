"""Exception hierarchy."""
from __future__ import annotations


class CozeError(Exception):
    """Base class for errors surfaced to the user."""


class LoadError(CozeError):
    """Model or tokenizer files are missing, corrupt or incompatible."""


class GenerationError(CozeError):
    """A step of the generation loop failed."""


class EncodingError(GenerationError):
    pass


class SamplingError(GenerationError):
    pass


class InferenceError(GenerationError):
    pass


class HistoryError(CozeError):
    pass


class HistoryLoadError(HistoryError):
    pass


class HistoryWriteError(HistoryError):
    pass
