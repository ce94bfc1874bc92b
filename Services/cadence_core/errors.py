"""Exception types raised by the Cadence turn-taking engine."""
from __future__ import annotations


class CadenceError(Exception):
    """Base class for engine errors."""


class InferenceError(CadenceError):
    """The language model failed while producing a reply."""


class GenerationInProgressError(CadenceError):
    """A generation was requested while another one is still running."""


class SegmenterStateError(CadenceError):
    """The sentence segmenter reached a state it should never be in."""
