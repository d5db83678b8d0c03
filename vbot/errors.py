"""Failure types raised or carried by the chat pipeline."""


class VBotError(Exception):
    """Base class for pipeline failures."""


class EmbeddingUnavailable(VBotError):
    """The embedding provider could not produce a vector."""


class StoreUnavailable(VBotError):
    """The conversation store could not be reached or timed out."""


class UpstreamUnavailable(VBotError):
    """The language-model stream could not be opened."""
