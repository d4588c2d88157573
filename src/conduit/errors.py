class ConduitError(Exception):
    """Base class for errors raised by conduit."""


class ValueParseError(ConduitError):
    """Raised when a tool-input buffer cannot be decoded."""


class BackendUnavailableError(ConduitError):
    """Raised when the tool backend cannot be reached at all."""


class BackendAlreadyResolvedError(ConduitError):
    """Raised when a :class:`~conduit.backend.BackendHandle` is resolved twice."""
