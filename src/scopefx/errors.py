"""Exception types raised by scopefx."""


class ScopeError(Exception):
    """Base class for every error scopefx raises."""


class ExpressionError(ScopeError, ValueError):
    """An expression could not be compiled or cannot be watched.

    Raised synchronously at the call that supplied the expression.
    """


class RegistryError(ScopeError, RuntimeError):
    """The listener registry is in an impossible state.

    Never routed to the exception handler: it signals corruption, not a
    failing user callback.
    """


class UpdateLoopError(ScopeError, RuntimeError):
    """A single flush ran more tasks than the runtime's ttl allows."""
