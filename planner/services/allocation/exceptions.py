"""
Error taxonomy of the allocation engine.
All of these are recoverable and local to the operation that raised them.
"""


class SchedulingError(Exception):
    """Base class; the message is safe to show to the user."""


class ValidationError(SchedulingError):
    """Pre-flight rejection, no I/O attempted."""


class PersistenceError(SchedulingError):
    """A call to the allocation store failed."""


class NotFoundError(SchedulingError):
    """A referenced allocation or employee does not exist."""
