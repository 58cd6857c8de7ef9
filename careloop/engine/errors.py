"""
Engine exceptions.

Services raise these for domain failures; the HTTP layer maps them to
status codes.  Nothing here is raised for provider or transport failures,
which degrade to "skip the automated step" instead.
"""


class EngineError(Exception):
    pass


class NotFoundError(EngineError):
    pass


class ConflictError(EngineError):
    """The request contradicts existing state (duplicate, in use, already done)."""
    pass


class InvalidRequestError(EngineError):
    pass
