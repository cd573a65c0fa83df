"""Base service exceptions.

These exceptions are raised by the service and client layers. The API layer
converts them to HTTP responses or WebSocket close codes; the client layer
recovers from them locally where the protocol allows it.
"""


class ServiceError(Exception):
    """Base service exception."""

    pass


class TransportError(ServiceError):
    """Socket-level failure or abnormal close."""

    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message)


class AuthError(ServiceError):
    """Credential could not be used to authenticate a connection."""

    pass


class AuthExpiredError(AuthError):
    """Credential expiry claim is in the past. Fatal for the current session."""

    pass


class AuthRejectedError(AuthError):
    """Credential is malformed or its signature does not verify."""

    pass


class CollaboratorError(ServiceError):
    """Collaborator HTTP API call failed (enqueue, batch status, listing)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class JobFailure(ServiceError):
    """A generation job reported failure through a *_failed event."""

    def __init__(self, operation_type: str | None, batch_id: int | str | None, error: str | None = None):
        self.operation_type = operation_type
        self.batch_id = batch_id
        self.error = error
        super().__init__(f"{operation_type or 'job'} failed (batch={batch_id}): {error or 'unknown error'}")
