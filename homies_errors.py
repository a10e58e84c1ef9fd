class RelayError(Exception):
    """An error the client can act on; sent back to the caller only."""

    code = "RELAY_ERROR"

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_payload(self):
        return {"message": self.message, "code": self.code}


class NotAuthenticated(RelayError):
    code = "UNAUTHENTICATED"

    def __init__(self, message="You must be logged in to do that", code=None):
        super().__init__(message, code)


class ValidationFailed(RelayError):
    code = "INVALID_PAYLOAD"


class AuthError(RelayError):
    code = "AUTH_FAILED"


class StorageError(Exception):
    """Raised by a storage tier; logged by the persistence pipeline, never sent to clients."""
