# dispatch_service/errors.py


class DispatchError(Exception):
    """Base for every failure the core reports back to a caller."""

    kind = "DispatchError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


class ValidationError(DispatchError):
    kind = "ValidationError"
    status_code = 422


class InvalidTransition(DispatchError):
    kind = "InvalidTransition"
    status_code = 409


class NotFound(DispatchError):
    kind = "NotFound"
    status_code = 404


class DeadlinePassed(DispatchError):
    kind = "DeadlinePassed"
    status_code = 410


class ConcurrencyConflict(DispatchError):
    kind = "ConcurrencyConflict"
    status_code = 409


class UpstreamUnavailable(DispatchError):
    kind = "UpstreamUnavailable"
    status_code = 502


class NotAuthorized(DispatchError):
    kind = "NotAuthorized"
    status_code = 403
