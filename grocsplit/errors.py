class DatabaseInitError(RuntimeError):
    """Raised when the ledger database cannot be initialized."""


class GrocSplitError(Exception):
    status_code = 500

    def __init__(self, message, **detail):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self):
        payload = {"error": self.message}
        payload.update(self.detail)
        return payload


class ValidationError(GrocSplitError):
    status_code = 400


class NotFoundError(GrocSplitError):
    status_code = 404


class ConflictError(GrocSplitError):
    status_code = 409


class UpstreamError(GrocSplitError):
    status_code = 502
