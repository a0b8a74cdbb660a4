"""
Error taxonomy for marketplace operations.

Each error carries the HTTP status the API reports it with; the reason string
is returned to the caller as `detail`.
"""


class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NotFound(MarketplaceError):
    status_code = 404


class InvalidTransition(MarketplaceError):
    status_code = 409


class NoDispatcherAvailable(MarketplaceError):
    status_code = 409


class ValidationError(MarketplaceError):
    status_code = 422


class Forbidden(MarketplaceError):
    status_code = 403
