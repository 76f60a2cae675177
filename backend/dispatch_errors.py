"""
Error taxonomy for the request lifecycle.

Every error is an ``HTTPException`` with a fixed status code so routers can
let them propagate unchanged.
"""

from fastapi import HTTPException


class DispatchError(HTTPException):
    status_code = 400
    default_detail = "Request could not be processed"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class ValidationError(DispatchError):
    status_code = 422
    default_detail = "Invalid request"


class NotFound(DispatchError):
    status_code = 404
    default_detail = "Service request not found"


class InvalidTransition(DispatchError):
    status_code = 409
    default_detail = "Invalid status transition"

    def __init__(self, current: str | None = None, requested: str | None = None, detail: str | None = None) -> None:
        if detail is None and current and requested:
            detail = f"Cannot move from {current} to {requested}"
        super().__init__(detail)
        self.current = current
        self.requested = requested


class NotCancellable(DispatchError):
    status_code = 409
    default_detail = "Request cannot be cancelled at this stage"


class RequestNoLongerAvailable(DispatchError):
    status_code = 409
    default_detail = "This request is no longer available"


class Forbidden(DispatchError):
    status_code = 403
    default_detail = "You are not allowed to perform this action"


class MissingAmount(DispatchError):
    status_code = 400
    default_detail = "A quotation or final amount is required before completing the request"


class MissingLocation(DispatchError):
    status_code = 400
    default_detail = "Please update your location before accepting requests"


class DependencyFailure(DispatchError):
    status_code = 503
    default_detail = "A dependent service is unavailable"
