"""Error taxonomy of the dispatch engine.

Every error carries the order's current status when one is known so callers
can resynchronize their view without re-reading the order.
"""
from typing import Optional


class DispatchError(Exception):
    kind = "dispatch_error"
    http_status = 400

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        current_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.current_status = current_status

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.message,
            "order_id": self.order_id,
            "current_status": self.current_status,
        }


class NotFound(DispatchError):
    kind = "not_found"
    http_status = 404


class InvalidTransition(DispatchError):
    kind = "invalid_transition"
    http_status = 409


class AssignmentExpired(InvalidTransition):
    """The courier answered after the acceptance window closed."""


class CourierUnavailable(DispatchError):
    kind = "courier_unavailable"
    http_status = 409

    def __init__(self, message: str, courier_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.courier_id = courier_id


class Forbidden(DispatchError):
    kind = "forbidden"
    http_status = 403


class DispatchTimeout(DispatchError):
    """Reported to admin tooling when an order waits too long for a courier.

    Never raised to a caller: the order stays queued.
    """
    kind = "dispatch_timeout"
    http_status = 504

    def __init__(self, message: str, waited_seconds: float = 0.0, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.waited_seconds = waited_seconds
        self.attempts = attempts

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["waited_seconds"] = round(self.waited_seconds, 1)
        data["attempts"] = self.attempts
        return data
