from typing import Any, Optional

from fastapi import status


class FulfillmentError(Exception):
    """Base exception for the fulfillment pipeline."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class OrderNotFoundError(FulfillmentError):
    """Raised when the order repository has no record for an id."""

    def __init__(self, order_id: str):
        super().__init__(
            f"Order {order_id} does not exist",
            status.HTTP_404_NOT_FOUND,
            {"order_id": order_id},
        )
        self.order_id = order_id


class InvalidTransitionError(FulfillmentError):
    """Raised when a status change is not allowed from the current state."""

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"cannot move order from {current} to {target}",
            status.HTTP_400_BAD_REQUEST,
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target


class CannotCancelError(InvalidTransitionError):
    def __init__(self, current: str):
        super().__init__(
            current,
            "cancelled",
            f"cannot cancel order in current state: {current}",
        )


class ConcurrentUpdateError(FulfillmentError):
    """Raised when an order changed underneath a conditional update."""

    def __init__(self, order_id: str, expected_version: Optional[int] = None):
        super().__init__(
            f"Order {order_id} was modified concurrently",
            status.HTTP_409_CONFLICT,
            {"order_id": order_id, "expected_version": expected_version},
        )


class JobSubmissionError(FulfillmentError):
    """Raised when the broker cannot store a job."""


class RetryableJobError(FulfillmentError):
    """A handler failure that should be rescheduled with backoff."""


class ExternalServiceError(RetryableJobError):
    """An integration (gateway, provider, warehouse) reported a failure."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}", details={"service": service})
        self.service = service


class DeferredJobError(FulfillmentError):
    """A job that cannot run yet. Rescheduled after `delay` without spending a retry."""

    def __init__(self, message: str, delay: float):
        super().__init__(message, details={"delay": delay})
        self.delay = delay


class PermanentJobError(FulfillmentError):
    """A handler failure that must not be retried."""


class UnknownTaskTypeError(PermanentJobError):
    def __init__(self, task_type: str):
        super().__init__(
            f"No handler registered for task type: {task_type}",
            details={"task_type": task_type},
        )
        self.task_type = task_type
