"""
Error types shared by the store, lifecycle, rating and service layers.

Business errors (``NotFound``, ``InvalidStateTransition``) are kept apart from
``StoreUnavailable`` so callers can choose between a specific user-facing
message and a generic failure.
"""

from typing import Any


class TaskOrdersError(Exception):
    """Base class for all task order errors."""


class StoreUnavailable(TaskOrdersError):
    """The underlying persistence layer failed. Not retried by this package."""


class NotFound(TaskOrdersError):
    """A looked-up order, user or task does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class InvalidStateTransition(TaskOrdersError):
    """An order cannot move to the requested state."""

    NOT_FOUND = "not_found"
    ALREADY_SOLVED = "already_solved"

    def __init__(self, order_id: int, reason: str):
        self.order_id = order_id
        self.reason = reason
        if reason == self.NOT_FOUND:
            message = f"Order {order_id} not found"
        elif reason == self.ALREADY_SOLVED:
            message = f"Order {order_id} is already solved"
        else:
            message = f"Order {order_id} cannot transition: {reason}"
        super().__init__(message)


class ConfigError(TaskOrdersError):
    """Configuration file or environment values are invalid."""
