"""
Order Lifecycle State Machine

Governs the NOT SOLVED -> SOLVED transition of a single task order and the
one-active-order-per-user rule. Holds no mutable state of its own; all
atomicity comes from the store, so one instance can be shared by every
request thread.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from .database import OrderDatabase
from .exceptions import InvalidStateTransition, NotFound
from .models import OrderStatus, TaskOrder

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, clamped at zero."""
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return max(0, int((end - start).total_seconds()))


class OrderLifecycle:
    """
    State machine for task orders.

    States are NOT SOLVED and SOLVED; SOLVED is terminal. Orders are created
    by ``assign``, moved to SOLVED exactly once by ``complete`` and removed
    only by ``cancel``.
    """

    def __init__(self, store: OrderDatabase, clock: Optional[Clock] = None):
        """
        Args:
            store: Order store providing the atomic insert and compare-and-set
            clock: Source of the current UTC time, injectable for tests
        """
        self.store = store
        self.clock = clock or utc_now

    def assign(self, user_id: int, task_id: int) -> TaskOrder:
        """Assign a task to a user, or return the user's pending order."""
        order, _ = self.assign_with_status(user_id, task_id)
        return order

    def assign_with_status(self, user_id: int, task_id: int) -> Tuple[TaskOrder, bool]:
        """
        Assign a task to a user and report whether a new order was created.

        If the user already has a NOT SOLVED order it is returned unchanged,
        even when it is for a different task.

        Returns:
            Tuple of (active order, created)

        Raises:
            NotFound: If the user or task does not exist
            StoreUnavailable: On persistence failure
        """
        existing = self.store.find_active_by_user(user_id)
        if existing is not None:
            logger.debug(f"User {user_id} already has active order {existing.order_id}")
            return existing, False

        # Another request may have assigned in between; insert_order resolves that atomically
        order, created = self.store.insert_order(user_id, task_id, self.clock())
        if created:
            logger.info(f"Assigned task {task_id} to user {user_id} as order {order.order_id}")
        else:
            logger.info(f"Concurrent assign for user {user_id} resolved to order {order.order_id}")
        return order, created

    def complete(self, order_id: int, completion_instant: Optional[datetime] = None) -> TaskOrder:
        """
        Mark an order SOLVED and record its execution time.

        Args:
            order_id: Order to complete
            completion_instant: When the task was solved, defaults to now

        Returns:
            The solved order

        Raises:
            InvalidStateTransition: reason ``not_found`` when the order does not
                exist, ``already_solved`` when it is already SOLVED or another
                caller completed it first. Nothing is changed in either case.
            StoreUnavailable: On persistence failure
        """
        if completion_instant is None:
            completion_instant = self.clock()
        if completion_instant.tzinfo is None:
            completion_instant = completion_instant.replace(tzinfo=timezone.utc)

        order = self.store.get_order_by_id(order_id)
        if order is None:
            raise InvalidStateTransition(order_id, InvalidStateTransition.NOT_FOUND)
        if order.status == OrderStatus.SOLVED:
            raise InvalidStateTransition(order_id, InvalidStateTransition.ALREADY_SOLVED)

        exec_time = elapsed_seconds(order.reg_date, completion_instant)

        won = self.store.update_status_and_exec_time(
            order_id,
            OrderStatus.SOLVED,
            exec_time,
            solved_at=completion_instant,
            expected_status=OrderStatus.NOT_SOLVED,
        )
        if not won:
            # Lost the race: the order was solved or deleted after we read it
            current = self.store.get_order_by_id(order_id)
            reason = (InvalidStateTransition.NOT_FOUND if current is None
                      else InvalidStateTransition.ALREADY_SOLVED)
            raise InvalidStateTransition(order_id, reason)

        logger.info(f"Order {order_id} solved by user {order.user_id} in {exec_time}s")
        return order.model_copy(update={
            "status": OrderStatus.SOLVED,
            "exec_time": exec_time,
            "solved_at": completion_instant,
        })

    def cancel(self, order_id: int) -> bool:
        """
        Remove an order regardless of its state. Idempotent.

        Returns:
            True if an order was removed, False if it did not exist
        """
        deleted = self.store.delete_order(order_id)
        if deleted:
            logger.info(f"Order {order_id} deleted")
        else:
            logger.debug(f"Order {order_id} not present, nothing to delete")
        return deleted

    def get(self, order_id: int) -> TaskOrder:
        """
        Raises:
            NotFound: If the order does not exist
        """
        order = self.store.get_order_by_id(order_id)
        if order is None:
            raise NotFound("order", order_id)
        return order
