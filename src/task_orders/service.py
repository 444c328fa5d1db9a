"""
Order Service

Composition root that wires the order store, lifecycle and rating aggregator
together and exposes the operations used by the HTTP API and the CLI.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from .config import Settings
from .database import OrderDatabase
from .exceptions import NotFound
from .lifecycle import Clock, OrderLifecycle
from .models import OrderDTO, RatingEntry, TaskOrder
from .rating import DifficultyWeights, RatingAggregator

logger = logging.getLogger(__name__)


class OrderService:
    """
    Facade over the order lifecycle and rating engine.

    All collaborators are passed in explicitly. The service keeps no state of
    its own, so one instance serves every request thread.
    """

    def __init__(self, store: OrderDatabase, lifecycle: Optional[OrderLifecycle] = None,
                 aggregator: Optional[RatingAggregator] = None, leaderboard_size: int = 10):
        """
        Args:
            store: Order store shared by lifecycle and aggregator
            lifecycle: Order state machine, built over ``store`` when omitted
            aggregator: Rating engine, built over ``store`` when omitted
            leaderboard_size: Default ``n`` for ``top_users``
        """
        self.store = store
        self.lifecycle = lifecycle or OrderLifecycle(store)
        self.aggregator = aggregator or RatingAggregator(store)
        self.leaderboard_size = leaderboard_size

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "OrderService":
        """Open the database and build every collaborator from settings."""
        store = OrderDatabase(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms)
        weights = DifficultyWeights(settings.difficulty_weights, settings.default_weight)
        logger.info(f"Order service using database {settings.database_path}")
        return cls(
            store,
            lifecycle=OrderLifecycle(store, clock=clock),
            aggregator=RatingAggregator(store, weight_strategy=weights),
            leaderboard_size=settings.leaderboard_size,
        )

    def assign_or_get_active(self, user_id: int, task_id: int) -> Tuple[TaskOrder, bool]:
        """
        Assign a task to a user unless they already have an unsolved order.

        Returns:
            Tuple of (active order, created)
        """
        return self.lifecycle.assign_with_status(user_id, task_id)

    def complete_order(self, order_id: int, now: Optional[datetime] = None) -> TaskOrder:
        """Mark an order solved at ``now`` (server time when omitted)."""
        return self.lifecycle.complete(order_id, now)

    def get_order(self, order_id: int) -> TaskOrder:
        return self.lifecycle.get(order_id)

    def _require_user(self, user_id: int) -> None:
        if self.store.get_user(user_id) is None:
            raise NotFound("user", user_id)

    def list_user_orders(self, user_id: int) -> List[OrderDTO]:
        """
        Get a user's order history, oldest first.

        Raises:
            NotFound: If the user does not exist
        """
        self._require_user(user_id)
        return self.store.list_orders_for_user(user_id)

    def get_active_unsolved(self, user_id: int) -> Optional[TaskOrder]:
        """
        Get the user's NOT SOLVED order, or None when every order is solved.

        Raises:
            NotFound: If the user does not exist
        """
        self._require_user(user_id)
        return self.store.find_active_by_user(user_id)

    def delete_order(self, order_id: int) -> bool:
        """Delete an order. Missing orders are a no-op that returns False."""
        return self.lifecycle.cancel(order_id)

    def top_users(self, n: Optional[int] = None) -> List[RatingEntry]:
        return self.aggregator.top_users(self.leaderboard_size if n is None else n)

    def user_rating(self, user_id: int) -> RatingEntry:
        return self.aggregator.rating_for_user(user_id)

    def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            return self.store.ping()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        self.store.close()
