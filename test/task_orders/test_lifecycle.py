"""
Tests for the order lifecycle state machine.

Covers assignment idempotence, completion timing, invalid transitions,
cancellation and the concurrency guarantees of assign/complete.
"""

import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from pathlib import Path

import pytest

from task_orders.database import OrderDatabase
from task_orders.exceptions import InvalidStateTransition, NotFound
from task_orders.lifecycle import OrderLifecycle, elapsed_seconds
from task_orders.models import OrderStatus

from conftest import START, FixedClock


class TestAssign:
    """Test order assignment."""

    def test_first_assignment_creates_order(self, lifecycle, seeded, clock):
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)

        assert order.order_id > 0
        assert order.user_id == seeded["alice"].user_id
        assert order.task_id == seeded["easy"].task_id
        assert order.status == OrderStatus.NOT_SOLVED
        assert order.exec_time == 0
        assert order.reg_date == clock.now

    def test_assign_twice_returns_same_order(self, lifecycle, seeded, clock):
        """Assigning again without completing returns the pending order."""
        first, created = lifecycle.assign_with_status(seeded["alice"].user_id, seeded["easy"].task_id)
        clock.advance(60)
        second, created_again = lifecycle.assign_with_status(seeded["alice"].user_id, seeded["hard"].task_id)

        assert created is True
        assert created_again is False
        assert second == first
        assert second.task_id == seeded["easy"].task_id

    def test_assign_after_complete_creates_new_order(self, lifecycle, seeded, clock):
        first = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        lifecycle.complete(first.order_id, clock.advance(30))

        second = lifecycle.assign(seeded["alice"].user_id, seeded["hard"].task_id)
        assert second.order_id != first.order_id
        assert second.status == OrderStatus.NOT_SOLVED

    def test_users_are_independent(self, lifecycle, seeded):
        alice_order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        bob_order = lifecycle.assign(seeded["bob"].user_id, seeded["easy"].task_id)
        assert alice_order.order_id != bob_order.order_id

    def test_assign_unknown_user(self, lifecycle, seeded):
        with pytest.raises(NotFound):
            lifecycle.assign(999, seeded["easy"].task_id)

    def test_assign_unknown_task(self, lifecycle, seeded):
        with pytest.raises(NotFound):
            lifecycle.assign(seeded["alice"].user_id, 999)


class TestComplete:
    """Test order completion."""

    def test_complete_sets_exec_time_and_status(self, lifecycle, seeded, db, clock):
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        completed_at = START + timedelta(seconds=90)

        solved = lifecycle.complete(order.order_id, completed_at)

        assert solved.status == OrderStatus.SOLVED
        assert solved.exec_time == 90
        assert solved.solved_at == completed_at
        assert db.get_order_by_id(order.order_id) == solved

    def test_naive_completion_instant_is_utc(self, lifecycle, seeded, db):
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        naive = (START + timedelta(seconds=30)).replace(tzinfo=None)

        solved = lifecycle.complete(order.order_id, naive)

        assert solved.exec_time == 30
        assert solved.solved_at == START + timedelta(seconds=30)
        assert solved.solved_at.tzinfo is not None
        assert db.get_order_by_id(order.order_id) == solved

    def test_complete_defaults_to_clock(self, lifecycle, seeded, clock):
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        clock.advance(42)
        assert lifecycle.complete(order.order_id).exec_time == 42

    def test_completion_before_assignment_clamps_to_zero(self, lifecycle, seeded):
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        solved = lifecycle.complete(order.order_id, START - timedelta(seconds=10))
        assert solved.exec_time == 0

    def test_complete_already_solved(self, lifecycle, seeded, db):
        """Completing twice fails and leaves the first result untouched."""
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        lifecycle.complete(order.order_id, START + timedelta(seconds=20))

        with pytest.raises(InvalidStateTransition) as exc_info:
            lifecycle.complete(order.order_id, START + timedelta(seconds=500))

        assert exc_info.value.reason == InvalidStateTransition.ALREADY_SOLVED
        stored = db.get_order_by_id(order.order_id)
        assert stored.status == OrderStatus.SOLVED
        assert stored.exec_time == 20

    def test_complete_unknown_order(self, lifecycle):
        with pytest.raises(InvalidStateTransition) as exc_info:
            lifecycle.complete(12345, START)
        assert exc_info.value.reason == InvalidStateTransition.NOT_FOUND

    def test_lost_race_reports_already_solved(self, lifecycle, seeded, db, monkeypatch):
        """A caller whose compare-and-set loses sees already_solved."""
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        db.update_status_and_exec_time(order.order_id, OrderStatus.SOLVED, 5, START + timedelta(seconds=5))

        # Serve the stale pre-completion read first so the CAS path is exercised
        real_get = db.get_order_by_id
        stale_reads = iter([order])

        def stale_then_real(order_id):
            return next(stale_reads, None) or real_get(order_id)

        monkeypatch.setattr(db, "get_order_by_id", stale_then_real)

        with pytest.raises(InvalidStateTransition) as exc_info:
            lifecycle.complete(order.order_id, START + timedelta(seconds=50))
        assert exc_info.value.reason == InvalidStateTransition.ALREADY_SOLVED

    def test_elapsed_seconds_truncates(self):
        assert elapsed_seconds(START, START + timedelta(seconds=9, milliseconds=900)) == 9


class TestCancel:
    """Test order deletion."""

    def test_cancel_pending_order_allows_new_assignment(self, lifecycle, seeded):
        order = lifecycle.assign(seeded["alice"].user_id, seeded["easy"].task_id)
        assert lifecycle.cancel(order.order_id) is True

        replacement = lifecycle.assign(seeded["alice"].user_id, seeded["hard"].task_id)
        assert replacement.order_id != order.order_id

    def test_cancel_nonexistent_order_is_noop(self, lifecycle):
        assert lifecycle.cancel(999) is False

    def test_get_missing_order(self, lifecycle):
        with pytest.raises(NotFound):
            lifecycle.get(999)


class TestLifecycleConcurrency:
    """Test the lifecycle under concurrent requests on separate connections."""

    def setup_method(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self.tmp_dir.name) / "lifecycle.db")
        self.db = OrderDatabase(self.db_path)
        self.user = self.db.create_user("contender")
        self.tasks = [self.db.create_task(f"Task {i}", "2").task_id for i in range(4)]

    def teardown_method(self):
        self.db.close()
        self.tmp_dir.cleanup()

    def _run(self, func, count):
        with ThreadPoolExecutor(max_workers=count) as executor:
            futures = [executor.submit(func, i) for i in range(count)]
            return [future.result() for future in as_completed(futures)]

    def test_concurrent_complete_exactly_one_success(self):
        """N concurrent completions: one success, N-1 InvalidStateTransition."""
        order = OrderLifecycle(self.db, clock=FixedClock()).assign(self.user.user_id, self.tasks[0])
        num_callers = 10

        def try_complete(i):
            db = OrderDatabase(self.db_path)
            try:
                OrderLifecycle(db).complete(order.order_id, START + timedelta(seconds=i + 1))
                return ("ok", i + 1)
            except InvalidStateTransition as e:
                return (e.reason, i + 1)
            finally:
                db.close()

        results = self._run(try_complete, num_callers)

        winners = [seconds for outcome, seconds in results if outcome == "ok"]
        losers = [outcome for outcome, _ in results if outcome != "ok"]
        assert len(winners) == 1, f"Expected exactly one winner, got {winners}"
        assert losers == [InvalidStateTransition.ALREADY_SOLVED] * (num_callers - 1)

        stored = self.db.get_order_by_id(order.order_id)
        assert stored.status == OrderStatus.SOLVED
        assert stored.exec_time == winners[0]
        assert stored.solved_at == START + timedelta(seconds=winners[0])

    def test_concurrent_assign_single_active_order(self):
        """Concurrent assigns for one user all observe the same order."""
        num_callers = 8

        def try_assign(i):
            db = OrderDatabase(self.db_path)
            try:
                return OrderLifecycle(db, clock=FixedClock()).assign(
                    self.user.user_id, self.tasks[i % len(self.tasks)]
                )
            finally:
                db.close()

        orders = self._run(try_assign, num_callers)

        assert len({order.order_id for order in orders}) == 1
        cursor = self.db._connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM task_orders WHERE user_id = ? AND status = 'NOT SOLVED'",
            (self.user.user_id,),
        )
        assert cursor.fetchone()[0] == 1
