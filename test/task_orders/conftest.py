"""
Shared fixtures for task order tests.

Provides isolated temporary databases, a controllable clock and a service
wired over them, plus a FastAPI test client.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Make the src/ layout importable without installing the package
project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from task_orders.api import create_app
from task_orders.database import OrderDatabase
from task_orders.lifecycle import OrderLifecycle
from task_orders.rating import RatingAggregator
from task_orders.service import OrderService


START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock returning a settable instant, advanced manually by tests."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "orders.db")


@pytest.fixture
def db(db_path):
    """Temporary OrderDatabase, closed after the test."""
    database = OrderDatabase(db_path)
    yield database
    database.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def lifecycle(db, clock):
    return OrderLifecycle(db, clock=clock)


@pytest.fixture
def aggregator(db):
    return RatingAggregator(db)


@pytest.fixture
def service(db, lifecycle, aggregator):
    return OrderService(db, lifecycle=lifecycle, aggregator=aggregator, leaderboard_size=10)


@pytest.fixture
def seeded(db):
    """Two users and three tasks of increasing difficulty."""
    alice = db.create_user("alice")
    bob = db.create_user("bob")
    easy = db.create_task("Sum two numbers", "1", elapsed_time=60)
    medium = db.create_task("Reverse a linked list", "2", popularity=4, elapsed_time=300)
    hard = db.create_task("Implement an LRU cache", "3", popularity=9, elapsed_time=900)
    return {
        "alice": alice,
        "bob": bob,
        "easy": easy,
        "medium": medium,
        "hard": hard,
    }


@pytest.fixture
def api_client(service):
    """TestClient over an app serving the test service."""
    app = create_app(service=service)
    with TestClient(app) as client:
        yield client
