"""
Order Database Layer with Atomic Transitions

Provides SQLite-based storage for users, tasks and task orders with WAL mode
for concurrent access. Order creation and completion are single atomic
statements so concurrent requests cannot create two active orders for one
user or complete the same order twice.
"""

import functools
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Tuple

from .exceptions import NotFound, StoreUnavailable
from .models import (
    LOGIN_MAX_LENGTH,
    OrderDTO,
    OrderStatus,
    SolveRecord,
    Task,
    TaskOrder,
    User,
)

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Fixed-width so stored timestamps also sort correctly as text
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a UTC storage string. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a storage string back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def store_operation(name: str):
    """
    Decorator for public store methods.

    Logs the call duration at debug level and wraps any ``sqlite3.Error`` in
    ``StoreUnavailable`` so callers never see driver exceptions. Business
    errors raised inside the method pass through unchanged.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            start = time.perf_counter()
            try:
                return func(self, *args, **kwargs)
            except sqlite3.Error as e:
                logger.error(f"Database error during {name}: {e}")
                raise StoreUnavailable(f"Database error during {name}: {e}") from e
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.debug(f"{name} completed in {duration_ms:.2f}ms")
        return wrapper
    return decorator


class OrderDatabase:
    """
    SQLite order store with atomic order transitions.

    Features:
    - WAL mode for concurrent read/write access across connections
    - One active (NOT SOLVED) order per user via a partial unique index
    - Compare-and-set completion: only one caller can move an order to SOLVED
    - Schema applied from versioned SQL migration files
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        """
        Initialize OrderDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long a connection waits on a locked database
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._connection_lock = threading.RLock()

        # One connection per instance, shared across threads behind the lock
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, configure pragmas and apply migrations.

        Args:
            drop_existing: If True, drops all existing tables first
        """
        try:
            # Autocommit mode; transactions are opened explicitly
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
                timeout=self.busy_timeout_ms / 1000,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            self._apply_migrations()

        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to initialize database at {self.db_path}: {e}") from e

    def _apply_migrations(self) -> None:
        """Apply every migration file not yet recorded in schema_migrations."""
        cursor = self._connection.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
        """)
        cursor.execute("SELECT version FROM schema_migrations")
        applied = {row["version"] for row in cursor.fetchall()}

        for migration in sorted(MIGRATIONS_DIR.glob("*.sql")):
            version = migration.stem
            if version in applied:
                continue
            # Migration scripts are idempotent, so two processes racing here is harmless
            cursor.executescript(migration.read_text(encoding="utf-8"))
            cursor.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, self._get_current_time_str()),
            )
            logger.info(f"Applied migration {version} to {self.db_path}")

    def _drop_existing_tables(self) -> None:
        """Drop all tables for clean slate initialization."""
        cursor = self._connection.cursor()
        cursor.execute("DROP TABLE IF EXISTS task_orders")
        cursor.execute("DROP TABLE IF EXISTS tasks")
        cursor.execute("DROP TABLE IF EXISTS users")
        cursor.execute("DROP TABLE IF EXISTS schema_migrations")

    def _cursor(self) -> sqlite3.Cursor:
        if self._connection is None:
            raise StoreUnavailable(f"Database connection to {self.db_path} is closed")
        return self._connection.cursor()

    @contextmanager
    def _transaction(self, immediate: bool = False):
        """
        Context manager for explicit transaction control.

        The connection lock is held for the whole transaction and always
        released on exit. ``immediate`` takes the database write lock up front
        so reads inside the transaction cannot go stale before the write.
        """
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    def _get_current_time_str(self) -> str:
        """Get current UTC time as a storage string."""
        return format_timestamp(datetime.now(timezone.utc))

    # Row conversion

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(user_id=row["user_id"], login=row["login"])

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            task_id=row["task_id"],
            difficulty_group=row["difficulty_group"],
            short_desc=row["short_desc"],
            reg_date=parse_timestamp(row["reg_date"]),
            popularity=row["popularity"],
            elapsed_time=row["elapsed_time"],
        )

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> TaskOrder:
        return TaskOrder(
            order_id=row["order_id"],
            user_id=row["user_id"],
            task_id=row["task_id"],
            reg_date=parse_timestamp(row["reg_date"]),
            exec_time=row["exec_time"],
            status=OrderStatus(row["status"]),
            solved_at=parse_timestamp(row["solved_at"]),
        )

    # Users

    @staticmethod
    def _validate_login(login: str) -> None:
        """Reject logins the users table would not accept, before touching it."""
        if not isinstance(login, str) or not login:
            raise ValueError("User login must not be empty")
        if len(login) > LOGIN_MAX_LENGTH:
            raise ValueError(f"User login must be at most {LOGIN_MAX_LENGTH} characters, got {len(login)}")

    @store_operation("create_user")
    def create_user(self, login: str) -> User:
        """
        Create a new user.

        Args:
            login: Unique user login

        Returns:
            Created User

        Raises:
            ValueError: If the login is empty, too long or already taken
        """
        self._validate_login(login)
        with self._connection_lock:
            cursor = self._cursor()
            try:
                cursor.execute(
                    "INSERT INTO users (login, created_at) VALUES (?, ?)",
                    (login, self._get_current_time_str()),
                )
            except sqlite3.IntegrityError:
                raise ValueError(f"User '{login}' already exists")
            return User(user_id=cursor.lastrowid, login=login)

    @store_operation("upsert_user")
    def upsert_user(self, login: str) -> Tuple[User, bool]:
        """
        Create user by login if not found, return the existing user otherwise.

        Returns:
            Tuple of (User, created) where created is True for new users

        Raises:
            ValueError: If the login is empty or too long
        """
        self._validate_login(login)
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (login, created_at) VALUES (?, ?)",
                (login, self._get_current_time_str()),
            )
            if cursor.rowcount > 0:
                return User(user_id=cursor.lastrowid, login=login), True

            cursor.execute("SELECT user_id, login FROM users WHERE login = ?", (login,))
            row = cursor.fetchone()
            if row is None:
                raise sqlite3.IntegrityError(f"User '{login}' disappeared during upsert operation")
            return self._row_to_user(row), False

    @store_operation("get_user")
    def get_user(self, user_id: int) -> Optional[User]:
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("SELECT user_id, login FROM users WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return self._row_to_user(row) if row else None

    @store_operation("list_users")
    def list_users(self) -> List[User]:
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("SELECT user_id, login FROM users ORDER BY user_id")
            return [self._row_to_user(row) for row in cursor.fetchall()]

    # Tasks

    @store_operation("create_task")
    def create_task(self, short_desc: str, difficulty_group: str, popularity: int = 0,
                    elapsed_time: int = 0, reg_date: Optional[datetime] = None) -> Task:
        """
        Create a new task.

        Args:
            short_desc: Unique short description
            difficulty_group: Difficulty bucket used for scoring
            popularity: Popularity counter
            elapsed_time: Baseline solve time in seconds
            reg_date: Registration instant, defaults to now

        Returns:
            Created Task

        Raises:
            ValueError: If a task with the same description exists
        """
        reg_date_str = format_timestamp(reg_date) if reg_date else self._get_current_time_str()

        with self._connection_lock:
            cursor = self._cursor()
            try:
                cursor.execute("""
                    INSERT INTO tasks (difficulty_group, short_desc, reg_date, popularity, elapsed_time)
                    VALUES (?, ?, ?, ?, ?)
                """, (difficulty_group, short_desc, reg_date_str, popularity, elapsed_time))
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Cannot create task '{short_desc}': {e}")

            return Task(
                task_id=cursor.lastrowid,
                difficulty_group=difficulty_group,
                short_desc=short_desc,
                reg_date=parse_timestamp(reg_date_str),
                popularity=popularity,
                elapsed_time=elapsed_time,
            )

    @store_operation("upsert_task")
    def upsert_task(self, short_desc: str, difficulty_group: str,
                    popularity: Optional[int] = None,
                    elapsed_time: Optional[int] = None) -> Tuple[Task, bool]:
        """
        Create task by short description, or update its metadata if it exists.

        Fields passed as None keep their stored value on update.

        Returns:
            Tuple of (Task, created)
        """
        with self._transaction(immediate=True) as cursor:
            cursor.execute("""
                INSERT OR IGNORE INTO tasks (difficulty_group, short_desc, reg_date, popularity, elapsed_time)
                VALUES (?, ?, ?, ?, ?)
            """, (difficulty_group, short_desc, self._get_current_time_str(),
                  popularity or 0, elapsed_time or 0))
            created = cursor.rowcount > 0

            if not created:
                cursor.execute("""
                    UPDATE tasks
                    SET difficulty_group = ?,
                        popularity = COALESCE(?, popularity),
                        elapsed_time = COALESCE(?, elapsed_time)
                    WHERE short_desc = ?
                """, (difficulty_group, popularity, elapsed_time, short_desc))

            cursor.execute("SELECT * FROM tasks WHERE short_desc = ?", (short_desc,))
            return self._row_to_task(cursor.fetchone()), created

    @store_operation("get_task")
    def get_task(self, task_id: int) -> Optional[Task]:
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
            row = cursor.fetchone()
            return self._row_to_task(row) if row else None

    # Orders

    @store_operation("insert_order")
    def insert_order(self, user_id: int, task_id: int, reg_date: datetime) -> Tuple[TaskOrder, bool]:
        """
        Atomically create a NOT SOLVED order unless the user already has one.

        Uses INSERT OR IGNORE against the partial unique index on active
        orders, inside an IMMEDIATE transaction so the follow-up SELECT sees
        the same state the insert did. Concurrent callers for one user get
        exactly one new order; the others receive that same order.

        Args:
            user_id: User receiving the task
            task_id: Task being assigned
            reg_date: Assignment instant

        Returns:
            Tuple of (active order, created)

        Raises:
            NotFound: If the user or task does not exist
        """
        with self._transaction(immediate=True) as cursor:
            cursor.execute("SELECT 1 FROM users WHERE user_id = ?", (user_id,))
            if cursor.fetchone() is None:
                raise NotFound("user", user_id)
            cursor.execute("SELECT 1 FROM tasks WHERE task_id = ?", (task_id,))
            if cursor.fetchone() is None:
                raise NotFound("task", task_id)

            cursor.execute("""
                INSERT OR IGNORE INTO task_orders (user_id, task_id, reg_date, exec_time, status)
                VALUES (?, ?, ?, 0, ?)
            """, (user_id, task_id, format_timestamp(reg_date), OrderStatus.NOT_SOLVED.value))

            if cursor.rowcount > 0:
                cursor.execute("SELECT * FROM task_orders WHERE order_id = ?", (cursor.lastrowid,))
                return self._row_to_order(cursor.fetchone()), True

            cursor.execute("""
                SELECT * FROM task_orders
                WHERE user_id = ? AND status = ?
            """, (user_id, OrderStatus.NOT_SOLVED.value))
            row = cursor.fetchone()
            if row is None:
                raise sqlite3.IntegrityError(
                    f"Active order for user {user_id} disappeared during insert operation"
                )
            return self._row_to_order(row), False

    @store_operation("get_order_by_id")
    def get_order_by_id(self, order_id: int) -> Optional[TaskOrder]:
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("SELECT * FROM task_orders WHERE order_id = ?", (order_id,))
            row = cursor.fetchone()
            return self._row_to_order(row) if row else None

    @store_operation("find_active_by_user")
    def find_active_by_user(self, user_id: int) -> Optional[TaskOrder]:
        """Return the user's NOT SOLVED order, if any."""
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("""
                SELECT * FROM task_orders
                WHERE user_id = ? AND status = ?
                LIMIT 1
            """, (user_id, OrderStatus.NOT_SOLVED.value))
            row = cursor.fetchone()
            return self._row_to_order(row) if row else None

    @store_operation("update_status_and_exec_time")
    def update_status_and_exec_time(self, order_id: int, status: OrderStatus, exec_time: int,
                                    solved_at: Optional[datetime] = None,
                                    expected_status: OrderStatus = OrderStatus.NOT_SOLVED) -> bool:
        """
        Compare-and-set the order status and execution time.

        The row is only written while its status still equals
        ``expected_status``, in one UPDATE statement. Of several concurrent
        callers on the same order at most one gets True.

        Returns:
            True if this call changed the order, False otherwise
        """
        solved_at_str = format_timestamp(solved_at) if solved_at else None

        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("""
                UPDATE task_orders
                SET status = ?, exec_time = ?, solved_at = ?
                WHERE order_id = ? AND status = ?
            """, (status.value, exec_time, solved_at_str, order_id, expected_status.value))
            return cursor.rowcount > 0

    @store_operation("list_orders_for_user")
    def list_orders_for_user(self, user_id: int) -> List[OrderDTO]:
        """
        Get the user's order history joined with user and task details.

        Returns:
            OrderDTO rows ordered by assignment time
        """
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("""
                SELECT u.user_id, u.login, t.difficulty_group, t.short_desc,
                       o.reg_date AS order_reg_date, o.status, t.reg_date AS task_reg_date,
                       t.popularity, t.elapsed_time, o.exec_time, o.order_id
                FROM task_orders o
                JOIN users u ON u.user_id = o.user_id
                JOIN tasks t ON t.task_id = o.task_id
                WHERE o.user_id = ?
                ORDER BY o.reg_date, o.order_id
            """, (user_id,))

            return [OrderDTO(
                order_id=row["order_id"],
                user_id=row["user_id"],
                login=row["login"],
                difficulty_group=row["difficulty_group"],
                short_desc=row["short_desc"],
                order_reg_date=parse_timestamp(row["order_reg_date"]),
                status=OrderStatus(row["status"]),
                task_reg_date=parse_timestamp(row["task_reg_date"]),
                popularity=row["popularity"],
                elapsed_time=row["elapsed_time"],
                exec_time=row["exec_time"],
            ) for row in cursor.fetchall()]

    @store_operation("list_solve_history")
    def list_solve_history(self, user_id: Optional[int] = None) -> List[SolveRecord]:
        """
        Get every SOLVED order with the fields needed for scoring.

        A single SELECT, so the result is one consistent snapshot.

        Args:
            user_id: Restrict history to one user
        """
        query = """
            SELECT o.user_id, u.login, t.difficulty_group, o.exec_time, o.solved_at, o.reg_date
            FROM task_orders o
            JOIN users u ON u.user_id = o.user_id
            JOIN tasks t ON t.task_id = o.task_id
            WHERE o.status = ?
        """
        params = [OrderStatus.SOLVED.value]
        if user_id is not None:
            query += " AND o.user_id = ?"
            params.append(user_id)
        query += " ORDER BY o.user_id, o.order_id"

        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute(query, params)
            records = []
            for row in cursor.fetchall():
                # Rows written without solved_at fall back to the assignment instant
                solved_at = row["solved_at"] or row["reg_date"]
                records.append(SolveRecord(
                    user_id=row["user_id"],
                    login=row["login"],
                    difficulty_group=row["difficulty_group"],
                    exec_time=row["exec_time"],
                    solved_at=parse_timestamp(solved_at),
                ))
            return records

    @store_operation("delete_order")
    def delete_order(self, order_id: int) -> bool:
        """
        Hard-delete an order. Deleting a missing order is not an error.

        Returns:
            True if a row was removed
        """
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("DELETE FROM task_orders WHERE order_id = ?", (order_id,))
            return cursor.rowcount > 0

    @store_operation("ping")
    def ping(self) -> bool:
        """Run a trivial query to verify connectivity."""
        with self._connection_lock:
            cursor = self._cursor()
            cursor.execute("SELECT 1")
            return cursor.fetchone()[0] == 1

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """
        Reinitialize the database with a clean slate.

        Drops all tables and reapplies every migration. Used by the
        ``init-db --drop`` command and by tests.
        """
        self.close()
        self._initialize_database(drop_existing=True)
