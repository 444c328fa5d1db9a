"""
YAML Seed Importer with UPSERT Logic

Loads users and tasks from a YAML document so orders have something to refer
to. Users are matched by login and tasks by short description; re-importing
the same file is a no-op apart from refreshed task metadata.
"""

import logging
from pathlib import Path
from typing import Dict, Any

import yaml

from .database import OrderDatabase

logger = logging.getLogger(__name__)


def import_seed(db: OrderDatabase, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import users and tasks from parsed YAML.

    Expected structure::

        users:
          - login: alice
        tasks:
          - short_desc: Reverse a linked list
            difficulty_group: MEDIUM
            popularity: 3
            elapsed_time: 600

    Args:
        db: OrderDatabase instance
        yaml_data: Parsed YAML document

    Returns:
        Dict with import statistics and per-item errors

    Raises:
        ValueError: For malformed top-level structure
        StoreUnavailable: For database failures
    """
    if not isinstance(yaml_data, dict):
        raise ValueError("Seed data must be a YAML dictionary")

    stats = {
        "users_created": 0,
        "users_existing": 0,
        "tasks_created": 0,
        "tasks_updated": 0,
        "errors": [],
    }

    users = yaml_data.get("users") or []
    if not isinstance(users, list):
        raise ValueError("YAML 'users' must be a list")
    tasks = yaml_data.get("tasks") or []
    if not isinstance(tasks, list):
        raise ValueError("YAML 'tasks' must be a list")

    for user_data in users:
        try:
            login = _import_user_login(user_data)
            _, created = db.upsert_user(login)
            if created:
                stats["users_created"] += 1
            else:
                stats["users_existing"] += 1
        except ValueError as e:
            # Individual user failures don't stop the import
            stats["errors"].append(f"Failed to import user: {e}")

    for task_data in tasks:
        try:
            fields = _import_task_fields(task_data)
            _, created = db.upsert_task(**fields)
            if created:
                stats["tasks_created"] += 1
            else:
                stats["tasks_updated"] += 1
        except ValueError as e:
            task_name = task_data.get('short_desc', 'unnamed') if isinstance(task_data, dict) else 'invalid'
            stats["errors"].append(f"Failed to import task '{task_name}': {e}")

    logger.info(
        f"Seed import finished: {stats['users_created']} users created, "
        f"{stats['tasks_created']} tasks created, {stats['tasks_updated']} tasks updated, "
        f"{len(stats['errors'])} errors"
    )
    return stats


def _import_user_login(user_data: Any) -> str:
    """Validate a user entry and return its login."""
    if isinstance(user_data, str):
        login = user_data
    elif isinstance(user_data, dict):
        login = user_data.get("login")
    else:
        raise ValueError("User entry must be a login string or a dictionary")

    if not isinstance(login, str) or not login.strip():
        raise ValueError("User 'login' is required")
    return login.strip()


def _import_task_fields(task_data: Any) -> Dict[str, Any]:
    """Validate a task entry and return keyword arguments for upsert_task."""
    if not isinstance(task_data, dict):
        raise ValueError("Task data must be a dictionary")

    short_desc = task_data.get("short_desc")
    if not isinstance(short_desc, str) or not short_desc.strip():
        raise ValueError("Task 'short_desc' is required")

    difficulty_group = task_data.get("difficulty_group")
    if difficulty_group is None or str(difficulty_group).strip() == "":
        raise ValueError("Task 'difficulty_group' is required")

    fields = {
        "short_desc": short_desc.strip(),
        "difficulty_group": str(difficulty_group).strip(),
        "popularity": None,
        "elapsed_time": None,
    }
    for key in ("popularity", "elapsed_time"):
        value = task_data.get(key)
        if value is None:
            continue
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValueError(f"Task '{key}' must be a non-negative integer")
        fields[key] = value
    return fields


def import_seed_from_file(db: OrderDatabase, file_path: str) -> Dict[str, Any]:
    """
    Import users and tasks from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For invalid YAML or structure
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Seed file not found: {file_path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            yaml_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if yaml_data is None:
        yaml_data = {}
    return import_seed(db, yaml_data)
