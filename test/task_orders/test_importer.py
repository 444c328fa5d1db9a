"""
Tests for the YAML seed importer.

Covers user/task creation, UPSERT behavior on re-import, per-item error
collection and structural validation.
"""

import pytest
import yaml

from task_orders.importer import import_seed, import_seed_from_file


class TestSeedImporter:
    """Test suite for seed import functionality."""

    @pytest.fixture
    def seed_data(self):
        """Basic seed data for testing."""
        return {
            "users": [
                {"login": "alice"},
                "bob",
            ],
            "tasks": [
                {
                    "short_desc": "Sum two numbers",
                    "difficulty_group": "EASY",
                    "elapsed_time": 60,
                },
                {
                    "short_desc": "Implement an LRU cache",
                    "difficulty_group": 3,
                    "popularity": 7,
                },
            ],
        }

    def test_import_creates_users_and_tasks(self, db, seed_data):
        result = import_seed(db, seed_data)

        assert result["users_created"] == 2
        assert result["tasks_created"] == 2
        assert result["errors"] == []

        logins = [user.login for user in db.list_users()]
        assert logins == ["alice", "bob"]

    def test_reimport_is_upsert(self, db, seed_data):
        import_seed(db, seed_data)
        seed_data["tasks"][0]["elapsed_time"] = 90

        result = import_seed(db, seed_data)

        assert result["users_created"] == 0
        assert result["users_existing"] == 2
        assert result["tasks_created"] == 0
        assert result["tasks_updated"] == 2
        assert len(db.list_users()) == 2

        task, created = db.upsert_task("Sum two numbers", "EASY")
        assert created is False
        assert task.elapsed_time == 90

    def test_numeric_difficulty_stored_as_text(self, db, seed_data):
        import_seed(db, seed_data)
        task, _ = db.upsert_task("Implement an LRU cache", "3")
        assert task.difficulty_group == "3"
        assert task.popularity == 7

    def test_invalid_items_collected_as_errors(self, db):
        result = import_seed(db, {
            "users": [{"name": "no login"}, {"login": "carol"}],
            "tasks": [
                {"difficulty_group": "EASY"},
                {"short_desc": "Negative", "difficulty_group": "1", "elapsed_time": -5},
                {"short_desc": "Valid", "difficulty_group": "1"},
            ],
        })

        assert result["users_created"] == 1
        assert result["tasks_created"] == 1
        assert len(result["errors"]) == 3
        assert any("login" in error for error in result["errors"])
        assert any("'Negative'" in error for error in result["errors"])

    def test_overlong_login_is_not_stored(self, db, aggregator):
        """A rejected user leaves no row behind and later lookups still work."""
        result = import_seed(db, {"users": [{"login": "x" * 150}, "dave"]})

        assert result["users_created"] == 1
        assert len(result["errors"]) == 1
        assert "at most 100 characters" in result["errors"][0]

        users = db.list_users()
        assert [user.login for user in users] == ["dave"]
        assert aggregator.rating_for_user(users[0].user_id).solved_count == 0

    def test_structural_errors_raise(self, db):
        with pytest.raises(ValueError, match="must be a list"):
            import_seed(db, {"users": {"login": "alice"}})
        with pytest.raises(ValueError, match="must be a YAML dictionary"):
            import_seed(db, ["not", "a", "dict"])

    def test_import_from_file(self, db, tmp_path, seed_data):
        seed_file = tmp_path / "seed.yaml"
        with open(seed_file, 'w') as f:
            yaml.dump(seed_data, f)

        result = import_seed_from_file(db, str(seed_file))
        assert result["users_created"] == 2

    def test_import_from_empty_file(self, db, tmp_path):
        seed_file = tmp_path / "empty.yaml"
        seed_file.write_text("")
        result = import_seed_from_file(db, str(seed_file))
        assert result["users_created"] == 0
        assert result["errors"] == []

    def test_import_invalid_yaml(self, db, tmp_path):
        seed_file = tmp_path / "invalid.yaml"
        seed_file.write_text("users: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            import_seed_from_file(db, str(seed_file))

    def test_import_missing_file(self, db):
        with pytest.raises(FileNotFoundError, match="Seed file not found"):
            import_seed_from_file(db, "/nonexistent/seed.yaml")
