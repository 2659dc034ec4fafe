"""Tests for FixtureStore."""

from __future__ import annotations

import json

import pytest

from devicelease.data.fixtures import FixtureStore


USERS = {
    "users": {
        "valid": [
            {"username": "testuser1", "email": "testuser1@example.com", "password": "Password123!"},
            {"username": "testuser2", "email": "testuser2@example.com", "password": "Password123!"},
        ],
        "invalid": [{"username": "nobody", "password": "wrong"}],
        "empty": [],
    }
}


@pytest.fixture
def fixtures_dir(tmp_path):
    (tmp_path / "users.json").write_text(json.dumps(USERS))
    (tmp_path / "products.json").write_text(json.dumps({
        "products": {"standard": [{"id": "P-1", "name": "Widget", "price": 9.99}]},
    }))
    return tmp_path


@pytest.fixture
def store(fixtures_dir):
    return FixtureStore(fixtures_dir)


def test_first_valid_user(store):
    assert store.load_test_data("users", "valid", 0)["username"] == "testuser1"


def test_indexed_record(store):
    assert store.load_test_data("users", "valid", 1)["email"] == "testuser2@example.com"


def test_out_of_range_index_falls_back_to_first(store):
    assert store.load_test_data("users", "valid", 5)["username"] == "testuser1"
    assert store.load_test_data("users", "valid", -1)["username"] == "testuser1"


def test_missing_type_is_empty(store):
    assert store.load_test_data("nonexistent", "x") == {}


def test_unknown_or_empty_category_is_empty(store):
    assert store.load_test_data("users", "ghosts") == {}
    assert store.load_test_data("users", "empty") == {}


def test_whole_type_without_category(store):
    data = store.load_test_data("users")
    assert set(data) == {"valid", "invalid", "empty"}


def test_broken_file_is_empty(tmp_path):
    (tmp_path / "users.json").write_text("{not json")
    assert FixtureStore(tmp_path).load_test_data("users", "valid") == {}


def test_records_are_copies(store):
    first = store.load_test_data("users", "valid")
    first["username"] = "mutated"
    assert store.load_test_data("users", "valid")["username"] == "testuser1"


def test_cached_until_cleared(store, fixtures_dir):
    store.load_test_data("users", "valid")
    (fixtures_dir / "users.json").write_text(json.dumps({"users": {"valid": [{"username": "fresh"}]}}))

    assert store.load_test_data("users", "valid")["username"] == "testuser1"
    store.clear_cache()
    assert store.load_test_data("users", "valid")["username"] == "fresh"


def test_failed_load_not_cached(tmp_path):
    store = FixtureStore(tmp_path)
    assert store.load_test_data("users", "valid") == {}

    (tmp_path / "users.json").write_text(json.dumps(USERS))
    assert store.load_test_data("users", "valid")["username"] == "testuser1"


def test_file_without_type_object_not_cached(tmp_path):
    (tmp_path / "users.json").write_text(json.dumps({"people": {"valid": [{"username": "x"}]}}))
    store = FixtureStore(tmp_path)
    assert store.load_test_data("users", "valid") == {}
    assert store.load_test_data("users") == {}

    (tmp_path / "users.json").write_text(json.dumps(USERS))
    assert store.load_test_data("users", "valid")["username"] == "testuser1"
    assert set(store.load_test_data("users")) == {"valid", "invalid", "empty"}


def test_shortcuts(store):
    assert store.get_user()["username"] == "testuser1"
    assert store.get_user("invalid")["username"] == "nobody"
    assert store.get_product()["id"] == "P-1"
