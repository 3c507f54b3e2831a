"""Tests for the file-backed user store."""
import os
import json
import threading

import pytest

from arsm.errors import (
    AlreadyExists,
    InvalidCredentials,
    InvalidInput,
    InvalidRole,
    NotFound,
    Protected,
)
from arsm.users import DEFAULT_PASSWORD, DEFAULT_USERNAME, UserStore


@pytest.fixture
def store(tmp_path):
    s = UserStore(str(tmp_path / "data"), rounds=4)
    assert s.load()
    return s


def read_file(store):
    with open(store.users_file, encoding="utf-8") as f:
        return json.load(f)


def test_first_load_creates_bootstrap_admin(store):
    data = read_file(store)
    assert data["enabled"] is True
    assert list(data["users"]) == [DEFAULT_USERNAME]
    assert data["users"][DEFAULT_USERNAME]["role"] == "admin"
    assert data["users"][DEFAULT_USERNAME]["password_hash"].startswith("$2")

    user = store.authenticate(DEFAULT_USERNAME, DEFAULT_PASSWORD)
    assert user.role == "admin"
    assert store.uses_default_password()


@pytest.mark.parametrize("role", ["admin", "user"])
def test_create_then_authenticate(store, role):
    store.create("alice", "s3cret!", role)
    user = store.authenticate("alice", "s3cret!")
    assert user.username == "alice"
    assert user.role == role


def test_unknown_role_falls_back_to_user(store):
    record = store.create("bob", "password", "superuser")
    assert record.role == "user"


def test_wrong_password_and_unknown_user_look_the_same(store):
    store.create("alice", "s3cret!", "user")
    with pytest.raises(InvalidCredentials) as wrong_password:
        store.authenticate("alice", "nope")
    with pytest.raises(InvalidCredentials) as unknown_user:
        store.authenticate("mallory", "nope")
    assert wrong_password.value.message == unknown_user.value.message


def test_create_rejects_empty_and_duplicate(store):
    with pytest.raises(InvalidInput):
        store.create("", "password")
    with pytest.raises(InvalidInput):
        store.create("carol", "")
    store.create("carol", "password")
    with pytest.raises(AlreadyExists):
        store.create("carol", "other")


def test_admin_cannot_be_deleted(store):
    store.create("alice", "s3cret!", "admin")
    with pytest.raises(Protected):
        store.delete(DEFAULT_USERNAME)
    assert store.get(DEFAULT_USERNAME) is not None


def test_delete_user(store):
    store.create("alice", "s3cret!")
    store.delete("alice")
    assert store.get("alice") is None
    assert "alice" not in read_file(store)["users"]
    with pytest.raises(NotFound):
        store.delete("alice")


def test_update_password_and_role(store):
    store.create("alice", "old-pass", "user")

    store.update("alice", password="new-pass")
    with pytest.raises(InvalidCredentials):
        store.authenticate("alice", "old-pass")
    assert store.authenticate("alice", "new-pass").role == "user"

    store.update("alice", role="admin")
    assert store.authenticate("alice", "new-pass").role == "admin"


def test_update_with_empty_fields_changes_nothing(store):
    before = store.create("alice", "password", "user")
    after = store.update("alice")
    assert after == before


def test_update_errors(store):
    with pytest.raises(NotFound):
        store.update("ghost", password="x")
    with pytest.raises(InvalidRole):
        store.update(DEFAULT_USERNAME, role="root")


def test_changing_admin_password_clears_default_flag(store):
    store.update(DEFAULT_USERNAME, password="better-password")
    assert not store.uses_default_password()
    with pytest.raises(InvalidCredentials):
        store.authenticate(DEFAULT_USERNAME, DEFAULT_PASSWORD)


def test_list_hides_password_hashes(store):
    store.create("alice", "password")
    users = store.list()
    assert {u["username"] for u in users} == {"admin", "alice"}
    assert all("password_hash" not in u for u in users)


def test_record_login(store):
    store.record_login(DEFAULT_USERNAME)
    assert store.get(DEFAULT_USERNAME).last_login_at
    assert read_file(store)["users"][DEFAULT_USERNAME]["last_login_at"]


def test_long_passwords_are_supported(store):
    password = "x" * 200
    store.create("longpw", password)
    assert store.authenticate("longpw", password)
    with pytest.raises(InvalidCredentials):
        # Shares the first 72 bytes, must still be rejected
        store.authenticate("longpw", "x" * 72)


def test_changes_survive_reload(store, tmp_path):
    store.create("alice", "password", "admin")
    store.set_enabled(False)

    reloaded = UserStore(store.data_dir, rounds=4)
    assert reloaded.load()
    assert not reloaded.is_enabled()
    assert reloaded.get("alice").role == "admin"


def test_disabled_store_admits_everyone(store):
    store.set_enabled(False)
    assert store.authenticate("anyone", "anything") is None


def test_empty_user_table_is_rebuilt(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "users.json").write_text('{"enabled": false, "users": {}}')

    store = UserStore(str(data_dir), rounds=4)
    assert store.load()
    assert store.is_enabled()
    assert store.authenticate(DEFAULT_USERNAME, DEFAULT_PASSWORD)


def test_corrupt_file_disables_auth(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "users.json").write_text("{not json")

    store = UserStore(str(data_dir), rounds=4)
    assert store.load() is False
    assert not store.is_enabled()
    assert store.authenticate("admin", "admin") is None


def test_unusable_data_dir_disables_auth(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where the data directory should be")

    store = UserStore(str(blocker / "data"), rounds=4)
    assert store.load() is False
    assert not store.is_enabled()


def test_writes_leave_no_temp_files(store):
    for i in range(3):
        store.create(f"user{i}", "password")
    assert os.listdir(store.data_dir) == ["users.json"]


def test_concurrent_creates_are_all_persisted(store):
    errors = []

    def worker(i):
        try:
            store.create(f"user{i}", "password")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    on_disk = read_file(store)["users"]
    assert len(on_disk) == 17
    assert all(f"user{i}" in on_disk for i in range(16))


def test_concurrent_duplicate_create_has_one_winner(store):
    results = []

    def worker():
        try:
            store.create("dup", "password")
            results.append("ok")
        except AlreadyExists:
            results.append("exists")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    assert results.count("exists") == 7
