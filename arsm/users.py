"""
ARSM - User Store
===================
File-backed table of panel users plus the global "authentication enabled"
switch.

Storage:
    data/users.json
    {
        "enabled": true,
        "users": {
            "admin": {"username": "admin", "password_hash": "$2b$...",
                      "role": "admin", "created_at": 1760000000}
        }
    }

Security model:
- Passwords are stored as bcrypt hashes (random per-record salt)
- The "admin" account is the bootstrap account: created on first run with
  password "admin", it can be updated but never deleted
- If the file cannot be created or read, authentication is disabled and the
  rest of the panel keeps working without login enforcement

Concurrency:
    One reader/writer lock guards the table. Lookups (authenticate, list,
    get) share the lock; every mutation takes it exclusively and rewrites
    the whole file atomically (temp file + os.replace) before returning.
"""

import os
import json
import time
import hashlib
import logging
import tempfile
import threading
from dataclasses import dataclass, replace

import bcrypt

from arsm.errors import (
    AlreadyExists,
    InvalidCredentials,
    InvalidInput,
    InvalidRole,
    IOFailure,
    NotFound,
    Protected,
)

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "admin"
DEFAULT_PASSWORD = "admin"

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)

USERS_FILENAME = "users.json"


@dataclass(frozen=True)
class UserRecord:
    """One row of the user table. Records are replaced, never mutated."""

    username: str
    password_hash: str
    role: str
    created_at: int
    last_login_at: int | None = None

    def to_dict(self) -> dict:
        data = {
            "username": self.username,
            "password_hash": self.password_hash,
            "role": self.role,
            "created_at": self.created_at,
        }
        if self.last_login_at:
            data["last_login_at"] = self.last_login_at
        return data

    def public(self) -> dict:
        """The record without its password hash, safe to return to clients."""
        data = self.to_dict()
        del data["password_hash"]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "UserRecord":
        return cls(
            username=data["username"],
            password_hash=data["password_hash"],
            role=data.get("role", ROLE_USER),
            created_at=int(data.get("created_at", 0)),
            last_login_at=data.get("last_login_at") or None,
        )


# -- Password hashing ----------------------------------------------------------

def _prepare_password(password: str) -> bytes:
    """Bcrypt has a 72-byte limit. Pre-hash longer passwords with SHA256."""
    encoded = password.encode("utf-8")
    if len(encoded) > 72:
        return hashlib.sha256(encoded).hexdigest().encode("ascii")
    return encoded


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_prepare_password(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_prepare_password(password), password_hash.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the file
        return False


class _ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    def reading(self) -> "_Guard":
        return _Guard(self.acquire_read, self.release_read)

    def writing(self) -> "_Guard":
        return _Guard(self.acquire_write, self.release_write)


class _Guard:
    def __init__(self, acquire, release):
        self._acquire = acquire
        self._release = release

    def __enter__(self):
        self._acquire()
        return self

    def __exit__(self, *exc):
        self._release()
        return False


class UserStore:
    """
    Durable, thread-safe table of panel users.

    Attributes:
        data_dir:   Directory holding users.json.
        users_file: Full path to users.json.
        rounds:     bcrypt cost factor used for new hashes.
    """

    def __init__(self, data_dir: str, rounds: int = 12):
        """
        Initialize the store. Call load() before use.

        Args:
            data_dir: Absolute path to the data/ directory.
            rounds:   bcrypt cost factor (tests use a low value).
        """
        self.data_dir = data_dir
        self.users_file = os.path.join(data_dir, USERS_FILENAME)
        self.rounds = rounds
        self._lock = _ReadWriteLock()
        self._users: dict[str, UserRecord] = {}
        self._enabled = False
        self._timing_hash: str | None = None

    # -- Loading ---------------------------------------------------------------

    def load(self) -> bool:
        """
        Load users.json, creating it with the bootstrap account if missing.

        Any failure (directory not creatable, unreadable or corrupt file,
        write error) is logged and disables authentication instead of
        propagating.

        Returns:
            True if the table was loaded, False if authentication degraded.
        """
        with self._lock.writing():
            try:
                self._load_locked()
                return True
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.error("[Auth] Failed to load user config: %s", e)
                logger.warning("[Auth] Authentication will be disabled")
                self._enabled = False
                return False

    def _load_locked(self) -> None:
        os.makedirs(self.data_dir, exist_ok=True)

        if not os.path.exists(self.users_file):
            logger.info("[Auth] User config not found, creating default: %s", self.users_file)
            users = {DEFAULT_USERNAME: self._bootstrap_record()}
            self._save_locked(users, True)
            self._users, self._enabled = users, True
            logger.info("[Auth] Default account created (username: admin, password: admin)")
            return

        with open(self.users_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        users = {
            name: UserRecord.from_dict(record)
            for name, record in (data.get("users") or {}).items()
        }
        enabled = bool(data.get("enabled", False))

        if not users:
            users = {DEFAULT_USERNAME: self._bootstrap_record()}
            enabled = True
            self._save_locked(users, enabled)

        self._users, self._enabled = users, enabled

    def _bootstrap_record(self) -> UserRecord:
        return UserRecord(
            username=DEFAULT_USERNAME,
            password_hash=hash_password(DEFAULT_PASSWORD, self.rounds),
            role=ROLE_ADMIN,
            created_at=int(time.time()),
        )

    def _dummy_hash(self) -> str:
        """Hash compared against when the username is unknown."""
        if self._timing_hash is None:
            self._timing_hash = hash_password("arsm-timing-equalizer", self.rounds)
        return self._timing_hash

    def _save_locked(self, users: dict[str, UserRecord], enabled: bool) -> None:
        """Atomically replace users.json. Caller holds the write lock."""
        payload = {
            "enabled": enabled,
            "users": {name: record.to_dict() for name, record in users.items()},
        }
        fd, tmp_path = tempfile.mkstemp(
            prefix=".users-", suffix=".tmp", dir=self.data_dir,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.users_file)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _commit_locked(self, users: dict[str, UserRecord], enabled: bool) -> None:
        try:
            self._save_locked(users, enabled)
        except OSError as e:
            raise IOFailure(f"Failed to write {self.users_file}: {e}") from e
        self._users, self._enabled = users, enabled

    # -- Enabled flag ----------------------------------------------------------

    def is_enabled(self) -> bool:
        with self._lock.reading():
            return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        with self._lock.writing():
            self._commit_locked(dict(self._users), enabled)

    # -- Lookups ---------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> UserRecord | None:
        """
        Check a username/password pair.

        Returns:
            The matching record, or None when authentication is disabled
            (no login required).

        Raises:
            InvalidCredentials: Unknown user or wrong password (same error
                                for both, so usernames cannot be guessed).
        """
        with self._lock.reading():
            if not self._enabled:
                return None
            record = self._users.get(username)
            if record is None:
                # Spend the same bcrypt time as a real comparison
                check_password(password, self._dummy_hash())
                raise InvalidCredentials()
            if not check_password(password, record.password_hash):
                raise InvalidCredentials()
            return record

    def get(self, username: str) -> UserRecord | None:
        with self._lock.reading():
            return self._users.get(username)

    def list(self) -> list[dict]:
        """All users with password hashes stripped, ordered by creation."""
        with self._lock.reading():
            records = sorted(self._users.values(), key=lambda r: (r.created_at, r.username))
            return [r.public() for r in records]

    def uses_default_password(self) -> bool:
        """True while the admin account still accepts the bootstrap password."""
        with self._lock.reading():
            admin = self._users.get(DEFAULT_USERNAME)
            if admin is None:
                return False
            return check_password(DEFAULT_PASSWORD, admin.password_hash)

    # -- Mutations -------------------------------------------------------------

    def create(self, username: str, password: str, role: str = ROLE_USER) -> UserRecord:
        """
        Add a user.

        Raises:
            InvalidInput:  Empty username or password.
            AlreadyExists: Username taken.
            IOFailure:     users.json could not be written.
        """
        if not username or not password:
            raise InvalidInput()
        if role not in ROLES:
            role = ROLE_USER

        password_hash = hash_password(password, self.rounds)

        with self._lock.writing():
            if username in self._users:
                raise AlreadyExists()
            record = UserRecord(
                username=username,
                password_hash=password_hash,
                role=role,
                created_at=int(time.time()),
            )
            users = dict(self._users)
            users[username] = record
            self._commit_locked(users, self._enabled)
            return record

    def update(self, username: str, password: str = "", role: str = "") -> UserRecord:
        """
        Change a user's password and/or role. Empty strings leave a field as is.

        Raises:
            NotFound:    No such user.
            InvalidRole: Role given but not one of ROLES.
        """
        if role and role not in ROLES:
            raise InvalidRole()

        password_hash = hash_password(password, self.rounds) if password else None

        with self._lock.writing():
            record = self._users.get(username)
            if record is None:
                raise NotFound()
            changes = {}
            if password_hash:
                changes["password_hash"] = password_hash
            if role:
                changes["role"] = role
            record = replace(record, **changes)
            users = dict(self._users)
            users[username] = record
            self._commit_locked(users, self._enabled)
            return record

    def delete(self, username: str) -> None:
        """
        Remove a user.

        Raises:
            Protected: Attempt to delete the bootstrap admin account.
            NotFound:  No such user.
        """
        if username == DEFAULT_USERNAME:
            raise Protected()

        with self._lock.writing():
            if username not in self._users:
                raise NotFound()
            users = dict(self._users)
            del users[username]
            self._commit_locked(users, self._enabled)

    def record_login(self, username: str) -> None:
        """Stamp last_login_at. Persistence errors are logged, not raised."""
        with self._lock.writing():
            record = self._users.get(username)
            if record is None:
                return
            users = dict(self._users)
            users[username] = replace(record, last_login_at=int(time.time()))
            try:
                self._commit_locked(users, self._enabled)
            except IOFailure as e:
                logger.warning("[Auth] Could not record login for %s: %s", username, e)
