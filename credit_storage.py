"""
Credit ledger storage for the prediction service.

Each user owns a non-negative credit balance and an unlimited-access flag.
Balances are created lazily with ``DEFAULT_CREDITS`` on first access and
persist across sessions.  The ledger is the only state shared by every
connection, so it is also the only place credit mutations are serialised:

* **JSON file backend** (default) – a single JSON document guarded by a
  process-wide re-entrant lock plus an advisory file lock, so a
  check-then-subtract can never interleave with another ``decrement`` in this
  or any other process.
* **PostgreSQL backend** – enabled with ``DATABASE_URL``.  ``decrement`` is a
  single conditional ``UPDATE ... RETURNING`` so the database performs the
  check and the subtraction atomically.

All methods are blocking; asynchronous callers dispatch them with
``asyncio.to_thread``.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import DEFAULT_CREDITS, ServiceSettings
from log_utils import setup_logger

logger = setup_logger(__name__)


class CreditStorageError(RuntimeError):
    """Raised when the ledger backend cannot be read or written."""


@dataclass(frozen=True)
class UserCredits:
    user_id: str
    credits: int
    has_unlimited_access: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "credits": self.credits,
            "hasUnlimitedAccess": self.has_unlimited_access,
        }


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _validate_credits(credits: int) -> int:
    value = int(credits)
    if value < 0:
        raise ValueError(f"credits must be non-negative, got {value}")
    return value


class CreditLedger(ABC):
    """Interface shared by the ledger backends."""

    def __init__(self, default_credits: int = DEFAULT_CREDITS) -> None:
        self.default_credits = _validate_credits(default_credits)

    @abstractmethod
    def get_credits(self, user_id: str) -> Optional[UserCredits]: ...

    @abstractmethod
    def ensure_user(self, user_id: str) -> UserCredits:
        """Return the user's credits, creating the record with defaults if absent."""

    @abstractmethod
    def set_credits(self, user_id: str, credits: int) -> None: ...

    @abstractmethod
    def decrement(self, user_id: str) -> bool:
        """Atomically consume one credit.

        Returns ``True`` when the user has unlimited access (balance untouched)
        or one unit was removed from a positive balance, ``False`` when the
        balance was already zero or the user does not exist.
        """

    @abstractmethod
    def increment(self, user_id: str, amount: int) -> None: ...

    @abstractmethod
    def grant_unlimited(self, user_id: str) -> None: ...

    @abstractmethod
    def revoke_unlimited(self, user_id: str) -> None: ...

    @abstractmethod
    def upsert_profile(
        self,
        user_id: str,
        username: str,
        name: str,
        avatar_url: Optional[str] = None,
    ) -> None: ...

    def close(self) -> None:
        """Release backend resources."""


# ---------------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------------


class JsonFileCreditLedger(CreditLedger):
    """Ledger persisted as ``{"users": {user_id: record}}`` in a JSON file."""

    def __init__(self, path: str, default_credits: int = DEFAULT_CREDITS) -> None:
        super().__init__(default_credits)
        self.path = path
        self._lock = threading.RLock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    @contextmanager
    def _locked(self):
        """Hold the process lock and the inter-process file lock."""

        fd = os.open(f"{self.path}.lock", os.O_CREAT | os.O_RDWR)
        try:
            with self._lock:
                fcntl.flock(fd, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                content = f.read().strip()
        except OSError as exc:
            raise CreditStorageError(f"Failed to read credit ledger {self.path}: {exc}") from exc
        if not content:
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise CreditStorageError(f"Credit ledger {self.path} contains invalid JSON: {exc}") from exc
        users = data.get("users") if isinstance(data, dict) else None
        return dict(users) if isinstance(users, dict) else {}

    def _save(self, users: Dict[str, Dict[str, Any]]) -> None:
        directory = os.path.dirname(self.path) or "."
        fd, tmp_path = tempfile.mkstemp(prefix=".credits-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"users": users}, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise CreditStorageError(f"Failed to write credit ledger {self.path}: {exc}") from exc

    def _new_record(self, user_id: str, credits: Optional[int] = None) -> Dict[str, Any]:
        now = _utc_now_iso()
        return {
            "id": user_id,
            "username": user_id,
            "name": user_id,
            "profile_picture_url": None,
            "credits": self.default_credits if credits is None else credits,
            "has_unlimited_access": False,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _to_credits(user_id: str, record: Dict[str, Any]) -> UserCredits:
        return UserCredits(
            user_id=user_id,
            credits=max(0, int(record.get("credits", 0))),
            has_unlimited_access=bool(record.get("has_unlimited_access", False)),
        )

    def get_credits(self, user_id: str) -> Optional[UserCredits]:
        with self._locked():
            record = self._load().get(user_id)
        if record is None:
            return None
        return self._to_credits(user_id, record)

    def ensure_user(self, user_id: str) -> UserCredits:
        with self._locked():
            users = self._load()
            record = users.get(user_id)
            if record is None:
                record = self._new_record(user_id)
                users[user_id] = record
                self._save(users)
                logger.info("Initialised credits for %s with %d credits", user_id, record["credits"])
            return self._to_credits(user_id, record)

    def set_credits(self, user_id: str, credits: int) -> None:
        value = _validate_credits(credits)
        with self._locked():
            users = self._load()
            record = users.get(user_id) or self._new_record(user_id, value)
            record["credits"] = value
            record["updated_at"] = _utc_now_iso()
            users[user_id] = record
            self._save(users)

    def decrement(self, user_id: str) -> bool:
        with self._locked():
            users = self._load()
            record = users.get(user_id)
            if record is None:
                return False
            if record.get("has_unlimited_access"):
                return True
            balance = int(record.get("credits", 0))
            if balance <= 0:
                return False
            record["credits"] = balance - 1
            record["updated_at"] = _utc_now_iso()
            self._save(users)
            return True

    def increment(self, user_id: str, amount: int) -> None:
        amount = _validate_credits(amount)
        with self._locked():
            users = self._load()
            record = users.get(user_id)
            if record is None:
                record = self._new_record(user_id, amount)
                record["username"] = "unknown"
                record["name"] = "Unknown User"
            else:
                record["credits"] = int(record.get("credits", 0)) + amount
            record["updated_at"] = _utc_now_iso()
            users[user_id] = record
            self._save(users)

    def _set_unlimited(self, user_id: str, flag: bool) -> None:
        with self._locked():
            users = self._load()
            record = users.get(user_id) or self._new_record(user_id)
            record["has_unlimited_access"] = flag
            record["updated_at"] = _utc_now_iso()
            users[user_id] = record
            self._save(users)

    def grant_unlimited(self, user_id: str) -> None:
        self._set_unlimited(user_id, True)

    def revoke_unlimited(self, user_id: str) -> None:
        self._set_unlimited(user_id, False)

    def upsert_profile(
        self,
        user_id: str,
        username: str,
        name: str,
        avatar_url: Optional[str] = None,
    ) -> None:
        with self._locked():
            users = self._load()
            record = users.get(user_id) or self._new_record(user_id)
            record["username"] = username
            record["name"] = name or username
            record["profile_picture_url"] = avatar_url
            record["updated_at"] = _utc_now_iso()
            users[user_id] = record
            self._save(users)


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

_CREATE_USERS_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id                   TEXT PRIMARY KEY,
    username             TEXT NOT NULL,
    name                 TEXT NOT NULL,
    profile_picture_url  TEXT,
    credits              INTEGER NOT NULL DEFAULT 10 CHECK (credits >= 0),
    has_unlimited_access BOOLEAN NOT NULL DEFAULT FALSE,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_DECREMENT_SQL = """
UPDATE users
   SET credits = CASE WHEN has_unlimited_access THEN credits ELSE credits - 1 END,
       updated_at = now()
 WHERE id = %s
   AND (has_unlimited_access OR credits > 0)
RETURNING credits
"""


class PostgresCreditLedger(CreditLedger):
    """Ledger backed by a ``users`` table in PostgreSQL."""

    def __init__(self, dsn: str, default_credits: int = DEFAULT_CREDITS, *, max_connections: int = 5) -> None:
        super().__init__(default_credits)
        from psycopg2.pool import ThreadedConnectionPool

        self._pool = ThreadedConnectionPool(1, max(1, max_connections), dsn)
        self._execute(_CREATE_USERS_TABLE)
        logger.info("Connected to PostgreSQL for credit storage.")

    @contextmanager
    def _cursor(self):
        conn = self._pool.getconn()
        try:
            with conn:
                with conn.cursor() as cur:
                    yield cur
        finally:
            self._pool.putconn(conn)

    def _execute(self, sql: str, params: tuple = ()) -> Optional[tuple]:
        with self._cursor() as cur:
            cur.execute(sql, params)
            if cur.description is None:
                return None
            return cur.fetchone()

    def get_credits(self, user_id: str) -> Optional[UserCredits]:
        row = self._execute(
            "SELECT credits, has_unlimited_access FROM users WHERE id = %s",
            (user_id,),
        )
        if row is None:
            return None
        return UserCredits(user_id=user_id, credits=int(row[0]), has_unlimited_access=bool(row[1]))

    def ensure_user(self, user_id: str) -> UserCredits:
        self._execute(
            "INSERT INTO users (id, username, name, credits) VALUES (%s, %s, %s, %s) "
            "ON CONFLICT (id) DO NOTHING",
            (user_id, user_id, user_id, self.default_credits),
        )
        credits = self.get_credits(user_id)
        if credits is None:
            raise CreditStorageError(f"Failed to initialise credits for {user_id}")
        return credits

    def set_credits(self, user_id: str, credits: int) -> None:
        value = _validate_credits(credits)
        self._execute(
            "INSERT INTO users (id, username, name, credits) VALUES (%s, %s, %s, %s) "
            "ON CONFLICT (id) DO UPDATE SET credits = EXCLUDED.credits, updated_at = now()",
            (user_id, user_id, user_id, value),
        )

    def decrement(self, user_id: str) -> bool:
        return self._execute(_DECREMENT_SQL, (user_id,)) is not None

    def increment(self, user_id: str, amount: int) -> None:
        amount = _validate_credits(amount)
        self._execute(
            "INSERT INTO users (id, username, name, credits) VALUES (%s, 'unknown', 'Unknown User', %s) "
            "ON CONFLICT (id) DO UPDATE SET credits = users.credits + EXCLUDED.credits, updated_at = now()",
            (user_id, amount),
        )

    def _set_unlimited(self, user_id: str, flag: bool) -> None:
        self._execute(
            "INSERT INTO users (id, username, name, credits, has_unlimited_access) "
            "VALUES (%s, %s, %s, %s, %s) "
            "ON CONFLICT (id) DO UPDATE SET has_unlimited_access = EXCLUDED.has_unlimited_access, "
            "updated_at = now()",
            (user_id, user_id, user_id, self.default_credits, flag),
        )

    def grant_unlimited(self, user_id: str) -> None:
        self._set_unlimited(user_id, True)

    def revoke_unlimited(self, user_id: str) -> None:
        self._set_unlimited(user_id, False)

    def upsert_profile(
        self,
        user_id: str,
        username: str,
        name: str,
        avatar_url: Optional[str] = None,
    ) -> None:
        self._execute(
            "INSERT INTO users (id, username, name, profile_picture_url, credits) "
            "VALUES (%s, %s, %s, %s, %s) "
            "ON CONFLICT (id) DO UPDATE SET username = EXCLUDED.username, name = EXCLUDED.name, "
            "profile_picture_url = EXCLUDED.profile_picture_url, updated_at = now()",
            (user_id, username, name or username, avatar_url, self.default_credits),
        )

    def close(self) -> None:
        self._pool.closeall()


def create_ledger(settings: ServiceSettings) -> CreditLedger:
    """Return the PostgreSQL ledger when configured, otherwise the JSON file ledger."""

    if settings.database_url:
        try:
            return PostgresCreditLedger(settings.database_url, settings.default_credits)
        except Exception as exc:
            logger.exception(
                "Database initialisation failed: %s. Falling back to file storage.",
                exc,
            )
    logger.info("Using JSON credit ledger at %s", settings.ledger_path)
    return JsonFileCreditLedger(settings.ledger_path, settings.default_credits)


__all__ = [
    "CreditLedger",
    "CreditStorageError",
    "JsonFileCreditLedger",
    "PostgresCreditLedger",
    "UserCredits",
    "create_ledger",
]
