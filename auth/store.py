"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user is the mapper. Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  users.version is a compare-and-swap token. update_user() only writes when
  the stored version still equals the version the caller read, and bumps it
  in the same statement. A concurrent password reset and password change
  therefore cannot interleave into a lost update -- the loser sees None.

  secret_tokens rows are consumed by a single conditional UPDATE
  (consumed_at IS NULL AND expires_at >= now). Exactly one caller can change
  the row; the rowcount tells it whether it won.

  At most one live token per (user, purpose): replace_secret_token() deletes
  and inserts inside one transaction.

All methods are synchronous. The service layer calls them from a worker
thread with a deadline so the event loop never blocks on the database.

DB path: auth/warden_auth.db unless DATABASE_URL is set.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine

from auth.models import Role, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'warden_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(254), nullable=False, unique=True),  # always lower-cased
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("role", String(20), nullable=False, server_default="staff"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_secret_tokens = Table(
    "secret_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("purpose", String(20), nullable=False),  # "verify_email" | "reset_password"
    Column("token_digest", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", Float, nullable=False),  # epoch seconds
    Column("consumed_at", Float),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block the single writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and secret-token records.

    Usage:
        store = UserStore()
        store.create_user(user)
        user = store.get_by_email("alice@example.com")
        saved = store.update_user(changed_user, expected_version=user.version)
        store.close()
    """

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> User:
        """Insert a new user and return it as stored.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The service turns that into a conflict; a pre-check alone would race.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user.id,
                    email=user.email,
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=user.role.value,
                    is_active=1 if user.is_active else 0,
                    is_email_verified=1 if user.is_email_verified else 0,
                    version=user.version,
                    created_at=user.created_at,
                    updated_at=user.updated_at,
                    last_login=user.last_login,
                )
            )
        return user

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email. Callers pass the normalized (lower-case) form."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user: User, expected_version: int) -> User | None:
        """Write every mutable field of user if the stored version is still expected_version.

        Returns the stored user (with the bumped version) on success, None if
        the row was changed by someone else or does not exist.
        """
        new_version = expected_version + 1
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user.id) & (_users.c.version == expected_version))
                .values(
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=user.role.value,
                    is_active=1 if user.is_active else 0,
                    is_email_verified=1 if user.is_email_verified else 0,
                    updated_at=user.updated_at,
                    last_login=user.last_login,
                    version=new_version,
                )
            )
        if result.rowcount != 1:
            return None
        return self.get_by_id(user.id)

    def count_active_admins(self) -> int:
        """Used to refuse demoting or deactivating the last administrator."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == Role.ADMIN.value) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Secret tokens
    # ------------------------------------------------------------------

    def replace_secret_token(self, user_id: str, purpose: str, token_digest: str, expires_at: float) -> None:
        """Store a new token digest, superseding any previous one of the same purpose."""
        with self.engine.begin() as conn:
            conn.execute(
                _secret_tokens.delete().where(
                    (_secret_tokens.c.user_id == user_id) & (_secret_tokens.c.purpose == purpose)
                )
            )
            conn.execute(
                _secret_tokens.insert().values(
                    user_id=user_id,
                    purpose=purpose,
                    token_digest=token_digest,
                    expires_at=expires_at,
                )
            )

    def consume_secret_token(self, token_digest: str, purpose: str, now: float) -> str | None:
        """Atomically mark a live token consumed and return its user id.

        The UPDATE is the check: it only matches an unconsumed, unexpired row,
        so at most one caller ever sees rowcount == 1 for a given digest.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _secret_tokens.update()
                .where(
                    (_secret_tokens.c.token_digest == token_digest)
                    & (_secret_tokens.c.purpose == purpose)
                    & (_secret_tokens.c.consumed_at.is_(None))
                    & (_secret_tokens.c.expires_at >= now)
                )
                .values(consumed_at=now)
            )
            if result.rowcount != 1:
                return None
            return conn.execute(
                select(_secret_tokens.c.user_id).where(_secret_tokens.c.token_digest == token_digest)
            ).scalar()

    def delete_secret_tokens(self, user_id: str, purpose: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _secret_tokens.delete().where(
                    (_secret_tokens.c.user_id == user_id) & (_secret_tokens.c.purpose == purpose)
                )
            )
        return result.rowcount

    def purge_secret_tokens(self, now: float) -> int:
        """Delete expired and consumed tokens. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _secret_tokens.delete().where(
                    (_secret_tokens.c.expires_at < now) | (_secret_tokens.c.consumed_at.is_not(None))
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )
