"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh and password-reset tokens are stored as SHA-256 hashes only.

  Single-use tokens are consumed with a conditional UPDATE whose WHERE clause
  restates every validity condition (not revoked / not used, not expired).
  Only the caller that observes rowcount == 1 may proceed, so concurrent
  consumers of the same token cannot both succeed. No explicit locks.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision so they
compare correctly as text inside SQL.

DB path: auth/folio_auth.db unless DATABASE_URL overrides it.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import MfaConfig, MfaMethod, PasswordResetToken, RefreshToken, Role, Scope, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'folio_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="viewer"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_preferred_method", String(20)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(40), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

_mfa_config = Table(
    "user_mfa_config",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("method", String(20), nullable=False),
    Column("secret_encrypted", Text),  # NULL for EMAIL
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("pending_secret_encrypted", Text),  # re-enrolment in progress
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    UniqueConstraint("user_id", "method"),
)

# Columns added after the first release: (column, PRAGMA, ALTER).
_ADDED_COLUMNS = (
    ("last_login", "PRAGMA table_info(users)", "ALTER TABLE users ADD COLUMN last_login TEXT"),
    (
        "revoked_at",
        "PRAGMA table_info(refresh_tokens)",
        "ALTER TABLE refresh_tokens ADD COLUMN revoked_at TEXT",
    ),
    (
        "pending_secret_encrypted",
        "PRAGMA table_info(user_mfa_config)",
        "ALTER TABLE user_mfa_config ADD COLUMN pending_secret_encrypted TEXT",
    ),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, refresh tokens, MFA configs and reset tokens.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@b.c", name="A", hashed_password=hash_password("...")))
        user = store.get_by_email("a@b.c")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_added_columns()

    def _ensure_added_columns(self) -> None:
        """Add columns introduced after a table was first created.

        SQLite does not support IF NOT EXISTS in ALTER TABLE, so column
        presence is checked through PRAGMA table_info first.
        """
        if self.engine.dialect.name != "sqlite":
            return
        with self.engine.connect() as conn:
            for column, pragma, alter in _ADDED_COLUMNS:
                existing_cols = {row[1] for row in conn.execute(text(pragma)).fetchall()}
                if column not in existing_cols:
                    conn.execute(text(alter))
            conn.commit()

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat IntegrityError as "email taken" -- a concurrent
        registration may have won between their existence check and insert.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.lower(),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    is_active=1 if user.is_active else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    mfa_preferred_method=user.mfa_preferred_method.value if user.mfa_preferred_method else None,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email.strip().lower())).fetchone()
        return row is not None

    def list_users(self, scope: Scope) -> list[User]:
        """Return users visible under scope, ordered by email."""
        query = _users.select().order_by(_users.c.email)
        if not scope.is_global:
            query = query.where(_users.c.id == scope.owner_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, role, is_active, hashed_password, mfa_enabled,
        mfa_preferred_method. Booleans and enums are converted for storage.

        Returns True if a row was updated, False if user_id was not found.
        """
        for flag in ("is_active", "mfa_enabled"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "mfa_preferred_method" in fields and fields["mfa_preferred_method"] is not None:
            fields["mfa_preferred_method"] = MfaMethod(fields["mfa_preferred_method"]).value
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == Role.ADMIN.value) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, user_id: int, token_hash: str, expires_at: datetime) -> RefreshToken:
        """Revoke the user's live refresh tokens and store a new one.

        One active refresh token per user: a new login or rotation
        supersedes whatever session context existed before.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            )
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=iso(expires_at),
                    revoked=0,
                    created_at=now,
                )
            )
            token_id = result.inserted_primary_key[0]
        return RefreshToken(
            id=token_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=iso(expires_at),
            revoked=False,
            created_at=now,
        )

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Look up a refresh token by hash regardless of state."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def claim_refresh_token(self, token_hash: str) -> bool:
        """Atomically revoke a refresh token if it is still valid.

        Returns True only for the single caller whose UPDATE matched a live,
        unexpired token. This is the optimistic check that makes rotation
        single-use under concurrent refresh attempts.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .values(revoked=1, revoked_at=now)
            )
            conn.commit()
        return result.rowcount == 1

    def revoke_refresh_token(self, token_hash: str) -> bool:
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: int) -> int:
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            )
            conn.commit()
        return result.rowcount

    def purge_expired_refresh_tokens(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _now_iso()))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # MFA configuration
    # ------------------------------------------------------------------

    def save_mfa_config(self, config: MfaConfig) -> int:
        """Replace the user's config for config.method with this one."""
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _mfa_config.delete().where(
                    (_mfa_config.c.user_id == config.user_id) & (_mfa_config.c.method == config.method.value)
                )
            )
            result = conn.execute(
                _mfa_config.insert().values(
                    user_id=config.user_id,
                    method=config.method.value,
                    secret_encrypted=config.secret_encrypted,
                    verified=1 if config.verified else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_mfa_config(self, user_id: int, method: MfaMethod) -> MfaConfig | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _mfa_config.select().where((_mfa_config.c.user_id == user_id) & (_mfa_config.c.method == method.value))
            ).fetchone()
        return _row_to_mfa_config(row) if row is not None else None

    def list_mfa_configs(self, user_id: int) -> list[MfaConfig]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _mfa_config.select().where(_mfa_config.c.user_id == user_id).order_by(_mfa_config.c.method)
            ).fetchall()
        return [_row_to_mfa_config(r) for r in rows]

    def mark_mfa_verified(self, config_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_mfa_config.update().where(_mfa_config.c.id == config_id).values(verified=1, updated_at=_now_iso()))
            conn.commit()

    def set_pending_totp_secret(self, config_id: int, secret_encrypted: str) -> None:
        """Stage a replacement secret without touching the verified one."""
        with self.engine.connect() as conn:
            conn.execute(
                _mfa_config.update()
                .where(_mfa_config.c.id == config_id)
                .values(pending_secret_encrypted=secret_encrypted, updated_at=_now_iso())
            )
            conn.commit()

    def promote_pending_totp_secret(self, config_id: int) -> bool:
        """Make the staged secret the verified one. False if nothing was staged."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _mfa_config.update()
                .where((_mfa_config.c.id == config_id) & (_mfa_config.c.pending_secret_encrypted.is_not(None)))
                .values(
                    secret_encrypted=_mfa_config.c.pending_secret_encrypted,
                    pending_secret_encrypted=None,
                    verified=1,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount == 1

    def delete_mfa_configs(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_mfa_config.delete().where(_mfa_config.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, user_id: int, token_hash: str, expires_at: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=iso(expires_at),
                    used=0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def count_recent_reset_tokens(self, user_id: int, since: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_reset_tokens)
                .where((_reset_tokens.c.user_id == user_id) & (_reset_tokens.c.created_at >= iso(since)))
            ).scalar()
        return result or 0

    def get_valid_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        """Return the reset token if it is unused and unexpired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _reset_tokens.select().where(
                    (_reset_tokens.c.token_hash == token_hash)
                    & (_reset_tokens.c.used == 0)
                    & (_reset_tokens.c.expires_at > _now_iso())
                )
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def claim_reset_token(self, token_id: int) -> bool:
        """Atomically mark a reset token used. True only for the winning caller."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where(
                    (_reset_tokens.c.id == token_id)
                    & (_reset_tokens.c.used == 0)
                    & (_reset_tokens.c.expires_at > _now_iso())
                )
                .values(used=1)
            )
            conn.commit()
        return result.rowcount == 1

    def purge_expired_reset_tokens(self, older_than: timedelta = timedelta(days=1)) -> int:
        cutoff = iso(datetime.now(timezone.utc) - older_than)
        with self.engine.connect() as conn:
            result = conn.execute(_reset_tokens.delete().where(_reset_tokens.c.expires_at <= cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    last_login = getattr(row, "last_login", None)
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        is_active=bool(row.is_active),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_preferred_method=MfaMethod(row.mfa_preferred_method) if row.mfa_preferred_method else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=last_login,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        created_at=row.created_at,
    )


def _row_to_mfa_config(row) -> MfaConfig:
    return MfaConfig(
        id=row.id,
        user_id=row.user_id,
        method=MfaMethod(row.method),
        secret_encrypted=row.secret_encrypted,
        verified=bool(row.verified),
        pending_secret_encrypted=row.pending_secret_encrypted,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used=bool(row.used),
        created_at=row.created_at,
    )
