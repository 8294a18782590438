"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions and _load_principals are the mappers. Operation modules never touch
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Every public method runs inside exactly one connection transaction
  (`with self.engine.connect() as conn: ... conn.commit()`). The methods that
  implement a check-then-act sequence do the whole sequence inside that one
  transaction:

  issue_or_refresh_token() locks the principal row (SELECT ... FOR UPDATE on
      databases that support it) before looking for an active token, so two
      concurrent signins for one principal serialize and the second one sees
      the first one's token.

  consume_single_use_code() and redeem_restore_code() use a conditional
      UPDATE (used IS NULL AND expire > now). The row count decides who won;
      no read-then-write window exists.

  SQLite ignores FOR UPDATE, so on SQLite the engine starts every transaction
  with BEGIN IMMEDIATE, which takes the database write lock up front and
  serializes writers. pysqlite's own implicit BEGIN handling is switched off
  for this to work (recipe from the SQLAlchemy SQLite dialect docs).

Timestamps:
  Stored as fixed-width UTC ISO 8601 strings with microsecond precision, so
  string comparison in SQL is chronological comparison.

DB path: auth/tokenauth.db by default.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
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
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from auth.models import BearerToken, PermissionGroup, Principal, RestoreCode, SingleUseCode

logger = logging.getLogger("tokenauth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tokenauth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("login", String(255), nullable=False, unique=True),
    Column("password", Text, nullable=False),  # bcrypt hash
    Column("email", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_user_perms = Table(
    "user_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("permission", String(255), nullable=False),
    UniqueConstraint("user_id", "permission", name="uq_user_permission"),
)

_groups = Table(
    "user_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
)

_group_perms = Table(
    "group_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("group_id", Integer, nullable=False, index=True),
    Column("permission", String(255), nullable=False),
    UniqueConstraint("group_id", "permission", name="uq_group_permission"),
)

_group_users = Table(
    "group_users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("group_id", Integer, nullable=False, index=True),
    Column("user_id", Integer, nullable=False, index=True),
    UniqueConstraint("group_id", "user_id", name="uq_group_user"),
)

_tokens = Table(
    "auth_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("value", String(128), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False),
    Column("expire", String(32), nullable=False),
    Index("ix_auth_tokens_user_expire", "user_id", "expire"),
)

_single_use_codes = Table(
    "single_use_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("value", String(128), nullable=False),
    Column("user_id", Integer, nullable=False, index=True),
    Column("expire", String(32), nullable=False),
    Column("used", String(32)),  # NULL until redeemed
    UniqueConstraint("user_id", "value", name="uq_single_use_code"),
)

_restore_codes = Table(
    "restore_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("value", String(128), nullable=False),
    Column("user_id", Integer, nullable=False, index=True),
    Column("expire", String(32), nullable=False),
    Column("used", String(32)),  # NULL until redeemed
    UniqueConstraint("user_id", "value", name="uq_restore_code"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL journal mode.

    isolation_level=None stops pysqlite from emitting its own deferred BEGIN;
    _begin_immediate() emits BEGIN IMMEDIATE instead. PRAGMAs are
    per-connection, so this runs on every new pooled connection.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_immediate(conn: Connection) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for principals, groups, tokens and codes.

    Usage:
        store = AuthStore()                                # SQLite default
        store = AuthStore("postgresql://user:pw@host/db")  # PostgreSQL
        uid = store.create_principal(Principal(login="alice", password_hash=h, email="a@x"))
        principal = store.get_principal(uid)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            # Seconds a writer waits for BEGIN IMMEDIATE before giving up.
            connect_args["timeout"] = 30
            if ":memory:" in db_url or db_url == "sqlite://":
                # One shared connection, otherwise every thread sees its own empty database.
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _configure_sqlite)
            event.listen(self.engine, "begin", _begin_immediate)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> int:
        """Insert a principal with its permissions and memberships; return its ID.

        Raises sqlalchemy.exc.IntegrityError if the login already exists.
        Callers that checked login_exists() first should still catch it: a
        concurrent signup may have won the race.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    login=principal.login,
                    password=principal.password_hash,
                    email=principal.email,
                    created_at=_now_iso(),
                )
            )
            user_id = result.inserted_primary_key[0]
            _replace_user_permissions(conn, user_id, principal.permissions)
            _replace_user_groups(conn, user_id, principal.groups)
            conn.commit()
        return user_id

    def get_principal(self, user_id: int) -> Principal | None:
        """Load a principal together with its groups and their permissions.

        All reads happen in one transaction, so the result is a consistent
        snapshot even while group memberships are being edited concurrently.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            principals = _load_principals(conn, [row]) if row is not None else []
        return principals[0] if principals else None

    def get_principal_by_login(self, login: str) -> Principal | None:
        """Look up a principal by exact login (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.login == login)).fetchone()
            principals = _load_principals(conn, [row]) if row is not None else []
        return principals[0] if principals else None

    def login_exists(self, login: str, exclude_id: int | None = None) -> bool:
        stmt = select(func.count()).select_from(_users).where(_users.c.login == login)
        if exclude_id is not None:
            stmt = stmt.where(_users.c.id != exclude_id)
        with self.engine.connect() as conn:
            count = conn.execute(stmt).scalar()
        return (count or 0) > 0

    def existing_user_ids(self, user_ids: Iterable[int]) -> set[int]:
        ids = set(user_ids)
        if not ids:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.id).where(_users.c.id.in_(ids))).fetchall()
        return {r.id for r in rows}

    def list_principals(self, offset: int, limit: int) -> tuple[list[Principal], int]:
        """Return one page of principals ordered by ID, plus the total count."""
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users)).scalar() or 0
            rows = conn.execute(_users.select().order_by(_users.c.id).offset(offset).limit(limit)).fetchall()
            principals = _load_principals(conn, rows)
        return principals, total

    def update_principal(
        self,
        user_id: int,
        *,
        login: str | None = None,
        password_hash: str | None = None,
        email: str | None = None,
        permissions: Iterable[str] | None = None,
        groups: Iterable[int] | None = None,
    ) -> bool:
        """Update the given fields of a principal in one transaction.

        None means "leave unchanged". permissions and groups replace the
        existing sets wholesale.

        Returns True if the principal exists, False otherwise.
        Raises sqlalchemy.exc.IntegrityError if the new login is taken.
        """
        fields = {
            k: v for k, v in (("login", login), ("password", password_hash), ("email", email)) if v is not None
        }
        with self.engine.connect() as conn:
            exists = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone()
            if exists is None:
                conn.commit()
                return False
            if fields:
                conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            if permissions is not None:
                _replace_user_permissions(conn, user_id, permissions)
            if groups is not None:
                _replace_user_groups(conn, user_id, groups)
            conn.commit()
        return True

    def delete_principal(self, user_id: int) -> bool:
        """Delete a principal and everything that belongs to it.

        Tokens, direct permissions, group memberships, single-use codes and
        restore codes go in the same transaction as the user row, so a
        former token never points at a missing principal.

        Returns True if deleted, False if not found.
        """
        with self.engine.connect() as conn:
            for table in (_tokens, _user_perms, _group_users, _single_use_codes, _restore_codes):
                conn.execute(table.delete().where(table.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, group: PermissionGroup) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_groups.insert().values(name=group.name))
            group_id = result.inserted_primary_key[0]
            _replace_group_permissions(conn, group_id, group.permissions)
            _replace_group_users(conn, group_id, group.users)
            conn.commit()
        return group_id

    def get_group(self, group_id: int) -> PermissionGroup | None:
        with self.engine.connect() as conn:
            row = conn.execute(_groups.select().where(_groups.c.id == group_id)).fetchone()
            groups = _load_groups(conn, [row]) if row is not None else []
        return groups[0] if groups else None

    def existing_group_ids(self, group_ids: Iterable[int]) -> set[int]:
        ids = set(group_ids)
        if not ids:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(select(_groups.c.id).where(_groups.c.id.in_(ids))).fetchall()
        return {r.id for r in rows}

    def list_groups(self, offset: int, limit: int) -> tuple[list[PermissionGroup], int]:
        """Return one page of groups ordered by ID, plus the total count."""
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_groups)).scalar() or 0
            rows = conn.execute(_groups.select().order_by(_groups.c.id).offset(offset).limit(limit)).fetchall()
            groups = _load_groups(conn, rows)
        return groups, total

    def update_group(
        self,
        group_id: int,
        *,
        name: str | None = None,
        permissions: Iterable[str] | None = None,
        users: Iterable[int] | None = None,
    ) -> bool:
        """Update the given fields of a group. Returns False if it does not exist."""
        with self.engine.connect() as conn:
            exists = conn.execute(select(_groups.c.id).where(_groups.c.id == group_id)).fetchone()
            if exists is None:
                conn.commit()
                return False
            if name is not None:
                conn.execute(_groups.update().where(_groups.c.id == group_id).values(name=name))
            if permissions is not None:
                _replace_group_permissions(conn, group_id, permissions)
            if users is not None:
                _replace_group_users(conn, group_id, users)
            conn.commit()
        return True

    def delete_group(self, group_id: int) -> bool:
        """Delete a group, its permissions and its memberships."""
        with self.engine.connect() as conn:
            conn.execute(_group_perms.delete().where(_group_perms.c.group_id == group_id))
            conn.execute(_group_users.delete().where(_group_users.c.group_id == group_id))
            result = conn.execute(_groups.delete().where(_groups.c.id == group_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def issue_or_refresh_token(
        self,
        user_id: int,
        expire: datetime,
        now: datetime,
        make_value: Callable[[], str],
    ) -> tuple[str, bool]:
        """Extend the principal's active token, or insert a fresh one.

        Returns (token_value, created). make_value is only called when no
        active token exists. The principal row lock plus the existence check
        plus the write form one transaction, which keeps at most one active
        token per principal under concurrent callers.
        """
        with self.engine.connect() as conn:
            conn.execute(select(_users.c.id).where(_users.c.id == user_id).with_for_update()).fetchone()
            row = conn.execute(
                _tokens.select()
                .where((_tokens.c.user_id == user_id) & (_tokens.c.expire > _iso(now)))
                .order_by(_tokens.c.expire.desc())
                .limit(1)
            ).fetchone()
            if row is not None:
                conn.execute(_tokens.update().where(_tokens.c.id == row.id).values(expire=_iso(expire)))
                conn.commit()
                return row.value, False
            value = make_value()
            conn.execute(_tokens.insert().values(value=value, user_id=user_id, expire=_iso(expire)))
            conn.commit()
        return value, True

    def get_token(self, value: str) -> BearerToken | None:
        """Look up a token by value, expired or not. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.value == value)).fetchone()
        return _row_to_token(row) if row is not None else None

    def extend_active_token(self, token_id: int, expire: datetime, now: datetime) -> bool:
        """Set a new expiry on a token that is still active at now.

        The activity check and the write are one conditional UPDATE, so a token
        revoked or expired since it was resolved stays dead. True if it matched.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.id == token_id) & (_tokens.c.expire > _iso(now)))
                .values(expire=_iso(expire))
            )
            conn.commit()
        return result.rowcount == 1

    def active_tokens(self, user_id: int, now: datetime) -> list[BearerToken]:
        """Return the principal's unexpired tokens. At most one by invariant.

        Introspection helper for tests and operators; no auth/ operation reads it.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where((_tokens.c.user_id == user_id) & (_tokens.c.expire > _iso(now)))
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Single-use codes
    # ------------------------------------------------------------------

    def add_single_use_code(self, code: SingleUseCode) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _single_use_codes.insert().values(
                    value=code.value,
                    user_id=code.user_id,
                    expire=_iso(code.expire),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def consume_single_use_code(self, user_id: int, value: str, now: datetime) -> bool:
        """Mark a matching, unexpired, unused code as used. True if this call won."""
        return self._consume(_single_use_codes, user_id, value, now)

    def get_single_use_code(self, user_id: int, value: str) -> SingleUseCode | None:
        """Return a code row, used or not. Introspection helper for tests and operators."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _single_use_codes.select().where(
                    (_single_use_codes.c.user_id == user_id) & (_single_use_codes.c.value == value)
                )
            ).fetchone()
        if row is None:
            return None
        return SingleUseCode(
            id=row.id, value=row.value, user_id=row.user_id, expire=_parse(row.expire), used=_parse(row.used)
        )

    # ------------------------------------------------------------------
    # Restore codes
    # ------------------------------------------------------------------

    def add_restore_code(self, code: RestoreCode) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _restore_codes.insert().values(
                    value=code.value,
                    user_id=code.user_id,
                    expire=_iso(code.expire),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def outstanding_restore_code(self, user_id: int, now: datetime) -> RestoreCode | None:
        """Return the principal's newest unused, unexpired restore code, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _restore_codes.select()
                .where(
                    (_restore_codes.c.user_id == user_id)
                    & _restore_codes.c.used.is_(None)
                    & (_restore_codes.c.expire > _iso(now))
                )
                .order_by(_restore_codes.c.expire.desc())
                .limit(1)
            ).fetchone()
        if row is None:
            return None
        return RestoreCode(id=row.id, value=row.value, user_id=row.user_id, expire=_parse(row.expire))

    def find_restore_code(self, user_id: int, value: str, now: datetime) -> RestoreCode | None:
        """Return the code if it is unused and unexpired, otherwise None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _restore_codes.select().where(
                    (_restore_codes.c.user_id == user_id)
                    & (_restore_codes.c.value == value)
                    & _restore_codes.c.used.is_(None)
                    & (_restore_codes.c.expire > _iso(now))
                )
            ).fetchone()
        if row is None:
            return None
        return RestoreCode(id=row.id, value=row.value, user_id=row.user_id, expire=_parse(row.expire))

    def redeem_restore_code(self, user_id: int, value: str, now: datetime, password_hash: str) -> bool:
        """Consume a restore code and store the new password hash atomically.

        The password only changes if this call consumed the code. Returns
        False when the code is missing, expired or already used.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_consume_stmt(_restore_codes, user_id, value, now))
            if result.rowcount != 1:
                conn.rollback()
                return False
            conn.execute(_users.update().where(_users.c.id == user_id).values(password=password_hash))
            conn.commit()
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _consume(self, table: Table, user_id: int, value: str, now: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_consume_stmt(table, user_id, value, now))
            conn.commit()
        return result.rowcount == 1

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Statement builders
# ---------------------------------------------------------------------------


def _consume_stmt(table: Table, user_id: int, value: str, now: datetime):
    return (
        table.update()
        .where(
            (table.c.user_id == user_id)
            & (table.c.value == value)
            & table.c.used.is_(None)
            & (table.c.expire > _iso(now))
        )
        .values(used=_iso(now))
    )


def _replace_user_permissions(conn: Connection, user_id: int, permissions: Iterable[str]) -> None:
    conn.execute(_user_perms.delete().where(_user_perms.c.user_id == user_id))
    rows = [{"user_id": user_id, "permission": p} for p in sorted(set(permissions))]
    if rows:
        conn.execute(_user_perms.insert(), rows)


def _replace_user_groups(conn: Connection, user_id: int, group_ids: Iterable[int]) -> None:
    conn.execute(_group_users.delete().where(_group_users.c.user_id == user_id))
    rows = [{"group_id": g, "user_id": user_id} for g in sorted(set(group_ids))]
    if rows:
        conn.execute(_group_users.insert(), rows)


def _replace_group_permissions(conn: Connection, group_id: int, permissions: Iterable[str]) -> None:
    conn.execute(_group_perms.delete().where(_group_perms.c.group_id == group_id))
    rows = [{"group_id": group_id, "permission": p} for p in sorted(set(permissions))]
    if rows:
        conn.execute(_group_perms.insert(), rows)


def _replace_group_users(conn: Connection, group_id: int, user_ids: Iterable[int]) -> None:
    conn.execute(_group_users.delete().where(_group_users.c.group_id == group_id))
    rows = [{"group_id": group_id, "user_id": u} for u in sorted(set(user_ids))]
    if rows:
        conn.execute(_group_users.insert(), rows)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _load_principals(conn: Connection, rows) -> list[Principal]:
    """Map user rows to Principals, loading permissions and groups on conn.

    Three batched queries regardless of page size: direct permissions,
    memberships, and the permissions of every group involved.
    """
    if not rows:
        return []
    ids = [r.id for r in rows]
    perms: dict[int, set[str]] = {i: set() for i in ids}
    for r in conn.execute(
        select(_user_perms.c.user_id, _user_perms.c.permission).where(_user_perms.c.user_id.in_(ids))
    ):
        perms[r.user_id].add(r.permission)

    memberships: dict[int, set[int]] = {i: set() for i in ids}
    for r in conn.execute(
        select(_group_users.c.user_id, _group_users.c.group_id).where(_group_users.c.user_id.in_(ids))
    ):
        memberships[r.user_id].add(r.group_id)

    group_ids = set().union(*memberships.values())
    group_perms: dict[int, set[str]] = {g: set() for g in group_ids}
    if group_ids:
        for r in conn.execute(
            select(_group_perms.c.group_id, _group_perms.c.permission).where(_group_perms.c.group_id.in_(group_ids))
        ):
            group_perms[r.group_id].add(r.permission)

    return [
        Principal(
            id=r.id,
            login=r.login,
            password_hash=r.password,
            email=r.email,
            permissions=perms[r.id],
            groups=memberships[r.id],
            group_permissions=set().union(*(group_perms[g] for g in memberships[r.id])),
        )
        for r in rows
    ]


def _load_groups(conn: Connection, rows) -> list[PermissionGroup]:
    if not rows:
        return []
    ids = [r.id for r in rows]
    perms: dict[int, set[str]] = {i: set() for i in ids}
    for r in conn.execute(
        select(_group_perms.c.group_id, _group_perms.c.permission).where(_group_perms.c.group_id.in_(ids))
    ):
        perms[r.group_id].add(r.permission)
    users: dict[int, set[int]] = {i: set() for i in ids}
    for r in conn.execute(
        select(_group_users.c.group_id, _group_users.c.user_id).where(_group_users.c.group_id.in_(ids))
    ):
        users[r.group_id].add(r.user_id)
    return [PermissionGroup(id=r.id, name=r.name, permissions=perms[r.id], users=users[r.id]) for r in rows]


def _row_to_token(row) -> BearerToken:
    return BearerToken(id=row.id, value=row.value, user_id=row.user_id, expire=_parse(row.expire))
