"""
auth/store.py -- Revocation store contract and its SQLAlchemy Core adapter.

Pattern: Repository + Data Mapper.
RevocationStore is the contract the TokenService consumes; SQLRevocationStore
is the reference repository and _row_to_refresh the mapper. Service code never
touches SQL directly.

The store is the source of truth. The in-process cache (cache/store.py) is
rebuilt from find_all_refresh_tokens() / find_all_blocked_tokens() at
startup, so those two enumerations must be complete.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Raw access tokens are stored in blocked_tokens only until they expire;
  find_all_blocked_tokens() and prune_blocked_tokens() delete them after.

Errors:
  sqlalchemy.exc.SQLAlchemyError propagates to the caller unchanged. A
  failed write must never look like a successful one.

DB path: sessionguard.db at the project root unless DATABASE_URL is set.
"""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateJTIError
from auth.models import RefreshRecord

logger = logging.getLogger("sessionguard.store")

# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class RevocationStore(abc.ABC):
    """Durable record of outstanding refresh JTIs and revoked access tokens."""

    @abc.abstractmethod
    def store_refresh_token(self, subject: str, jti: str) -> None:
        """Insert a refresh record. Raises DuplicateJTIError if jti is taken; never overwrites."""

    @abc.abstractmethod
    def delete_refresh_token(self, jti: str) -> None:
        """Remove a refresh record. Deleting an absent JTI is not an error."""

    @abc.abstractmethod
    def find_refresh_token(self, jti: str) -> str | None:
        """Return the subject recorded for jti, or None."""

    @abc.abstractmethod
    def find_all_refresh_tokens(self) -> list[RefreshRecord]: ...

    @abc.abstractmethod
    def store_blocked_token(self, subject: str, token: str, expires_at: int) -> None: ...

    @abc.abstractmethod
    def find_all_blocked_tokens(self) -> list[str]:
        """Return every unexpired blocked token. May prune expired ones first."""

    @abc.abstractmethod
    def prune_blocked_tokens(self, now: int | None = None) -> int:
        """Delete blocked tokens whose expiry is at or before now. Returns the count."""

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("subject", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_blocked_tokens = Table(
    "blocked_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subject", Text, nullable=False),
    Column("token", Text, nullable=False, unique=True),
    Column("expires_at", Integer, nullable=False, index=True),  # Unix seconds
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so verification reads don't block on writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLRevocationStore(RevocationStore):
    """SQLAlchemy Core implementation of RevocationStore.

    Usage:
        store = SQLRevocationStore("sqlite:///sessionguard.db")
        store.store_refresh_token("u1", jti)
        store.find_refresh_token(jti)        # "u1"
        store.close()

    clock returns Unix seconds and decides which blocked tokens have expired.
    """

    def __init__(self, db_url: str, clock: Callable[[], float] = time.time) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def store_refresh_token(self, subject: str, jti: str) -> None:
        """Insert a refresh record.

        Raises DuplicateJTIError if the JTI already exists; the existing
        record is left untouched.
        """
        with self.engine.connect() as conn:
            try:
                conn.execute(_refresh_tokens.insert().values(jti=jti, subject=subject, created_at=_now_iso()))
            except IntegrityError as e:
                conn.rollback()
                raise DuplicateJTIError(f"Refresh record {jti[:8]}... already exists.") from e
            conn.commit()

    def delete_refresh_token(self, jti: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.jti == jti))
            conn.commit()

    def find_refresh_token(self, jti: str) -> str | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().with_only_columns(_refresh_tokens.c.subject).where(_refresh_tokens.c.jti == jti)
            ).fetchone()
        return row.subject if row is not None else None

    def find_all_refresh_tokens(self) -> list[RefreshRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(_refresh_tokens.select()).fetchall()
        return [_row_to_refresh(r) for r in rows]

    # ------------------------------------------------------------------
    # Blocked access tokens
    # ------------------------------------------------------------------

    def store_blocked_token(self, subject: str, token: str, expires_at: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _blocked_tokens.insert().values(
                    subject=subject,
                    token=token,
                    expires_at=expires_at,
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def find_all_blocked_tokens(self) -> list[str]:
        """Prune expired rows, then return the remaining token strings."""
        now = int(self._clock())
        with self.engine.connect() as conn:
            conn.execute(_blocked_tokens.delete().where(_blocked_tokens.c.expires_at <= now))
            rows = conn.execute(_blocked_tokens.select().with_only_columns(_blocked_tokens.c.token)).fetchall()
            conn.commit()
        return [r.token for r in rows]

    def prune_blocked_tokens(self, now: int | None = None) -> int:
        cutoff = int(self._clock()) if now is None else now
        with self.engine.connect() as conn:
            result = conn.execute(_blocked_tokens.delete().where(_blocked_tokens.c.expires_at <= cutoff))
            conn.commit()
        if result.rowcount:
            logger.info("Pruned %d expired blocked tokens", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_refresh(row) -> RefreshRecord:
    return RefreshRecord(jti=row.jti, subject=row.subject)
