"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Workflow code never touches SQL directly.

Exclusive access:
  The store is the source of truth across request instances, so races are
  settled here rather than with in-process locks. Every state transition that
  must happen at most once (token consumption, staging retirement, attaching a
  federated subject) is a conditional UPDATE whose WHERE clause names the
  expected pre-state. A rowcount of 0 means another request got there first;
  the store raises StoreConflict and the surrounding transaction rolls back.

  Staging identities carry UNIQUE(subject), so two concurrent first logins for
  the same federated subject cannot both insert a record.

Failures:
  Lookups return None when nothing matches. Connection-level failures
  (OperationalError) are raised as StoreUnavailable. IntegrityError from a
  duplicate insert is left to the caller, which knows what the duplicate means.
  Tag names are the exception: a duplicate name just means the tag exists.

Timestamps are stored as fixed-width ISO 8601 UTC strings so that SQL string
comparison orders them correctly (used by purge_expired).
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import StoreConflict, StoreUnavailable
from auth.models import STAGING_PENDING, STAGING_RETIRED, Passport, StagingIdentity, Token, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("title", String(255), nullable=False, server_default=""),
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("is_agency_admin", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("federated_subject", Text, unique=True),  # NULL until linked
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
)

_passports = Table(
    "passports",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_tags = Table(
    "tags",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_user_tags = Table(
    "user_tags",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)

_staging = Table(
    "staging_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subject", Text, nullable=False, unique=True),
    Column("email", String(255)),
    Column("linked_id", String(32), nullable=False, unique=True),
    Column("hash", String(64), nullable=False),
    Column("status", String(16), nullable=False, server_default=STAGING_PENDING),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("purpose", String(32), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("email", String(255), nullable=False),
    Column("correlation_id", String(32)),  # staging linked_id for account-link tokens
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO string; naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, passports, tags, staging identities and tokens.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user_id = store.insert_user(User(username="alice@agency.gov"), hash_password("Str0ng!Pass"))
        user = store.find_user_by_username("alice@agency.gov")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            _metadata.create_all(self.engine)
        except OperationalError as exc:
            raise StoreUnavailable(f"cannot initialise schema: {exc}") from exc

    @contextmanager
    def _connect(self, transactional: bool = False) -> Iterator[Connection]:
        """Yield a connection; a transactional one commits on exit and rolls back on error."""
        try:
            with (self.engine.begin() if transactional else self.engine.connect()) as conn:
                yield conn
        except OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def insert_user(self, user: User, hashed_password: str | None = None) -> int:
        """Insert a user, its passport and its tags as one unit. Returns the new id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists;
        no user, passport or tag link is written in that case.
        """
        now = _now_iso()
        self._ensure_tags(user.tags)
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    name=user.name,
                    title=user.title,
                    is_admin=1 if user.is_admin else 0,
                    is_agency_admin=1 if user.is_agency_admin else 0,
                    is_active=1 if user.is_active else 0,
                    federated_subject=user.federated_subject,
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
            if hashed_password is not None:
                conn.execute(
                    _passports.insert().values(
                        user_id=user_id, hashed_password=hashed_password, failed_attempts=0, created_at=now
                    )
                )
            _write_tags(conn, user_id, user.tags)
        return user_id

    def find_user_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Callers normalize first."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
            return _row_to_user(row, _read_tags(conn, row.id)) if row is not None else None

    def find_user_by_id(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return _row_to_user(row, _read_tags(conn, row.id)) if row is not None else None

    def find_user_by_subject(self, subject: str) -> User | None:
        """Look up the user a federated subject has been linked to."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.federated_subject == subject)).fetchone()
            return _row_to_user(row, _read_tags(conn, row.id)) if row is not None else None

    def username_taken(self, username: str, exclude_id: int | None = None) -> bool:
        """True if another record already holds username."""
        query = select(_users.c.id).where(_users.c.username == username)
        if exclude_id is not None:
            query = query.where(_users.c.id != exclude_id)
        with self._connect() as conn:
            return conn.execute(query).first() is not None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update columns on an existing user. Returns False if user_id was not found.

        Boolean flags are converted to int for SQLite.
        """
        for flag in ("is_admin", "is_agency_admin", "is_active"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = _now_iso()
        with self._connect(transactional=True) as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_profile(self, user_id: int, fields: dict, tags: list[str]) -> bool:
        """Write profile fields and replace the whole tag set in one transaction.

        Tags are deleted and re-inserted rather than diffed, so the stored set
        always equals the submitted set. Any failure rolls back both the field
        update and the tag replacement. Returns False if user_id was not found.
        """
        self._ensure_tags(tags)
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(**fields, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                return False
            conn.execute(_user_tags.delete().where(_user_tags.c.user_id == user_id))
            _write_tags(conn, user_id, tags)
        return True

    def _existing_tag_names(self, names: list[str]) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(select(_tags.c.name).where(_tags.c.name.in_(names))).fetchall()
        return {r.name for r in rows}

    def _ensure_tags(self, tags: list[str]) -> None:
        """Create any tag names not yet in the shared vocabulary.

        Each name gets its own short transaction so that a name inserted by a
        concurrent writer (UNIQUE on tags.name) never fails the profile write
        that follows. Tag names are shared and never deleted, so an orphan left
        by a rolled-back profile write is harmless.
        """
        wanted = list(dict.fromkeys(tags))
        if not wanted:
            return
        existing = self._existing_tag_names(wanted)
        missing = [name for name in wanted if name not in existing]
        for name in missing:
            try:
                with self._connect(transactional=True) as conn:
                    conn.execute(_tags.insert().values(name=name, created_at=_now_iso()))
            except IntegrityError:
                # Another writer created it after the lookup; its row is the one we use.
                continue

    # ------------------------------------------------------------------
    # Passports
    # ------------------------------------------------------------------

    def find_passport_by_user_id(self, user_id: int) -> Passport | None:
        with self._connect() as conn:
            row = conn.execute(_passports.select().where(_passports.c.user_id == user_id)).fetchone()
        return _row_to_passport(row) if row is not None else None

    def update_passport(self, user_id: int, hashed_password: str) -> bool:
        """Replace the password hash and clear the failed-attempt counter."""
        with self._connect(transactional=True) as conn:
            return _upsert_passport(conn, user_id, hashed_password)

    def record_login_failure(self, user_id: int) -> None:
        with self._connect(transactional=True) as conn:
            conn.execute(
                _passports.update()
                .where(_passports.c.user_id == user_id)
                .values(failed_attempts=_passports.c.failed_attempts + 1, updated_at=_now_iso())
            )

    def record_login_success(self, user_id: int) -> None:
        """Clear the failed-attempt counter and stamp last_login."""
        now = _now_iso()
        with self._connect(transactional=True) as conn:
            conn.execute(_passports.update().where(_passports.c.user_id == user_id).values(failed_attempts=0))
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now))

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def insert_token(self, token: Token) -> int:
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                _tokens.insert().values(
                    token_hash=token.token_hash,
                    purpose=token.purpose,
                    user_id=token.user_id,
                    email=token.email,
                    correlation_id=token.correlation_id,
                    created_at=_now_iso(),
                    expires_at=to_iso(token.expires_at),
                )
            )
        return result.inserted_primary_key[0]

    def find_token(self, token_hash: str) -> Token | None:
        """Look up a token by hash, consumed or not. Expiry is the caller's decision."""
        with self._connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume_token(self, token_hash: str, now: datetime) -> None:
        """Mark a token consumed. Raises StoreConflict if it already was (or is gone)."""
        with self._connect(transactional=True) as conn:
            _consume(conn, token_hash, now)

    # ------------------------------------------------------------------
    # Staging identities
    # ------------------------------------------------------------------

    def find_staging_by_subject(self, subject: str) -> StagingIdentity | None:
        with self._connect() as conn:
            row = conn.execute(_staging.select().where(_staging.c.subject == subject)).fetchone()
        return _row_to_staging(row) if row is not None else None

    def find_staging_by_linked_id(self, linked_id: str) -> StagingIdentity | None:
        with self._connect() as conn:
            row = conn.execute(_staging.select().where(_staging.c.linked_id == linked_id)).fetchone()
        return _row_to_staging(row) if row is not None else None

    def create_staging(self, staging: StagingIdentity) -> StagingIdentity:
        """Insert a staging identity.

        Raises sqlalchemy.exc.IntegrityError when a record for the same subject
        already exists -- the signal that a concurrent login won the race.
        """
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                _staging.insert().values(
                    subject=staging.subject,
                    email=staging.email,
                    linked_id=staging.linked_id,
                    hash=staging.hash,
                    status=STAGING_PENDING,
                    created_at=_now_iso(),
                    expires_at=to_iso(staging.expires_at),
                )
            )
            row = conn.execute(_staging.select().where(_staging.c.id == result.inserted_primary_key[0])).fetchone()
        return _row_to_staging(row)

    def renew_staging(self, staging_id: int, previous_hash: str, replacement: StagingIdentity) -> StagingIdentity:
        """Re-arm an expired or retired staging record with a fresh correlation id and hash.

        Conditional on the record still carrying previous_hash, so two requests
        renewing the same record cannot both hand out correlation secrets.
        Raises StoreConflict when the pre-state no longer holds.
        """
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                _staging.update()
                .where((_staging.c.id == staging_id) & (_staging.c.hash == previous_hash))
                .values(
                    email=replacement.email,
                    linked_id=replacement.linked_id,
                    hash=replacement.hash,
                    status=STAGING_PENDING,
                    expires_at=to_iso(replacement.expires_at),
                )
            )
            if result.rowcount != 1:
                raise StoreConflict(f"staging {staging_id} changed during renewal")
            row = conn.execute(_staging.select().where(_staging.c.id == staging_id)).fetchone()
        return _row_to_staging(row)

    def merge_staging(self, staging_id: int, user_id: int, subject: str, token_hash: str, now: datetime) -> None:
        """Link a staging identity's federated subject into an existing user.

        One transaction, three conditional updates:
          1. consume the account-link token   (consumed_at IS NULL)
          2. retire the staging record        (status = pending)
          3. attach the subject to the user   (federated_subject IS NULL)
        Any miss raises StoreConflict and nothing is written.
        """
        with self._connect(transactional=True) as conn:
            _consume(conn, token_hash, now)
            retired = conn.execute(
                _staging.update()
                .where((_staging.c.id == staging_id) & (_staging.c.status == STAGING_PENDING))
                .values(status=STAGING_RETIRED)
            )
            if retired.rowcount != 1:
                raise StoreConflict(f"staging {staging_id} is no longer pending")
            attached = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.federated_subject.is_(None)))
                .values(federated_subject=subject, updated_at=to_iso(now))
            )
            if attached.rowcount != 1:
                raise StoreConflict(f"user {user_id} is already linked")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def reset_password(self, user_id: int, hashed_password: str, token_hash: str, now: datetime) -> None:
        """Consume a reset token and write the new password hash as one unit.

        Raises StoreConflict (and writes nothing) if the token was consumed by
        a concurrent request.
        """
        with self._connect(transactional=True) as conn:
            _consume(conn, token_hash, now)
            _upsert_passport(conn, user_id, hashed_password)

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> tuple[int, int]:
        """Delete expired tokens and staging identities. Returns (tokens, staging) removed."""
        cutoff = to_iso(now)
        with self._connect(transactional=True) as conn:
            tokens = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= cutoff)).rowcount
            staging = conn.execute(_staging.delete().where(_staging.c.expires_at <= cutoff)).rowcount
        return tokens, staging

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except StoreUnavailable:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Statement helpers shared by single-step and transactional methods
# ---------------------------------------------------------------------------


def _consume(conn: Connection, token_hash: str, now: datetime) -> None:
    result = conn.execute(
        _tokens.update()
        .where((_tokens.c.token_hash == token_hash) & (_tokens.c.consumed_at.is_(None)))
        .values(consumed_at=to_iso(now))
    )
    if result.rowcount != 1:
        raise StoreConflict("token already consumed or missing")


def _upsert_passport(conn: Connection, user_id: int, hashed_password: str) -> bool:
    """Update the user's passport, creating it if the account has none. Returns True if created."""
    now = _now_iso()
    result = conn.execute(
        _passports.update()
        .where(_passports.c.user_id == user_id)
        .values(hashed_password=hashed_password, failed_attempts=0, updated_at=now)
    )
    if result.rowcount == 0:
        conn.execute(
            _passports.insert().values(
                user_id=user_id, hashed_password=hashed_password, failed_attempts=0, created_at=now
            )
        )
        return True
    return False


def _write_tags(conn: Connection, user_id: int, tags: list[str]) -> None:
    """Link user_id to each tag. The names must already exist (see CredentialStore._ensure_tags)."""
    for name in dict.fromkeys(tags):
        tag_id = conn.execute(select(_tags.c.id).where(_tags.c.name == name)).scalar_one()
        conn.execute(_user_tags.insert().values(user_id=user_id, tag_id=tag_id))


def _read_tags(conn: Connection, user_id: int) -> list[str]:
    rows = conn.execute(
        select(_tags.c.name)
        .select_from(_user_tags.join(_tags, _user_tags.c.tag_id == _tags.c.id))
        .where(_user_tags.c.user_id == user_id)
        .order_by(_tags.c.name)
    ).fetchall()
    return [r.name for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, tags: list[str]) -> User:
    return User(
        id=row.id,
        username=row.username,
        name=row.name or "",
        title=row.title or "",
        is_admin=bool(row.is_admin),
        is_agency_admin=bool(row.is_agency_admin),
        is_active=bool(row.is_active),
        federated_subject=row.federated_subject,
        tags=tags,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_passport(row) -> Passport:
    return Passport(
        id=row.id,
        user_id=row.user_id,
        hashed_password=row.hashed_password,
        failed_attempts=row.failed_attempts,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_staging(row) -> StagingIdentity:
    return StagingIdentity(
        id=row.id,
        subject=row.subject,
        email=row.email,
        linked_id=row.linked_id,
        hash=row.hash,
        status=row.status,
        created_at=row.created_at,
        expires_at=from_iso(row.expires_at),
    )


def _row_to_token(row) -> Token:
    return Token(
        id=row.id,
        token_hash=row.token_hash,
        purpose=row.purpose,
        user_id=row.user_id,
        email=row.email,
        correlation_id=row.correlation_id,
        created_at=row.created_at,
        expires_at=from_iso(row.expires_at),
        consumed_at=from_iso(row.consumed_at),
    )
