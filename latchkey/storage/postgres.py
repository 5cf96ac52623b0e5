from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, Mapping, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from latchkey.logging import get_logger
from latchkey.storage.common import normalize_email, safe_row_value, validate_changes
from latchkey.storage.errors import ConstraintViolation, StaleRecord, StoreUnavailable
from latchkey.storage.models import Account, LinkedIdentity, Provider, TokenKind

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        password_hash TEXT,
        active BOOLEAN NOT NULL DEFAULT FALSE,
        password_changed_at TIMESTAMPTZ,
        email_changed_at TIMESTAMPTZ,
        activation_token_digest TEXT,
        activation_expires_at TIMESTAMPTZ,
        reset_token_digest TEXT,
        reset_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_key ON account (lower(email))",
    "CREATE INDEX IF NOT EXISTS account_activation_digest_idx ON account (activation_token_digest)",
    "CREATE INDEX IF NOT EXISTS account_reset_digest_idx ON account (reset_token_digest)",
    """
    CREATE TABLE IF NOT EXISTS account_identity (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account (id),
        provider TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_id)
    )
    """,
)

_DIGEST_COLUMNS = {
    TokenKind.ACTIVATION: "activation_token_digest",
    TokenKind.RESET: "reset_token_digest",
}

_ACCOUNT_COLUMNS = (
    "id",
    "email",
    "name",
    "password_hash",
    "active",
    "password_changed_at",
    "email_changed_at",
    "activation_token_digest",
    "activation_expires_at",
    "reset_token_digest",
    "reset_expires_at",
    "created_at",
    "updated_at",
    "version",
)


class PostgresStore:
    """Postgres-backed account store.

    Conditional updates are a single ``UPDATE ... WHERE version = %s`` so that
    several service instances can race on the same record safely.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("account store unavailable") from exc

    def ensure_schema(self) -> None:
        """Create the account tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # account records
    def create_account(self, account: Account) -> Account:
        email = normalize_email(account.email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, email, name, password_hash, active, password_changed_at,
                        created_at, updated_at, version
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 1)
                    RETURNING *
                    """,
                    (
                        account.id,
                        email,
                        account.name,
                        account.password_hash,
                        account.active,
                        account.password_changed_at,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
                self._insert_identities(conn, account.id, account.linked_identities)
        except errors.UniqueViolation as exc:
            raise self._constraint_from(exc) from exc
        return self._row_to_account(row, account.linked_identities)

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_one("SELECT * FROM account WHERE id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE lower(email) = %s", (normalize_email(email),)
        )

    def get_account_by_provider(
        self, provider: Provider, provider_id: str
    ) -> Optional[Account]:
        return self._fetch_one(
            "SELECT a.* FROM account_identity i JOIN account a ON a.id = i.account_id "
            "WHERE i.provider = %s AND i.provider_id = %s",
            (Provider(provider).value, provider_id),
        )

    def get_account_by_token_digest(
        self, kind: TokenKind, digest: str
    ) -> Optional[Account]:
        if not digest:
            return None
        query = sql.SQL("SELECT * FROM account WHERE {} = %s").format(
            sql.Identifier(_DIGEST_COLUMNS[TokenKind(kind)])
        )
        return self._fetch_one(query, (digest,))

    def update_account(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> Account:
        normalized = validate_changes(changes)
        identities = normalized.pop("linked_identities", None)
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in normalized
        ]
        assignments.append(sql.SQL("version = version + 1"))
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL(
            "UPDATE account SET {} WHERE id = %s AND version = %s RETURNING *"
        ).format(sql.SQL(", ").join(assignments))
        params = [*normalized.values(), account_id, expected_version]
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
                if row is None:
                    exists = conn.execute(
                        "SELECT 1 FROM account WHERE id = %s", (account_id,)
                    ).fetchone()
                    if exists is None:
                        raise ConstraintViolation(
                            "account not found", {"account_id": account_id}
                        )
                    raise StaleRecord(account_id, expected_version)
                if identities is not None:
                    conn.execute(
                        "DELETE FROM account_identity WHERE account_id = %s",
                        (account_id,),
                    )
                    self._insert_identities(conn, account_id, identities)
                else:
                    identities = self._load_identities(conn, account_id)
        except errors.UniqueViolation as exc:
            raise self._constraint_from(exc) from exc
        return self._row_to_account(row, identities)

    # helpers
    def _fetch_one(self, query: Any, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            if not row:
                return None
            identities = self._load_identities(conn, str(row["id"]))
        return self._row_to_account(row, identities)

    def _insert_identities(self, conn: Any, account_id: str, identities) -> None:
        for identity in identities:
            conn.execute(
                "INSERT INTO account_identity (account_id, provider, provider_id) "
                "VALUES (%s, %s, %s)",
                (account_id, identity.provider.value, identity.provider_id),
            )

    def _load_identities(self, conn: Any, account_id: str) -> tuple[LinkedIdentity, ...]:
        rows = conn.execute(
            "SELECT provider, provider_id FROM account_identity "
            "WHERE account_id = %s ORDER BY id",
            (account_id,),
        ).fetchall()
        return tuple(
            LinkedIdentity(Provider(r["provider"]), str(r["provider_id"])) for r in rows
        )

    @staticmethod
    def _constraint_from(exc: errors.UniqueViolation) -> ConstraintViolation:
        diag = getattr(exc, "diag", None)
        constraint = getattr(diag, "constraint_name", None) or ""
        if "email" in constraint:
            return ConstraintViolation("email already exists", {"field": "email"})
        if "provider" in constraint:
            return ConstraintViolation(
                "provider identity already linked", {"field": "provider_id"}
            )
        return ConstraintViolation("unique constraint violated", {"constraint": constraint})

    def _row_to_account(self, row: Any, identities) -> Account:
        values = {column: safe_row_value(row, column) for column in _ACCOUNT_COLUMNS}
        return Account(
            id=str(values["id"]),
            email=values["email"],
            name=values["name"] or "",
            password_hash=values["password_hash"],
            active=bool(values["active"]),
            password_changed_at=values["password_changed_at"],
            email_changed_at=values["email_changed_at"],
            activation_token_digest=values["activation_token_digest"],
            activation_expires_at=values["activation_expires_at"],
            reset_token_digest=values["reset_token_digest"],
            reset_expires_at=values["reset_expires_at"],
            linked_identities=tuple(identities or ()),
            created_at=values["created_at"] or datetime.now().astimezone(),
            updated_at=values["updated_at"] or datetime.now().astimezone(),
            version=int(values["version"] or 1),
        )
