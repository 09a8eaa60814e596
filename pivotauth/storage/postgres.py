from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from pivotauth.logging import get_logger
from pivotauth.storage.errors import ConstraintViolation, StoreUnavailable, WriteConflict
from pivotauth.storage.models import (
    MUTABLE_ACCOUNT_FIELDS,
    PIVOT_EPOCH,
    Account,
    PasswordResetRecord,
    normalize_identifier,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        status TEXT NOT NULL DEFAULT 'active',
        password_hash TEXT,
        password_algo TEXT,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        failed_login_window_start TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        security_pivot TIMESTAMPTZ NOT NULL DEFAULT 'epoch',
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        mfa_recovery_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
        version BIGINT NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ,
        meta JSONB,
        UNIQUE (identifier, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_password_reset (
        token_hash TEXT PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
)

_JSON_COLUMNS = {"mfa_recovery_codes", "meta"}


class PostgresStore:
    """Credential store backed by Postgres.

    Compare-and-set writes are a single ``UPDATE ... WHERE version = %s``
    so concurrent engines never overwrite each other's counter changes.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("credential_store_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _account_from_row(row: Mapping[str, Any]) -> Account:
        codes = row.get("mfa_recovery_codes") or []
        if isinstance(codes, str):
            codes = json.loads(codes)
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return Account(
            id=str(row["id"]),
            identifier=row["identifier"],
            role=row.get("role", "member"),
            status=row.get("status", "active"),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            failed_login_window_start=row.get("failed_login_window_start"),
            locked_until=row.get("locked_until"),
            security_pivot=row.get("security_pivot") or PIVOT_EPOCH,
            mfa_enabled=bool(row.get("mfa_enabled")),
            mfa_secret=row.get("mfa_secret"),
            mfa_recovery_codes=list(codes),
            version=row.get("version", 1),
            created_at=row.get("created_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
            meta=meta,
        )

    @staticmethod
    def _reset_from_row(row: Mapping[str, Any]) -> PasswordResetRecord:
        return PasswordResetRecord(
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            used_at=row.get("used_at"),
        )

    def create_account(
        self,
        identifier: str,
        *,
        role: str = "member",
        status: str = "active",
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Account:
        normalized = normalize_identifier(identifier)
        if not normalized:
            raise ConstraintViolation("identifier required", {"field": "identifier"})
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_account (id, identifier, role, status, password_hash, password_algo, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalized,
                        role,
                        status,
                        password_hash,
                        password_algo,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier already exists", {"field": "identifier"})
        return self._account_from_row(row)

    def find_by_identifier(
        self, identifier: str, *, role: Optional[str] = None
    ) -> Optional[Account]:
        normalized = normalize_identifier(identifier)
        with self._connect() as conn:
            if role is None:
                row = conn.execute(
                    "SELECT * FROM auth_account WHERE identifier = %s ORDER BY created_at LIMIT 1",
                    (normalized,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM auth_account WHERE identifier = %s AND role = %s",
                    (normalized, role),
                ).fetchone()
        return self._account_from_row(row) if row else None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Account:
        unknown = set(changes) - MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        # Column names come from the whitelist above, never from callers
        assignments = []
        params: list[Any] = []
        for name in sorted(changes):
            value = changes[name]
            if name in _JSON_COLUMNS:
                value = json.dumps(list(value or []) if name == "mfa_recovery_codes" else value)
            assignments.append(f"{name} = %s")
            params.append(value)
        assignments.append("version = version + 1")
        query = f"UPDATE auth_account SET {', '.join(assignments)} WHERE id = %s"
        params.append(account_id)
        if expected_version is not None:
            query += " AND version = %s"
            params.append(expected_version)
        query += " RETURNING *"
        with self._connect() as conn, conn.transaction():
            row = conn.execute(query, tuple(params)).fetchone()
            if row:
                return self._account_from_row(row)
            current = conn.execute(
                "SELECT version FROM auth_account WHERE id = %s", (account_id,)
            ).fetchone()
        if not current:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        raise WriteConflict(account_id, expected_version or 0, current["version"])

    def create_reset_record(self, record: PasswordResetRecord) -> PasswordResetRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_password_reset (token_hash, account_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token_hash, record.account_id, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for reset", {"account_id": record.account_id}
            )
        return record

    def get_reset_record(self, token_hash: str) -> Optional[PasswordResetRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_password_reset WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def mark_reset_record_used(self, token_hash: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_password_reset SET used_at = %s
                WHERE token_hash = %s AND used_at IS NULL
                RETURNING token_hash
                """,
                (used_at, token_hash),
            ).fetchone()
        return row is not None


__all__ = ["PostgresStore"]
