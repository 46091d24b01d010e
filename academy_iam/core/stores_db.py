"""
PostgreSQL-backed identity record store (psycopg 3).

Every public method runs exactly one write statement (plus at most one
read), in autocommit mode, so each call is atomic on its own. The table's
unique constraints on ``email`` and ``firebase_uid`` decide races between
concurrent inserts; a violation surfaces as ``Conflict``.

Failure mapping:
- SQLSTATE 23505 (UniqueViolation) -> Conflict
- other integrity errors (check / not-null) and data errors (bad date,
  value too long) -> ValidationError
- connection loss, statement timeout and any other driver error ->
  RecordStoreUnavailable. The statement may or may not have been applied;
  callers treat the outcome as unknown.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional
import logging
import re

import psycopg
from psycopg import sql
from psycopg.errors import IntegrityError, UniqueViolation
from psycopg.rows import dict_row

from .errors import Conflict, NotFound, RecordStoreUnavailable, ValidationError
from .models import MUTABLE_FIELDS, Identity, Role

logger = logging.getLogger(__name__)

TABLE_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$')

# Identity attribute -> userstbl column
COLUMN_FOR_FIELD = {
    "external_id": "firebase_uid",
    "email": "email",
    "full_name": "full_name",
    "role": "user_type",
    "branch_id": "branch_id",
    "gender": "gender",
    "date_of_birth": "date_of_birth",
    "phone_number": "phone_number",
    "level_tag": "level_tag",
    "profile_picture_url": "profile_picture_url",
}
INSERT_FIELDS = tuple(COLUMN_FOR_FIELD)


def _db_value(value):
    return value.value if isinstance(value, Role) else value


class PostgresIdentityStore:
    """Identity record store over the ``userstbl`` table.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string.
    table:
        Table name, optionally schema-qualified. Defaults to `public.userstbl`.
    connect:
        Connection factory with the signature of ``psycopg.connect``.
        Tests pass a fake here.
    """

    def __init__(
        self,
        dsn: str,
        table: str = "public.userstbl",
        *,
        connect_timeout: int = 5,
        statement_timeout_ms: int = 5000,
        connect: Optional[Callable] = None,
    ) -> None:
        if not dsn:
            raise RuntimeError("No database DSN provided for PostgresIdentityStore")
        if not TABLE_PATTERN.match(table or ""):
            raise ValueError("Invalid table name")
        self._dsn = dsn
        self._table = sql.Identifier(*table.split("."))
        self._connect_timeout = connect_timeout
        self._statement_timeout_ms = statement_timeout_ms
        self._connect = connect or psycopg.connect

    @contextmanager
    def _cursor(self) -> Iterator:
        try:
            with self._connect(
                self._dsn,
                autocommit=True,
                row_factory=dict_row,
                connect_timeout=self._connect_timeout,
                options=f"-c statement_timeout={self._statement_timeout_ms}",
            ) as conn:
                with conn.cursor() as cur:
                    yield cur
        except UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if "firebase" in constraint:
                raise Conflict("Firebase UID already linked to another user")
            raise Conflict("Email already exists")
        except IntegrityError as exc:
            raise ValidationError(f"Record rejected by database constraint: {exc}")
        except psycopg.DataError as exc:
            logger.info("Record rejected by database: %s", exc)
            raise ValidationError("Record rejected by database: invalid field value")
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            logger.warning("Record store unavailable: %s", exc)
            raise RecordStoreUnavailable("Record store unavailable; outcome unknown")
        except psycopg.Error as exc:
            logger.error("Unexpected record store error: %s", exc)
            raise RecordStoreUnavailable("Record store error; outcome unknown")

    def _returning(self, cur) -> Optional[Identity]:
        row = cur.fetchone()
        return Identity.from_row(row) if row else None

    def _assignments(self, fields: dict) -> tuple[sql.Composed, list]:
        unknown = set(fields) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        parts = [
            sql.SQL("{} = %s").format(sql.Identifier(COLUMN_FOR_FIELD[name]))
            for name in fields
        ]
        return sql.SQL(", ").join(parts), [_db_value(v) for v in fields.values()]

    # Lookups ---------------------------------------------------------------
    def find_by_external_id_or_email(self, external_id: Optional[str], email: Optional[str]) -> Optional[Identity]:
        stmt = sql.SQL(
            "select * from {} where firebase_uid = %s or lower(email) = lower(%s) "
            "order by case when firebase_uid = %s then 0 else 1 end limit 1"
        ).format(self._table)
        with self._cursor() as cur:
            cur.execute(stmt, (external_id, email, external_id))
            return self._returning(cur)

    def find_by_external_id(self, external_id: str) -> Optional[Identity]:
        stmt = sql.SQL("select * from {} where firebase_uid = %s").format(self._table)
        with self._cursor() as cur:
            cur.execute(stmt, (external_id,))
            return self._returning(cur)

    def get(self, user_id: int) -> Optional[Identity]:
        stmt = sql.SQL("select * from {} where user_id = %s").format(self._table)
        with self._cursor() as cur:
            cur.execute(stmt, (user_id,))
            return self._returning(cur)

    def list(self, branch_id: Optional[int] = None, role: Optional[Role] = None, limit: int = 20, offset: int = 0) -> tuple[list[Identity], int]:
        conditions = []
        params: list = []
        if branch_id is not None:
            conditions.append(sql.SQL("branch_id = %s"))
            params.append(branch_id)
        if role is not None:
            conditions.append(sql.SQL("user_type = %s"))
            params.append(_db_value(role))
        where = sql.SQL(" where ") + sql.SQL(" and ").join(conditions) if conditions else sql.SQL("")

        count_stmt = sql.SQL("select count(*) as total from {}{}").format(self._table, where)
        page_stmt = sql.SQL("select * from {}{} order by user_id limit %s offset %s").format(self._table, where)
        with self._cursor() as cur:
            cur.execute(count_stmt, params)
            total = int(cur.fetchone()["total"])
            cur.execute(page_stmt, params + [limit, offset])
            rows = [Identity.from_row(r) for r in cur.fetchall()]
        return rows, total

    def list_external_ids(self) -> set[str]:
        stmt = sql.SQL("select firebase_uid from {} where firebase_uid is not null").format(self._table)
        with self._cursor() as cur:
            cur.execute(stmt)
            return {r["firebase_uid"] for r in cur.fetchall()}

    def ping(self) -> bool:
        with self._cursor() as cur:
            cur.execute("select 1")
        return True

    # Writes ----------------------------------------------------------------
    def insert(self, identity: Identity) -> Identity:
        values = [_db_value(getattr(identity, name)) for name in INSERT_FIELDS]
        stmt = sql.SQL("insert into {} ({}) values ({}) returning *").format(
            self._table,
            sql.SQL(", ").join(sql.Identifier(COLUMN_FOR_FIELD[n]) for n in INSERT_FIELDS),
            sql.SQL(", ").join([sql.Placeholder()] * len(INSERT_FIELDS)),
        )
        with self._cursor() as cur:
            cur.execute(stmt, values)
            return self._returning(cur)

    def _update_where(self, column: str, key, fields: dict) -> Identity:
        if not fields:
            current = self.find_by_external_id(key) if column == "firebase_uid" else self.get(key)
            if current is None:
                raise NotFound("User not found")
            return current
        assignments, params = self._assignments(fields)
        stmt = sql.SQL("update {} set {} where {} = %s returning *").format(
            self._table, assignments, sql.Identifier(column)
        )
        with self._cursor() as cur:
            cur.execute(stmt, params + [key])
            row = self._returning(cur)
        if row is None:
            raise NotFound("User not found")
        return row

    def update(self, external_id: str, fields: dict) -> Identity:
        return self._update_where("firebase_uid", external_id, fields)

    def update_row(self, user_id: int, fields: dict) -> Identity:
        return self._update_where("user_id", user_id, fields)

    def link_external_id(self, user_id: int, external_id: str) -> Identity:
        stmt = sql.SQL(
            "update {} set firebase_uid = %s where user_id = %s and firebase_uid is null returning *"
        ).format(self._table)
        with self._cursor() as cur:
            cur.execute(stmt, (external_id, user_id))
            row = self._returning(cur)
        if row is not None:
            return row
        if self.get(user_id) is None:
            raise NotFound("User not found")
        raise Conflict("User already linked to a credential")

    def _delete_where(self, column: str, key) -> Identity:
        stmt = sql.SQL("delete from {} where {} = %s returning *").format(self._table, sql.Identifier(column))
        with self._cursor() as cur:
            cur.execute(stmt, (key,))
            row = self._returning(cur)
        if row is None:
            raise NotFound("User not found")
        return row

    def delete(self, external_id: str) -> Identity:
        return self._delete_where("firebase_uid", external_id)

    def delete_row(self, user_id: int) -> Identity:
        return self._delete_where("user_id", user_id)
