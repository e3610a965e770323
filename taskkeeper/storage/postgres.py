from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskkeeper.logging import get_logger
from taskkeeper.service.query import TaskQuery
from taskkeeper.storage.errors import ConstraintViolation
from taskkeeper.storage.models import Task, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        avatar BYTEA,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        seq BIGSERIAL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_token_user_idx ON user_token (user_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS task (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        description TEXT NOT NULL,
        completed BOOLEAN NOT NULL DEFAULT FALSE,
        seq BIGSERIAL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_owner_idx ON task (owner_id, seq)",
)

# TaskQuery.sort_field -> column; anything else sorts by insertion order
_TASK_SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "description": "description",
    "completed": "completed",
}

_USER_COLUMNS = {"name", "email"}
_TASK_COLUMNS = {"description", "completed"}


def build_task_select(query: TaskQuery) -> tuple[str, list[Any]]:
    """Render a parameterised SELECT for ``query``.

    Only column names from the allow-list are interpolated; every client
    value travels as a bound parameter.
    """
    clauses = ["owner_id = %s"]
    params: list[Any] = [query.owner_id]
    if query.completed is not None:
        clauses.append("completed = %s")
        params.append(query.completed)
    column = _TASK_SORT_COLUMNS.get(query.sort_field or "")
    if column:
        direction = "DESC" if query.descending else "ASC"
        order = f"{column} {direction}, seq {direction}"
    else:
        order = "seq ASC"
    sql = (
        "SELECT * FROM task WHERE "
        + " AND ".join(clauses)
        + f" ORDER BY {order} LIMIT %s OFFSET %s"
    )
    params.extend([query.limit, query.skip])
    return sql, params


class PostgresStore:
    """Postgres-backed store for users, their session tokens and tasks."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict, tokens: Optional[List[str]] = None) -> User:
        avatar = row.get("avatar")
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            tokens=list(tokens or []),
            avatar=bytes(avatar) if avatar is not None else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _task_from_row(row: dict) -> Task:
        return Task(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            description=row["description"],
            completed=bool(row["completed"]),
            seq=int(row["seq"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load_tokens(self, conn, user_id: str) -> List[str]:
        rows = conn.execute(
            "SELECT token FROM user_token WHERE user_id = %s ORDER BY seq",
            (user_id,),
        ).fetchall()
        return [str(r["token"]) for r in rows]

    # users
    def create_user(self, name: str, email: str) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_user (id, name, email) VALUES (%s, %s, %s) RETURNING *",
                    (user_id, name, email),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._load_tokens(conn, user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._load_tokens(conn, str(row["id"])))

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        assignments = [f"{column} = %s" for column in fields]
        assignments.append("updated_at = now()")
        params = [*fields.values(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
                if not row:
                    return None
                return self._user_from_row(row, self._load_tokens(conn, user_id))
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return row is not None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def set_avatar(self, user_id: str, avatar: Optional[bytes]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET avatar = %s, updated_at = now() WHERE id = %s",
                (avatar, user_id),
            )
            return cur.rowcount > 0

    def get_avatar(self, user_id: str) -> Optional[bytes]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT avatar FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row or row["avatar"] is None:
            return None
        return bytes(row["avatar"])

    # session tokens, one row each so append/remove never race
    def add_user_token(self, user_id: str, token: str) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO user_token (token, user_id) VALUES (%s, %s) ON CONFLICT (token) DO NOTHING",
                    (token, user_id),
                )
        except errors.ForeignKeyViolation:
            return False
        return True

    def remove_user_token(self, user_id: str, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_token WHERE user_id = %s AND token = %s",
                (user_id, token),
            )
            return cur.rowcount > 0

    def clear_user_tokens(self, user_id: str, *, keep: Optional[str] = None) -> int:
        with self._connect() as conn:
            if keep is None:
                cur = conn.execute(
                    "DELETE FROM user_token WHERE user_id = %s", (user_id,)
                )
            else:
                cur = conn.execute(
                    "DELETE FROM user_token WHERE user_id = %s AND token <> %s",
                    (user_id, keep),
                )
            return cur.rowcount

    def has_user_token(self, user_id: str, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM user_token WHERE user_id = %s AND token = %s",
                (user_id, token),
            ).fetchone()
        return row is not None

    # tasks
    def create_task(
        self, owner_id: str, description: str, completed: bool = False
    ) -> Task:
        task_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO task (id, owner_id, description, completed)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (task_id, owner_id, description, completed),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner not found", {"field": "owner"})
        return self._task_from_row(row)

    def get_task(self, task_id: str, owner_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task WHERE id = %s AND owner_id = %s",
                (task_id, owner_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def list_tasks(self, query: TaskQuery) -> List[Task]:
        sql, params = build_task_select(query)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._task_from_row(r) for r in rows]

    def update_task(
        self, task_id: str, owner_id: str, fields: Dict[str, Any]
    ) -> Optional[Task]:
        unknown = set(fields) - _TASK_COLUMNS
        if unknown:
            raise ValueError(f"unsupported task fields: {sorted(unknown)}")
        assignments = [f"{column} = %s" for column in fields]
        assignments.append("updated_at = now()")
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE task SET {', '.join(assignments)} WHERE id = %s AND owner_id = %s RETURNING *",
                [*fields.values(), task_id, owner_id],
            ).fetchone()
        return self._task_from_row(row) if row else None

    def delete_task(self, task_id: str, owner_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM task WHERE id = %s AND owner_id = %s RETURNING *",
                (task_id, owner_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def delete_tasks_for_owner(self, owner_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM task WHERE owner_id = %s", (owner_id,))
            return cur.rowcount
