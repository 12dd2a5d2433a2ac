from __future__ import annotations

import functools
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from recipeshare.logging import get_logger
from recipeshare.storage.errors import ConstraintViolation
from recipeshare.storage.models import (
    OtpChallenge,
    Post,
    Role,
    Session,
    StoredFile,
    User,
    new_id,
    utcnow,
)

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "otp_code",
    "auth_session",
    "recipe_post",
    "recipe_file",
)


F = TypeVar("F", bound=Callable[..., Any])


def _unknown_when_malformed(default: Any) -> Callable[[F], F]:
    """Answer ``default`` when Postgres rejects an id that is not a UUID.

    Ids arrive from request bodies and paths. A malformed one cannot name an
    existing row, so it is treated like a missing one rather than a server error.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except errors.DataError as exc:
                self.logger.info(
                    "malformed_id_lookup", operation=func.__name__, error_type=type(exc).__name__
                )
                return default() if callable(default) else default

        return wrapper  # type: ignore[return-value]

    return decorator


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        name=row.get("name") or "",
        email=row["email"],
        role=Role(row.get("role", Role.USER.value)),
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_session(row: Dict[str, Any]) -> Session:
    user_id = row.get("user_id")
    return Session(
        id=row["id"],
        user_id=str(user_id) if user_id else None,
        created_at=row["created_at"],
        last_activity=row["last_activity"],
        expires_at=row["expires_at"],
        csrf_secret=row["csrf_secret"],
    )


class PostgresStore:
    """Postgres-backed store for accounts, one-time codes and sessions."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # users
    def create_user(self, name: str, email: str, role: Role = Role.USER) -> User:
        user = User(id=new_id(), name=name, email=email.strip().lower(), role=Role(role))
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, role, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user.id, user.name, user.email, user.role.value, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def create_user_with_password(
        self,
        name: str,
        email: str,
        role: Role,
        password_hash: str,
        password_algo: str,
    ) -> User:
        """Insert the account row and its credential in one transaction."""
        user = User(id=new_id(), name=name, email=email.strip().lower(), role=Role(role))
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO app_user (id, name, email, role, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (user.id, user.name, user.email, user.role.value, user.created_at),
                    )
                    conn.execute(
                        """
                        INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                        VALUES (%s, %s, %s)
                        """,
                        (user.id, password_hash, password_algo),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _row_to_user(row) if row else None

    @_unknown_when_malformed(None)
    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    @_unknown_when_malformed(False)
    def delete_user(self, user_id: str) -> bool:
        """Remove a user and everything they own in one transaction."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not row:
                    return False
                conn.execute("DELETE FROM recipe_file WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM recipe_post WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM otp_code WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
                conn.execute(
                    "DELETE FROM user_auth_credential WHERE user_id = %s", (user_id,)
                )
                result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
                return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    @_unknown_when_malformed(None)
    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # one-time codes
    def issue_otp(self, user_id: str, code: str, expires_at: datetime) -> OtpChallenge:
        challenge = OtpChallenge(
            id=new_id(), user_id=user_id, code=code, expires_at=expires_at
        )
        with self._connect() as conn:
            with conn.transaction():
                # Row lock on the owner serializes concurrent issues for one identity
                owner = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not owner:
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                conn.execute(
                    "UPDATE otp_code SET consumed = TRUE WHERE user_id = %s AND consumed = FALSE",
                    (user_id,),
                )
                conn.execute(
                    """
                    INSERT INTO otp_code (id, user_id, code, expires_at, consumed, created_at)
                    VALUES (%s, %s, %s, %s, FALSE, %s)
                    """,
                    (
                        challenge.id,
                        user_id,
                        code,
                        challenge.expires_at,
                        challenge.created_at,
                    ),
                )
        return challenge

    @_unknown_when_malformed(False)
    def consume_otp(self, user_id: str, code: str, now: datetime) -> bool:
        # Concurrent UPDATEs on one row re-check the predicate after the first
        # commits, so only one caller ever sees a returned row.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_code SET consumed = TRUE
                WHERE user_id = %s AND code = %s AND consumed = FALSE AND expires_at > %s
                RETURNING id
                """,
                (user_id, code, now),
            ).fetchone()
        return row is not None

    def purge_otp_challenges(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_code WHERE consumed = TRUE OR expires_at <= %s", (now,)
            )
            return result.rowcount

    # sessions
    def _insert_session(self, conn, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO auth_session (id, user_id, created_at, last_activity, expires_at, csrf_secret)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.created_at,
                session.last_activity,
                session.expires_at,
                session.csrf_secret,
            ),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def rotate_session(self, old_session_id: Optional[str], session: Session) -> Session:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if old_session_id:
                        conn.execute(
                            "DELETE FROM auth_session WHERE id = %s", (old_session_id,)
                        )
                    self._insert_session(conn, session)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def touch_session(self, session_id: str, when: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET last_activity = GREATEST(last_activity, %s)
                WHERE id = %s
                RETURNING *
                """,
                (when, session_id),
            ).fetchone()
        return _row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # content owned by users
    def create_post(self, user_id: str, title: str) -> Post:
        post = Post(id=new_id(), user_id=user_id, title=title)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO recipe_post (id, user_id, title, created_at) VALUES (%s, %s, %s, %s)",
                    (post.id, user_id, title, post.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return post

    @_unknown_when_malformed(list)
    def list_posts(self, user_id: Optional[str] = None) -> List[Post]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM recipe_post WHERE user_id = %s ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM recipe_post ORDER BY created_at DESC"
                ).fetchall()
        return [
            Post(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                title=row["title"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def create_file(
        self, user_id: str, filename: str, post_id: Optional[str] = None
    ) -> StoredFile:
        stored = StoredFile(id=new_id(), user_id=user_id, filename=filename, post_id=post_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO recipe_file (id, user_id, post_id, filename, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (stored.id, user_id, post_id, filename, stored.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return stored

    @_unknown_when_malformed(list)
    def list_files(self, user_id: Optional[str] = None) -> List[StoredFile]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM recipe_file WHERE user_id = %s", (user_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM recipe_file").fetchall()
        return [
            StoredFile(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                filename=row["filename"],
                post_id=str(row["post_id"]) if row.get("post_id") else None,
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def close(self) -> None:
        self.pool.close()
