"""SQLite-backed persistence for users, classifications and operating hours."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import DuplicateDriverError, DuplicateEmailError, DuplicateError
from .models import Category, Classification, Group, OperatingHour, Role, User

logger = logging.getLogger("kartapi.database")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Database:
    """Persistence for the venue data, opened per operation.

    A single instance is shared by the whole process. Every call opens its own
    SQLite connection, so a failed or closed connection is replaced on the next
    operation without any cached state to invalidate.
    """

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'USER',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS classifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    category TEXT NOT NULL,
                    driver_name TEXT NOT NULL,
                    points REAL NOT NULL,
                    position INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (category, driver_name)
                );

                CREATE TABLE IF NOT EXISTS operating_hours (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    "group" TEXT NOT NULL,
                    slot INTEGER NOT NULL,
                    label TEXT NOT NULL,
                    visible INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE ("group", slot)
                );

                CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);
                CREATE INDEX IF NOT EXISTS idx_classifications_rank
                    ON classifications(category, points DESC);
                CREATE INDEX IF NOT EXISTS idx_operating_hours_visible ON operating_hours(visible);
                """
            )

    def ping(self) -> bool:
        """Return ``True`` when the database answers a trivial query."""

        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            logger.exception("Database ping failed for %s", self._path)
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def create_user(self, name: str, email: str, password_hash: str, role: Role) -> User:
        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (name, email, password_hash, role, is_active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 1, ?, ?)
                    """,
                    (name, normalize_email(email), password_hash, role.value, now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateEmailError() from exc
            user_id = cursor.lastrowid

        user = self.get_user(user_id)
        if user is None:  # pragma: no cover - row vanished between statements
            raise RuntimeError("Failed to load user after creation")
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        credentials = self.get_user_credentials(email)
        return credentials[0] if credentials else None

    def get_user_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        """Return the user and its stored password hash for ``email``."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (normalize_email(email),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row), str(row["password_hash"])

    def email_in_use(self, email: str, *, exclude_id: Optional[int] = None) -> bool:
        query = "SELECT 1 FROM users WHERE email = ?"
        params: List[object] = [normalize_email(email)]
        if exclude_id is not None:
            query += " AND id != ?"
            params.append(exclude_id)
        with self._connect() as conn:
            return conn.execute(query, params).fetchone() is not None

    def has_role(self, role: Role) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM users WHERE role = ? LIMIT 1", (role.value,)).fetchone()
        return row is not None

    def list_users(self, *, active_only: bool = True, offset: int = 0, limit: int = 10) -> List[User]:
        where = "WHERE is_active = 1" if active_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM users {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users(self, *, active_only: bool = True) -> int:
        where = "WHERE is_active = 1" if active_only else ""
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM users {where}").fetchone()
        return int(row[0])

    def update_user(self, user_id: int, **fields: object) -> Optional[User]:
        allowed = ("name", "email", "password_hash", "role", "is_active")
        updates: List[str] = []
        values: List[object] = []
        for column in allowed:
            if column not in fields or fields[column] is None:
                continue
            value = fields[column]
            if column == "email":
                value = normalize_email(str(value))
            elif column == "role":
                value = Role(value).value
            elif column == "is_active":
                value = int(bool(value))
            updates.append(f"{column} = ?")
            values.append(value)

        if not updates:
            return self.get_user(user_id)

        updates.append("updated_at = ?")
        values.append(_serialize_datetime(_current_timestamp()))
        values.append(user_id)

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE users SET {', '.join(updates)} WHERE id = ?",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateEmailError() from exc
            if cursor.rowcount == 0:
                return None

        return self.get_user(user_id)

    # ------------------------------------------------------------------
    # Classifications
    # ------------------------------------------------------------------
    def insert_classification(
        self,
        category: Category,
        driver_name: str,
        points: float,
        position: int,
    ) -> Classification:
        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO classifications (category, driver_name, points, position, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (Category(category).value, driver_name, float(points), position, now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateDriverError() from exc
            classification_id = cursor.lastrowid

        created = self.get_classification(classification_id)
        if created is None:  # pragma: no cover - row vanished between statements
            raise RuntimeError("Failed to load classification after creation")
        return created

    def get_classification(self, classification_id: int) -> Optional[Classification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM classifications WHERE id = ?",
                (classification_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_classification(row)

    def find_classification(
        self,
        category: Category,
        driver_name: str,
        *,
        exclude_id: Optional[int] = None,
    ) -> Optional[Classification]:
        query = "SELECT * FROM classifications WHERE category = ? AND driver_name = ?"
        params: List[object] = [Category(category).value, driver_name]
        if exclude_id is not None:
            query += " AND id != ?"
            params.append(exclude_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_classification(row)

    def update_classification(self, classification_id: int, **fields: object) -> Optional[Classification]:
        allowed = ("category", "driver_name", "points", "position")
        updates: List[str] = []
        values: List[object] = []
        for column in allowed:
            if column not in fields or fields[column] is None:
                continue
            value = fields[column]
            if column == "category":
                value = Category(value).value
            elif column == "points":
                value = float(value)  # type: ignore[arg-type]
            updates.append(f"{column} = ?")
            values.append(value)

        if not updates:
            return self.get_classification(classification_id)

        updates.append("updated_at = ?")
        values.append(_serialize_datetime(_current_timestamp()))
        values.append(classification_id)

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE classifications SET {', '.join(updates)} WHERE id = ?",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateDriverError() from exc
            if cursor.rowcount == 0:
                return None

        return self.get_classification(classification_id)

    def delete_classification(self, classification_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM classifications WHERE id = ?",
                (classification_id,),
            )
            return cursor.rowcount > 0

    def delete_classifications(self, classification_ids: Iterable[int]) -> int:
        ids = list(classification_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM classifications WHERE id IN ({placeholders})",
                ids,
            )
            return cursor.rowcount

    def count_higher_points(
        self,
        category: Category,
        points: float,
        *,
        exclude_id: Optional[int] = None,
    ) -> int:
        query = "SELECT COUNT(*) FROM classifications WHERE category = ? AND points > ?"
        params: List[object] = [Category(category).value, float(points)]
        if exclude_id is not None:
            query += " AND id != ?"
            params.append(exclude_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row[0])

    def list_category_by_points(self, category: Category) -> List[Classification]:
        """Return a category ordered by points descending, oldest entry first on ties."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM classifications WHERE category = ? ORDER BY points DESC, id ASC",
                (Category(category).value,),
            ).fetchall()
        return [self._row_to_classification(row) for row in rows]

    def list_category_by_position(self, category: Category) -> List[Classification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM classifications WHERE category = ? ORDER BY position ASC, id ASC",
                (Category(category).value,),
            ).fetchall()
        return [self._row_to_classification(row) for row in rows]

    def list_classifications(self) -> List[Classification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM classifications ORDER BY category ASC, position ASC, id ASC"
            ).fetchall()
        return [self._row_to_classification(row) for row in rows]

    def set_positions(self, positions: Sequence[Tuple[int, int]]) -> None:
        """Persist ``(classification_id, position)`` pairs in a single transaction."""

        if not positions:
            return
        with self._connect() as conn:
            conn.executemany(
                "UPDATE classifications SET position = ? WHERE id = ?",
                [(position, classification_id) for classification_id, position in positions],
            )

    def query_classifications(
        self,
        *,
        category: Optional[Category] = None,
        driver_name: Optional[str] = None,
        min_points: Optional[float] = None,
        max_points: Optional[float] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Classification], int]:
        """Filter classifications and return one page plus the total match count."""

        clauses: List[str] = []
        params: List[object] = []
        if category is not None:
            clauses.append("category = ?")
            params.append(Category(category).value)
        if driver_name:
            clauses.append("instr(casefold(driver_name), ?) > 0")
            params.append(driver_name.casefold())
        if min_points is not None:
            clauses.append("points >= ?")
            params.append(float(min_points))
        if max_points is not None:
            clauses.append("points <= ?")
            params.append(float(max_points))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            total = int(conn.execute(f"SELECT COUNT(*) FROM classifications {where}", params).fetchone()[0])
            rows = conn.execute(
                f"""
                SELECT * FROM classifications {where}
                ORDER BY category ASC, position ASC, id ASC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_classification(row) for row in rows], total

    # ------------------------------------------------------------------
    # Operating hours
    # ------------------------------------------------------------------
    def insert_operating_hour(self, group: Group, slot: int, label: str, visible: bool = True) -> OperatingHour:
        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO operating_hours ("group", slot, label, visible, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (Group(group).value, slot, label, int(bool(visible)), now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateError(f"Slot {slot} already exists in group {Group(group).value}") from exc
            hour_id = cursor.lastrowid

        created = self.get_operating_hour(hour_id)
        if created is None:  # pragma: no cover - row vanished between statements
            raise RuntimeError("Failed to load operating hour after creation")
        return created

    def get_operating_hour(self, hour_id: int) -> Optional[OperatingHour]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM operating_hours WHERE id = ?", (hour_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_operating_hour(row)

    def list_operating_hours(
        self,
        *,
        group: Optional[Group] = None,
        visible_only: bool = False,
    ) -> List[OperatingHour]:
        clauses: List[str] = []
        params: List[object] = []
        if group is not None:
            clauses.append('"group" = ?')
            params.append(Group(group).value)
        if visible_only:
            clauses.append("visible = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f'SELECT * FROM operating_hours {where} ORDER BY "group" ASC, slot ASC',
                params,
            ).fetchall()
        return [self._row_to_operating_hour(row) for row in rows]

    def count_operating_hours(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM operating_hours").fetchone()
        return int(row[0])

    def clear_operating_hours(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM operating_hours")

    def update_operating_hour(
        self,
        hour_id: int,
        *,
        label: Optional[str] = None,
        visible: Optional[bool] = None,
    ) -> Optional[OperatingHour]:
        updates: List[str] = []
        values: List[object] = []
        if label is not None:
            updates.append("label = ?")
            values.append(label)
        if visible is not None:
            updates.append("visible = ?")
            values.append(int(bool(visible)))

        if not updates:
            return self.get_operating_hour(hour_id)

        updates.append("updated_at = ?")
        values.append(_serialize_datetime(_current_timestamp()))
        values.append(hour_id)

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE operating_hours SET {', '.join(updates)} WHERE id = ?",
                values,
            )
            if cursor.rowcount == 0:
                return None

        return self.get_operating_hour(hour_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            name=str(row["name"]),
            email=str(row["email"]),
            role=Role(row["role"]),
            is_active=bool(row["is_active"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_classification(self, row: sqlite3.Row) -> Classification:
        return Classification(
            id=int(row["id"]),
            category=Category(row["category"]),
            driver_name=str(row["driver_name"]),
            points=float(row["points"]),
            position=int(row["position"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_operating_hour(self, row: sqlite3.Row) -> OperatingHour:
        return OperatingHour(
            id=int(row["id"]),
            group=Group(row["group"]),
            slot=int(row["slot"]),
            label=str(row["label"]),
            visible=bool(row["visible"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def status(self) -> Dict[str, object]:
        """Connectivity summary reported by the health endpoint."""

        connected = self.ping()
        return {
            "status": "Connected" if connected else "Disconnected",
            "name": self._path.name,
        }


__all__ = ["Database", "normalize_email"]
