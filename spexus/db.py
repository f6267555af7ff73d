"""Database access layer for Spexus."""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .entities import format_reference, new_id

AnchorReconciler = Callable[[List[Dict[str, Any]]], List[Tuple[str, int, int, bool]]]

_ENTITY_TABLES = {
    "epics",
    "user_stories",
    "acceptance_criteria",
    "requirements",
    "steering_documents",
}

_DEFAULT_REQUIREMENT_TYPES = (
    ("Functional", "Behaviour the system must provide"),
    ("Non-Functional", "Quality attributes such as performance or security"),
    ("Business Rule", "Constraints imposed by the business domain"),
    ("Interface", "Integration points with external systems"),
    ("Data", "Data structures, retention and storage"),
)

_DEFAULT_RELATIONSHIP_TYPES = (
    ("depends_on", "Source requirement depends on the target"),
    ("blocks", "Source requirement blocks the target"),
    ("relates_to", "Requirements are related"),
    ("conflicts_with", "Requirements conflict with each other"),
    ("derives_from", "Source requirement is derived from the target"),
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DataAccess:
    """Lightweight data-access helper around the SQLite database."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def _transaction(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize_schema(self):
        """Ensure all required tables, columns, and indexes exist."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self._transaction() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    email TEXT,
                    role TEXT NOT NULL DEFAULT 'user',
                    token_hash TEXT UNIQUE,
                    created_at TEXT NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS reference_sequences (
                    prefix TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS epics (
                    id TEXT PRIMARY KEY,
                    reference_id TEXT UNIQUE NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'Backlog',
                    priority INTEGER NOT NULL,
                    creator_id TEXT NOT NULL,
                    assignee_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (creator_id) REFERENCES users (id)
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS user_stories (
                    id TEXT PRIMARY KEY,
                    reference_id TEXT UNIQUE NOT NULL,
                    epic_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'Backlog',
                    priority INTEGER NOT NULL,
                    creator_id TEXT NOT NULL,
                    assignee_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (epic_id) REFERENCES epics (id)
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS acceptance_criteria (
                    id TEXT PRIMARY KEY,
                    reference_id TEXT UNIQUE NOT NULL,
                    user_story_id TEXT NOT NULL,
                    author_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_story_id) REFERENCES user_stories (id)
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS requirement_types (
                    id TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    description TEXT
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS relationship_types (
                    id TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    description TEXT
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS requirements (
                    id TEXT PRIMARY KEY,
                    reference_id TEXT UNIQUE NOT NULL,
                    user_story_id TEXT NOT NULL,
                    acceptance_criteria_id TEXT,
                    type_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'Draft',
                    priority INTEGER NOT NULL,
                    creator_id TEXT NOT NULL,
                    assignee_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_story_id) REFERENCES user_stories (id),
                    FOREIGN KEY (acceptance_criteria_id) REFERENCES acceptance_criteria (id),
                    FOREIGN KEY (type_id) REFERENCES requirement_types (id)
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS requirement_relationships (
                    id TEXT PRIMARY KEY,
                    source_requirement_id TEXT NOT NULL,
                    target_requirement_id TEXT NOT NULL,
                    relationship_type_id TEXT NOT NULL,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (source_requirement_id, target_requirement_id, relationship_type_id),
                    FOREIGN KEY (source_requirement_id) REFERENCES requirements (id),
                    FOREIGN KEY (target_requirement_id) REFERENCES requirements (id),
                    FOREIGN KEY (relationship_type_id) REFERENCES relationship_types (id)
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS steering_documents (
                    id TEXT PRIMARY KEY,
                    reference_id TEXT UNIQUE NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    creator_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS epic_steering_documents (
                    epic_id TEXT NOT NULL,
                    steering_document_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (epic_id, steering_document_id),
                    FOREIGN KEY (epic_id) REFERENCES epics (id),
                    FOREIGN KEY (steering_document_id) REFERENCES steering_documents (id)
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS prompts (
                    id TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    content TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'assistant',
                    is_active INTEGER NOT NULL DEFAULT 0,
                    creator_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    parent_comment_id TEXT,
                    author_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    is_resolved INTEGER NOT NULL DEFAULT 0,
                    linked_text TEXT,
                    text_position_start INTEGER,
                    text_position_end INTEGER,
                    is_visible INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (parent_comment_id) REFERENCES comments (id)
                )
                """
            )

            # Backfill columns that might be missing in older installations
            self._ensure_column(
                cursor, "comments", "is_visible", "INTEGER NOT NULL DEFAULT 1"
            )
            self._ensure_column(cursor, "prompts", "role", "TEXT DEFAULT 'assistant'")

            # Helpful indexes for frequent lookups
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_stories_epic ON user_stories(epic_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_ac_user_story ON acceptance_criteria(user_story_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_requirements_user_story ON requirements(user_story_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_comments_entity ON comments(entity_type, entity_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_comments_parent ON comments(parent_comment_id)"
            )

            self._seed_types(cursor, "requirement_types", _DEFAULT_REQUIREMENT_TYPES)
            self._seed_types(cursor, "relationship_types", _DEFAULT_RELATIONSHIP_TYPES)

    @staticmethod
    def _ensure_column(
        cursor: sqlite3.Cursor, table: str, column: str, definition_suffix: str
    ) -> bool:
        cursor.execute(f"PRAGMA table_info({table})")
        columns = [row[1] for row in cursor.fetchall()]
        if column in columns:
            return False
        cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition_suffix}")
        return True

    @staticmethod
    def _seed_types(
        cursor: sqlite3.Cursor, table: str, rows: Iterable[Tuple[str, str]]
    ) -> None:
        for name, description in rows:
            cursor.execute(
                f"INSERT OR IGNORE INTO {table} (id, name, description) VALUES (?, ?, ?)",
                (new_id(), name, description),
            )

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in _ENTITY_TABLES:
            raise ValueError(f"Unknown entity table: {table}")

    @staticmethod
    def _next_reference(cursor: sqlite3.Cursor, prefix: str) -> str:
        cursor.execute(
            """
            INSERT INTO reference_sequences (prefix, value) VALUES (?, 1)
            ON CONFLICT(prefix) DO UPDATE SET value = value + 1
            """,
            (prefix,),
        )
        cursor.execute(
            "SELECT value FROM reference_sequences WHERE prefix = ?", (prefix,)
        )
        return format_reference(prefix, int(cursor.fetchone()[0]))

    # -- users -------------------------------------------------------------

    def create_user(
        self, username: str, email: Optional[str], role: str, token_hash: str
    ) -> Dict[str, Any]:
        record = {
            "id": new_id(),
            "username": username,
            "email": email,
            "role": role,
            "created_at": _now(),
        }
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, username, email, role, token_hash, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    username,
                    email,
                    role,
                    token_hash,
                    record["created_at"],
                ),
            )
        return record

    def _fetch_user_where(self, column: str, value: Any) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT id, username, email, role, created_at FROM users WHERE {column} = ?",
                (value,),
            ).fetchone()
        return dict(row) if row else None

    def fetch_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_user_where("id", user_id)

    def fetch_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        return self._fetch_user_where("username", username)

    def fetch_user_by_token_hash(self, token_hash: str) -> Optional[Dict[str, Any]]:
        return self._fetch_user_where("token_hash", token_hash)

    def list_users(self) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id, username, email, role, created_at FROM users ORDER BY created_at"
            ).fetchall()
        return [dict(row) for row in rows]

    # -- hierarchy entities ------------------------------------------------

    def insert_entity(
        self, table: str, prefix: str, values: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Insert a referenced entity, allocating its id and reference id."""
        self._check_table(table)
        timestamp = _now()
        with self._transaction() as conn:
            cursor = conn.cursor()
            record = {
                "id": new_id(),
                "reference_id": self._next_reference(cursor, prefix),
                **values,
                "created_at": timestamp,
                "updated_at": timestamp,
            }
            columns = ", ".join(record)
            placeholders = ", ".join("?" for _ in record)
            cursor.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                list(record.values()),
            )
            row = cursor.execute(
                f"SELECT * FROM {table} WHERE id = ?", (record["id"],)
            ).fetchone()
        return dict(row)

    def fetch_entity(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (entity_id,)
            ).fetchone()
        return dict(row) if row else None

    def fetch_entity_by_reference(
        self, table: str, reference_id: str
    ) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE reference_id = ?", (reference_id,)
            ).fetchone()
        return dict(row) if row else None

    def update_entity(
        self,
        table: str,
        entity_id: str,
        changes: Dict[str, Any],
        *,
        entity_type: Optional[str] = None,
        reconcile: Optional[AnchorReconciler] = None,
    ) -> Optional[Dict[str, Any]]:
        """Apply ``changes`` and, when given, reconcile inline anchors atomically.

        ``reconcile`` receives the inline comments of the entity and returns
        ``(comment_id, start, end, is_visible)`` tuples to persist.
        """
        self._check_table(table)
        updates = dict(changes)
        updates["updated_at"] = _now()
        assignments = ", ".join(f"{column} = ?" for column in updates)

        with self._transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                [*updates.values(), entity_id],
            )
            if cursor.rowcount == 0:
                return None

            if reconcile is not None and entity_type is not None:
                inline = cursor.execute(
                    """
                    SELECT id, linked_text, text_position_start, text_position_end, is_visible
                    FROM comments
                    WHERE entity_type = ? AND entity_id = ? AND linked_text IS NOT NULL
                    """,
                    (entity_type, entity_id),
                ).fetchall()
                for comment_id, start, end, visible in reconcile(
                    [dict(row) for row in inline]
                ):
                    cursor.execute(
                        """
                        UPDATE comments
                        SET text_position_start = ?, text_position_end = ?, is_visible = ?
                        WHERE id = ?
                        """,
                        (start, end, int(visible), comment_id),
                    )

            row = cursor.execute(
                f"SELECT * FROM {table} WHERE id = ?", (entity_id,)
            ).fetchone()
        return dict(row)

    def list_entities(
        self,
        table: str,
        *,
        filters: Optional[Dict[str, Any]] = None,
        search: Optional[str] = None,
        search_columns: Sequence[str] = ("title", "description"),
        order_by: str = "created_at DESC",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return ``(rows, total_count)`` for a filtered, paginated query."""
        self._check_table(table)
        clauses: List[str] = []
        params: List[Any] = []

        for column, value in (filters or {}).items():
            if value is None:
                continue
            clauses.append(f"{column} = ?")
            params.append(value)

        if search:
            pattern = f"%{search.lower()}%"
            clauses.append(
                "("
                + " OR ".join(f"LOWER(COALESCE({col}, '')) LIKE ?" for col in search_columns)
                + ")"
            )
            params.extend(pattern for _ in search_columns)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM {table}{where}", params
            ).fetchone()[0]

            query = f"SELECT * FROM {table}{where} ORDER BY {order_by}"
            page_params = list(params)
            if limit is not None:
                query += " LIMIT ? OFFSET ?"
                page_params.extend([limit, offset])
            rows = conn.execute(query, page_params).fetchall()

        return [dict(row) for row in rows], int(total)

    # -- types and relationships -------------------------------------------

    def list_types(self, table: str) -> List[Dict[str, Any]]:
        if table not in {"requirement_types", "relationship_types"}:
            raise ValueError(f"Unknown type table: {table}")
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT id, name, description FROM {table} ORDER BY name"
            ).fetchall()
        return [dict(row) for row in rows]

    def fetch_type(self, table: str, type_id: str) -> Optional[Dict[str, Any]]:
        return next((row for row in self.list_types(table) if row["id"] == type_id), None)

    def insert_relationship(
        self, source_id: str, target_id: str, type_id: str, created_by: str
    ) -> Optional[Dict[str, Any]]:
        """Insert a relationship; returns ``None`` when it already exists."""
        record = {
            "id": new_id(),
            "source_requirement_id": source_id,
            "target_requirement_id": target_id,
            "relationship_type_id": type_id,
            "created_by": created_by,
            "created_at": _now(),
        }
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO requirement_relationships
                    (id, source_requirement_id, target_requirement_id,
                     relationship_type_id, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                list(record.values()),
            )
            if cursor.rowcount == 0:
                return None
        return record

    def fetch_relationships(self, requirement_id: str) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT r.id, r.source_requirement_id, r.target_requirement_id,
                       r.relationship_type_id, t.name AS relationship_type,
                       r.created_by, r.created_at
                FROM requirement_relationships r
                JOIN relationship_types t ON t.id = r.relationship_type_id
                WHERE r.source_requirement_id = ? OR r.target_requirement_id = ?
                ORDER BY r.created_at
                """,
                (requirement_id, requirement_id),
            ).fetchall()
        return [dict(row) for row in rows]

    # -- steering document links -------------------------------------------

    def link_steering_document(self, epic_id: str, document_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO epic_steering_documents
                    (epic_id, steering_document_id, created_at)
                VALUES (?, ?, ?)
                """,
                (epic_id, document_id, _now()),
            )
            return cursor.rowcount > 0

    def unlink_steering_document(self, epic_id: str, document_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM epic_steering_documents WHERE epic_id = ? AND steering_document_id = ?",
                (epic_id, document_id),
            )
            return cursor.rowcount > 0

    def fetch_epic_steering_documents(self, epic_id: str) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT d.*
                FROM steering_documents d
                JOIN epic_steering_documents l ON l.steering_document_id = d.id
                WHERE l.epic_id = ?
                ORDER BY l.created_at
                """,
                (epic_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # -- prompts -----------------------------------------------------------

    def insert_prompt(self, values: Dict[str, Any]) -> Dict[str, Any]:
        timestamp = _now()
        record = {
            "id": new_id(),
            **values,
            "is_active": 0,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO prompts ({columns}) VALUES ({placeholders})",
                list(record.values()),
            )
        return self._prompt_row(record)

    @staticmethod
    def _prompt_row(row: Any) -> Dict[str, Any]:
        prompt = dict(row)
        prompt["is_active"] = bool(prompt.get("is_active"))
        return prompt

    def list_prompts(self) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM prompts ORDER BY name").fetchall()
        return [self._prompt_row(row) for row in rows]

    def fetch_prompt(self, column: str, value: Any) -> Optional[Dict[str, Any]]:
        if column not in {"id", "name"}:
            raise ValueError(f"Unsupported prompt lookup column: {column}")
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM prompts WHERE {column} = ?", (value,)
            ).fetchone()
        return self._prompt_row(row) if row else None

    def fetch_active_prompt(self) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM prompts WHERE is_active = 1 ORDER BY updated_at DESC LIMIT 1"
            ).fetchone()
        return self._prompt_row(row) if row else None

    def activate_prompt(self, prompt_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.cursor()
            cursor.execute("UPDATE prompts SET is_active = 0 WHERE is_active = 1")
            cursor.execute(
                "UPDATE prompts SET is_active = 1, updated_at = ? WHERE id = ?",
                (_now(), prompt_id),
            )
            return cursor.rowcount > 0

    # -- comments ----------------------------------------------------------

    @staticmethod
    def _comment_row(row: Any) -> Dict[str, Any]:
        comment = dict(row)
        comment["is_resolved"] = bool(comment["is_resolved"])
        comment["is_visible"] = bool(comment["is_visible"])
        return comment

    def insert_comment(self, values: Dict[str, Any]) -> Dict[str, Any]:
        timestamp = _now()
        record = {
            "id": new_id(),
            **values,
            "is_resolved": 0,
            "is_visible": 1,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO comments ({columns}) VALUES ({placeholders})",
                list(record.values()),
            )
        return self._comment_row(record)

    def fetch_comment(self, comment_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM comments WHERE id = ?", (comment_id,)
            ).fetchone()
        return self._comment_row(row) if row else None

    def update_comment(self, comment_id: str, changes: Dict[str, Any]) -> bool:
        updates = dict(changes)
        updates["updated_at"] = _now()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE comments SET {assignments} WHERE id = ?",
                [*updates.values(), comment_id],
            )
            return cursor.rowcount > 0

    def delete_comment(self, comment_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
            return cursor.rowcount > 0

    def count_replies(self, comment_id: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM comments WHERE parent_comment_id = ?",
                (comment_id,),
            ).fetchone()
        return int(row[0])

    def fetch_comments(
        self, entity_type: str, entity_id: str, *, inline_only: bool = False
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM comments WHERE entity_type = ? AND entity_id = ?"
        if inline_only:
            query += " AND linked_text IS NOT NULL"
        query += " ORDER BY created_at, rowid"
        with self._transaction() as conn:
            rows = conn.execute(query, (entity_type, entity_id)).fetchall()
        return [self._comment_row(row) for row in rows]
