"""SQLite storage adapter.

Implements the core DocumentStore port on top of a single SQLite file. Each
collection is a table of JSON documents keyed by id, and equality filters are
evaluated with ``json_extract``.
"""

from __future__ import annotations

import json
import re
import sqlite3
from typing import Any, Iterable, Optional

from core.models import InsertResult

# Collections created up front; others are created on first use.
COLLECTIONS = (
    "sources",
    "ingested_sources",
    "messages",
    "interests",
    "notification_matches",
    "notification_subscriptions",
    "gtfs_stops",
)

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _checked_name(name: str, kind: str) -> str:
    if not _NAME_RE.match(name):
        raise ValueError(f"Invalid {kind} name: {name!r}")
    return name


class SQLiteDocumentStore:
    """Thin SQLite wrapper that satisfies the DocumentStore contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._known: set[str] = set()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the collection tables if they do not exist.

        Every table has the same shape:
        - id: document id (PRIMARY KEY), exposed as ``_id`` on reads
        - data: the document serialized as JSON text
        """

        with self._connect() as conn:
            for collection in COLLECTIONS:
                self._create(conn, collection)

    def _create(self, conn: sqlite3.Connection, collection: str) -> str:
        table = _checked_name(collection, "collection")
        if table not in self._known:
            conn.execute(f"CREATE TABLE IF NOT EXISTS {table} (id TEXT PRIMARY KEY, data TEXT NOT NULL)")
            self._known.add(table)
        return table

    @staticmethod
    def _where_clause(where: Optional[dict]) -> tuple[str, list[Any]]:
        if not where:
            return "", []
        clauses: list[str] = []
        params: list[Any] = []
        for key, value in where.items():
            if key == "_id":
                column = "id"
            else:
                column = f"json_extract(data, '$.{_checked_name(key, 'field')}')"
            if value is None:
                clauses.append(f"{column} IS NULL")
            elif isinstance(value, (list, tuple, set)):
                values = [int(item) if isinstance(item, bool) else item for item in value]
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                # JSON booleans come back from json_extract as 0/1.
                clauses.append(f"{column} = ?")
                params.append(int(value) if isinstance(value, bool) else value)
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> dict:
        document = json.loads(row["data"])
        document["_id"] = row["id"]
        return document

    @staticmethod
    def _dump(document: dict) -> str:
        data = {key: value for key, value in document.items() if key != "_id"}
        return json.dumps(data, ensure_ascii=False)

    def find_many(
        self,
        collection: str,
        where: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        clause, params = self._where_clause(where)
        with self._connect() as conn:
            table = self._create(conn, collection)
            sql = f"SELECT id, data FROM {table}{clause} ORDER BY rowid"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_document(row) for row in rows]

    def find_by_id(self, collection: str, document_id: str) -> Optional[dict]:
        with self._connect() as conn:
            table = self._create(conn, collection)
            row = conn.execute(f"SELECT id, data FROM {table} WHERE id = ?", (document_id,)).fetchone()
        return self._row_to_document(row) if row else None

    def insert_one(self, collection: str, document_id: str, document: dict) -> InsertResult:
        """Create the document only if the id is free."""

        with self._connect() as conn:
            table = self._create(conn, collection)
            try:
                conn.execute(
                    f"INSERT INTO {table} (id, data) VALUES (?, ?)",
                    (document_id, self._dump(document)),
                )
            except sqlite3.IntegrityError:
                return InsertResult.EXISTS
        return InsertResult.CREATED

    def update_one(self, collection: str, document_id: str, changes: dict) -> bool:
        """Shallow-merge ``changes`` into the stored document."""

        with self._connect() as conn:
            table = self._create(conn, collection)
            row = conn.execute(f"SELECT id, data FROM {table} WHERE id = ?", (document_id,)).fetchone()
            if row is None:
                return False
            document = json.loads(row["data"])
            document.update(changes)
            conn.execute(f"UPDATE {table} SET data = ? WHERE id = ?", (self._dump(document), document_id))
        return True

    def delete_many_by_ids(self, collection: str, document_ids: Iterable[str]) -> int:
        ids = list(document_ids)
        if not ids:
            return 0
        with self._connect() as conn:
            table = self._create(conn, collection)
            cur = conn.execute(
                f"DELETE FROM {table} WHERE id IN ({', '.join('?' for _ in ids)})",
                ids,
            )
            return cur.rowcount

    def count(self, collection: str, where: Optional[dict] = None) -> int:
        clause, params = self._where_clause(where)
        with self._connect() as conn:
            table = self._create(conn, collection)
            row = conn.execute(f"SELECT COUNT(*) AS total FROM {table}{clause}", params).fetchone()
        return int(row["total"])
