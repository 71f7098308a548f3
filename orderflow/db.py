# orderflow/db.py
import json
import logging
import threading
from contextlib import contextmanager
from typing import List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .config import Settings
from .errors import ConcurrentModification
from .store import Document, Write, matches

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
  collection TEXT NOT NULL,
  doc_id TEXT NOT NULL,
  version INTEGER NOT NULL,
  body JSONB NOT NULL,
  updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  PRIMARY KEY (collection, doc_id)
);
CREATE INDEX IF NOT EXISTS documents_body_idx ON documents USING GIN (body);
"""


def open_pool(settings: Settings) -> ConnectionPool:
    return ConnectionPool(
        conninfo=settings.database_url,
        min_size=settings.pool_min,
        max_size=settings.pool_max,
        kwargs={"autocommit": False},  # we manage transactions
        open=True,
    )


def fetch_all(conn, sql, params=None):
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params or ())
        return cur.fetchall()


def fetch_one(conn, sql, params=None):
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params or ())
        return cur.fetchone()


def execute(conn, sql, params=None):
    with conn.cursor() as cur:
        cur.execute(sql, params or ())


def _doc(row) -> Document:
    return Document(row["collection"], row["doc_id"], row["version"], row["body"])


class ListenSubscription:
    """LISTEN/NOTIFY consumer on its own autocommit connection."""

    def __init__(self, store: "PostgresStore", collection: str, poll_seconds: float = 1.0):
        self._store = store
        self.collection = collection
        self._poll_seconds = poll_seconds
        self._closed = threading.Event()
        self._conn = psycopg.connect(store.settings.database_url, autocommit=True)
        self._conn.execute(f"LISTEN {store.settings.notify_channel}")

    def _next(self, timeout: Optional[float]) -> Optional[Document]:
        for notify in self._conn.notifies(timeout=timeout, stop_after=1):
            payload = json.loads(notify.payload)
            if payload.get("collection") != self.collection:
                return None
            return self._store.get(self.collection, payload["doc_id"])
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Document]:
        if self._closed.is_set():
            return None
        return self._next(timeout)

    def __iter__(self):
        while not self._closed.is_set():
            doc = self._next(self._poll_seconds)
            if doc is not None:
                yield doc

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._conn.close()


class PostgresStore:
    """Versioned JSONB documents in one table, change feed over NOTIFY."""

    def __init__(self, settings: Settings, pool: Optional[ConnectionPool] = None):
        self.settings = settings
        self.pool = pool or open_pool(settings)

    @contextmanager
    def get_conn(self):
        with self.pool.connection() as conn:
            yield conn

    def ensure_schema(self) -> None:
        with self.get_conn() as conn:
            execute(conn, SCHEMA_SQL)
            conn.commit()

    def ping(self) -> bool:
        with self.get_conn() as conn:
            row = fetch_one(conn, "SELECT 1 AS ok")
            return row["ok"] == 1

    def close(self) -> None:
        self.pool.close()

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self.get_conn() as conn:
            row = fetch_one(conn,
                "SELECT collection, doc_id, version, body FROM documents WHERE collection=%s AND doc_id=%s",
                (collection, doc_id)
            )
            return _doc(row) if row else None

    def query(self, collection, match=None, predicate=None) -> List[Document]:
        with self.get_conn() as conn:
            if match:
                rows = fetch_all(conn, """
                    SELECT collection, doc_id, version, body FROM documents
                    WHERE collection=%s AND body @> %s
                """, (collection, Jsonb(match)))
            else:
                rows = fetch_all(conn,
                    "SELECT collection, doc_id, version, body FROM documents WHERE collection=%s",
                    (collection,)
                )
        docs = [_doc(r) for r in rows]
        # containment is looser than equality for nested values
        return [d for d in docs if matches(d.body, match) and (predicate is None or predicate(d.body))]

    def doc_ids(self, collection: str, prefix: str = "") -> List[str]:
        with self.get_conn() as conn:
            rows = fetch_all(conn,
                "SELECT doc_id FROM documents WHERE collection=%s AND doc_id LIKE %s",
                (collection, prefix.replace("%", r"\%").replace("_", r"\_") + "%")
            )
        return [r["doc_id"] for r in rows]

    def commit(self, writes: Sequence[Write]) -> List[int]:
        versions = []
        with self.get_conn() as conn:
            try:
                for w in writes:
                    if w.expected_version == 0:
                        row = fetch_one(conn, """
                            INSERT INTO documents(collection, doc_id, version, body)
                            VALUES (%s, %s, 1, %s)
                            ON CONFLICT (collection, doc_id) DO NOTHING
                            RETURNING version
                        """, (w.collection, w.doc_id, Jsonb(w.body)))
                    else:
                        row = fetch_one(conn, """
                            UPDATE documents
                            SET body = %s, version = version + 1, updated_at = NOW()
                            WHERE collection = %s AND doc_id = %s AND version = %s
                            RETURNING version
                        """, (Jsonb(w.body), w.collection, w.doc_id, w.expected_version))
                    if not row:
                        raise ConcurrentModification(w.collection, w.doc_id, w.expected_version)
                    versions.append(row["version"])
                    # delivered by postgres only once the transaction commits
                    execute(conn, "SELECT pg_notify(%s, %s)", (
                        self.settings.notify_channel,
                        json.dumps({"collection": w.collection, "doc_id": w.doc_id, "version": row["version"]}),
                    ))
                conn.commit()
            except ConcurrentModification as e:
                conn.rollback()
                logger.warning("commit rejected: %s", e.message)
                raise
            except Exception:
                conn.rollback()
                raise
        return versions

    def subscribe(self, collection: str) -> ListenSubscription:
        return ListenSubscription(self, collection)
