"""
Interaction Log - the append-only ledger of what happened in a project.

Think of it as a diary the sleep cycle reads from:
1. Agents and editor hooks write events (code fixes, preferences, errors...)
2. Nothing ever edits or deletes an event once written
3. Consolidation reads forward from its watermark and promotes events
   into the knowledge graph and the vector index

Storage is one SQLite file shared by all projects:
- `projects` - the shared registry (root path, last access, watermark)
- `events_<namespace>` - one events table per project

SQLite calls are blocking, so they run in a worker thread and are
serialized through an asyncio lock.
"""

import asyncio
import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from mnemo.errors import ClosedResourceError, InteractionLogConnectionError
from mnemo.logger import get_logger
from mnemo.models import (
    EventFilter,
    EventKind,
    Feedback,
    InteractionEvent,
    ProjectRecord,
    iso,
    parse_iso,
    utcnow,
)

logger = get_logger("mnemo.interaction_log")

_PROJECTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    namespace TEXT PRIMARY KEY,
    root_path TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT NOT NULL,
    last_consolidated_at TEXT,
    watermark INTEGER NOT NULL DEFAULT 0
)
"""

_EVENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    feedback INTEGER NOT NULL DEFAULT 0 CHECK (feedback IN (-1, 0, 1)),
    metadata TEXT NOT NULL DEFAULT '{{}}'
)
"""


class InteractionLog:
    """Append-only event log bound to one project namespace.

    Usage:
        log = InteractionLog(db_path, namespace)
        await log.connect()
        event_id = await log.record(EventKind.PREFERENCE, "Prefer async/await", Feedback.VALIDATED)
        events = await log.list(EventFilter(kinds=[EventKind.PREFERENCE]))
    """

    def __init__(self, db_path: Path, namespace: str):
        if not namespace.isalnum():
            # The key is interpolated into table names
            raise ValueError(f"namespace must be alphanumeric, got {namespace!r}")
        self.db_path = Path(db_path)
        self.namespace = namespace
        self.table = f"events_{namespace}"
        self.db: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._last_ts: Optional[datetime] = None
        self._closed = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def connect(self, root_path: Optional[str] = None) -> None:
        """Open the database and create this namespace's tables if needed.

        With root_path, the project is also registered (or touched) in the
        shared projects table as part of the handshake.
        """
        self._require_open()
        try:
            await asyncio.to_thread(self._connect_sync)
            if root_path is not None:
                await self.register_project(root_path)
        except (sqlite3.Error, OSError) as e:
            if self.db is not None:
                db, self.db = self.db, None
                db.close()
            raise InteractionLogConnectionError(f"cannot open {self.db_path}", e) from e
        logger.info(f"Interaction log ready ({self.table})")

    def _connect_sync(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = sqlite3.connect(str(self.db_path), check_same_thread=False)
        db.row_factory = sqlite3.Row
        try:
            db.execute(_PROJECTS_SCHEMA)
            db.execute(_EVENTS_SCHEMA.format(table=self.table))
            db.execute(f"CREATE INDEX IF NOT EXISTS idx_{self.table}_kind ON {self.table}(kind)")
            db.execute(f"CREATE INDEX IF NOT EXISTS idx_{self.table}_feedback ON {self.table}(feedback)")
            db.execute(f"CREATE INDEX IF NOT EXISTS idx_{self.table}_created ON {self.table}(created_at)")
            db.commit()

            # Pick up the newest timestamp so ids and timestamps keep
            # increasing together across restarts
            row = db.execute(f"SELECT MAX(created_at) FROM {self.table}").fetchone()
            self._last_ts = parse_iso(row[0]) if row and row[0] else None
        except sqlite3.Error:
            db.close()
            raise
        self.db = db

    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            if self.db is not None:
                db, self.db = self.db, None
                await asyncio.to_thread(db.close)

    @property
    def closed(self) -> bool:
        return self._closed

    def _require_open(self) -> None:
        if self._closed:
            raise ClosedResourceError(f"interaction log {self.table}")

    def _require_connected(self) -> sqlite3.Connection:
        self._require_open()
        if self.db is None:
            raise ClosedResourceError(f"interaction log {self.table} (not connected)")
        return self.db

    async def _run(self, fn, *args):
        """Run a blocking SQLite call in a worker thread, one at a time."""
        async with self._lock:
            db = self._require_connected()
            return await asyncio.to_thread(fn, db, *args)

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def record(
        self,
        kind,
        content: str,
        feedback=Feedback.NONE,
        metadata: Optional[dict] = None,
    ) -> int:
        """Append an event and return its id.

        Args:
            kind: EventKind or its string value ("code-fix", "preference", ...)
            content: Free text, must not be blank
            feedback: Feedback or -1/0/1
            metadata: JSON-serializable mapping with string keys

        Returns:
            The new event's id. Ids and timestamps both strictly increase.
        """
        kind = EventKind(kind)
        feedback = Feedback(feedback)
        if not isinstance(content, str) or not content.strip():
            raise ValueError("content must be a non-empty string")
        metadata = metadata or {}
        if not isinstance(metadata, dict) or not all(isinstance(k, str) for k in metadata):
            raise ValueError("metadata must be a mapping with string keys")
        try:
            metadata_json = json.dumps(metadata, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise ValueError(f"metadata must be JSON-serializable: {e}") from e

        return await self._run(self._insert_sync, kind, content, feedback, metadata_json)

    def _insert_sync(self, db, kind, content, feedback, metadata_json) -> int:
        now = utcnow()
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        cursor = db.execute(
            f"""
            INSERT INTO {self.table} (created_at, kind, content, feedback, metadata)
            VALUES (?, ?, ?, ?, ?)
            """,
            (iso(now), kind.value, content, int(feedback), metadata_json),
        )
        db.commit()
        self._last_ts = now
        return cursor.lastrowid

    async def get(self, event_id: int) -> Optional[InteractionEvent]:
        return await self._run(self._get_sync, event_id)

    def _get_sync(self, db, event_id):
        row = db.execute(f"SELECT * FROM {self.table} WHERE id = ?", (event_id,)).fetchone()
        return InteractionEvent.from_row(row) if row else None

    async def list(self, event_filter: Optional[EventFilter] = None) -> list:
        """Return matching events, newest first unless oldest_first is set.

        An empty list means nothing matched; it is never an error.
        """
        return await self._run(self._list_sync, event_filter or EventFilter())

    def _list_sync(self, db, f: EventFilter) -> list:
        clauses = []
        params = []

        if f.kinds:
            kinds = [EventKind(k).value for k in f.kinds]
            clauses.append(f"kind IN ({', '.join('?' * len(kinds))})")
            params.extend(kinds)
        if f.feedback:
            values = [int(Feedback(v)) for v in f.feedback]
            clauses.append(f"feedback IN ({', '.join('?' * len(values))})")
            params.extend(values)
        if f.since is not None:
            clauses.append("created_at >= ?")
            params.append(iso(f.since))
        if f.until is not None:
            clauses.append("created_at < ?")
            params.append(iso(f.until))
        if f.after_id is not None:
            clauses.append("id > ?")
            params.append(f.after_id)

        sql = f"SELECT * FROM {self.table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id " + ("ASC" if f.oldest_first else "DESC")
        if f.limit is not None:
            if f.limit <= 0:
                return []
            sql += " LIMIT ?"
            params.append(f.limit)

        return [InteractionEvent.from_row(row) for row in db.execute(sql, params).fetchall()]

    async def count(self) -> int:
        return await self._run(lambda db: db.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0])

    # =========================================================================
    # PROJECT REGISTRY (shared metadata area)
    # =========================================================================

    async def register_project(self, root_path: str) -> ProjectRecord:
        """Insert the project row on first sight, otherwise touch it."""
        return await self._run(self._register_sync, root_path)

    def _register_sync(self, db, root_path) -> ProjectRecord:
        now = iso(utcnow())
        db.execute(
            """
            INSERT INTO projects (namespace, root_path, created_at, last_accessed_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(namespace) DO UPDATE SET last_accessed_at = excluded.last_accessed_at
            """,
            (self.namespace, root_path, now, now),
        )
        db.commit()
        return self._project_sync(db)

    async def touch_project(self) -> None:
        await self._run(self._touch_sync)

    def _touch_sync(self, db) -> None:
        db.execute(
            "UPDATE projects SET last_accessed_at = ? WHERE namespace = ?",
            (iso(utcnow()), self.namespace),
        )
        db.commit()

    async def get_project(self) -> Optional[ProjectRecord]:
        return await self._run(self._project_sync)

    def _project_sync(self, db) -> Optional[ProjectRecord]:
        row = db.execute("SELECT * FROM projects WHERE namespace = ?", (self.namespace,)).fetchone()
        return ProjectRecord.from_row(row) if row else None

    async def watermark(self) -> int:
        project = await self.get_project()
        return project.watermark if project else 0

    async def advance_watermark(self, event_id: int, at: Optional[datetime] = None) -> int:
        """Move the consolidation watermark forward (never backwards).

        Also stamps the last-consolidation time. Returns the new watermark.
        """
        return await self._run(self._advance_sync, event_id, at or utcnow())

    def _advance_sync(self, db, event_id, at) -> int:
        db.execute(
            """
            UPDATE projects
            SET watermark = MAX(watermark, ?),
                last_consolidated_at = ?,
                last_accessed_at = ?
            WHERE namespace = ?
            """,
            (event_id, iso(at), iso(at), self.namespace),
        )
        db.commit()
        row = db.execute("SELECT watermark FROM projects WHERE namespace = ?", (self.namespace,)).fetchone()
        return row["watermark"] if row else 0
