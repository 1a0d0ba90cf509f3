"""SQLite-backed relational store for features, criteria and sessions.

The store is an explicit object: open it, use it, close it. Nothing is
held at module level, so two stores on two files never interfere. Every
public method is a coroutine that runs its statement on a worker thread;
statements on one connection are serialised by an asyncio lock, and
cross-process safety comes from SQLite's own row-level atomicity.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .errors import StoreError
from .models import (
    Criterion,
    CriterionStatus,
    Feature,
    FeatureStats,
    FeatureStatus,
    Phase,
    Session,
    SessionStatus,
    utc_now_iso,
)


logger = logging.getLogger("specfirst.store")

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS features (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    priority INTEGER DEFAULT 999,
    status TEXT DEFAULT 'pending',
    phase TEXT DEFAULT 'none',
    proposal_path TEXT,
    spec_path TEXT,
    plan_path TEXT,
    tasks_path TEXT,
    constitution_path TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    session_id TEXT,
    skip_reason TEXT
);

CREATE TABLE IF NOT EXISTS criteria (
    id TEXT PRIMARY KEY,
    feature_id TEXT NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    criterion TEXT NOT NULL,
    status TEXT DEFAULT 'pending',
    evidence TEXT,
    verified_at TEXT
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    current_feature_id TEXT REFERENCES features(id) ON DELETE SET NULL,
    features_completed INTEGER DEFAULT 0,
    status TEXT DEFAULT 'running'
);

CREATE INDEX IF NOT EXISTS idx_features_status ON features(status);
CREATE INDEX IF NOT EXISTS idx_features_phase ON features(phase);
CREATE INDEX IF NOT EXISTS idx_features_session ON features(session_id);
CREATE INDEX IF NOT EXISTS idx_criteria_feature ON criteria(feature_id);
CREATE INDEX IF NOT EXISTS idx_criteria_status ON criteria(status);
"""

# Additive column migrations, applied in order on every open.
MIGRATIONS: List[Tuple[str, str, str]] = [
    ("features", "prd_status", "TEXT DEFAULT NULL"),
    ("features", "prd_path", "TEXT DEFAULT NULL"),
    ("features", "effort_level", "TEXT DEFAULT NULL"),
    ("features", "iteration", "INTEGER DEFAULT 0"),
    ("features", "verification_summary", "TEXT DEFAULT NULL"),
    ("criteria", "phase", "TEXT DEFAULT NULL"),
]

_PATH_COLUMNS = {
    "proposal_path",
    "spec_path",
    "plan_path",
    "tasks_path",
    "constitution_path",
}

_PRD_COLUMNS = {
    "prd_status",
    "prd_path",
    "effort_level",
    "iteration",
    "verification_summary",
}


def _row_to_feature(row: sqlite3.Row) -> Feature:
    return Feature.from_dict(dict(row))


def _row_to_criterion(row: sqlite3.Row) -> Criterion:
    data = dict(row)
    data["text"] = data.pop("criterion")
    return Criterion.from_dict(data)


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session.from_dict(dict(row))


class RelationalStore:
    """Handle on one SpecFirst database file."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(SCHEMA_SQL)
        self._apply_migrations(conn)
        return conn

    @staticmethod
    def _apply_migrations(conn: sqlite3.Connection) -> None:
        for table, column, col_type in MIGRATIONS:
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
                logger.debug(f"Migration: added column {table}.{column}")
            except sqlite3.OperationalError as exc:
                if "duplicate column name" in str(exc):
                    logger.debug(f"Migration: {table}.{column} already exists")
                else:
                    logger.warning(f"Migration failed for {table}.{column}: {exc}")
                    raise

    async def open(self) -> "RelationalStore":
        if self._conn is None:
            try:
                self._conn = await asyncio.to_thread(self._connect)
            except sqlite3.Error as exc:
                raise StoreError(
                    f"Unable to open database {self.db_path}: {exc}",
                    resolution="Check that the storage directory is writable",
                ) from exc
            logger.debug(f"Opened store at {self.db_path}")
        return self

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await asyncio.to_thread(conn.close)
            logger.debug(f"Closed store at {self.db_path}")

    async def _run(self, func: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            raise StoreError(
                "Store is not open",
                resolution="Use 'async with open_store(path)' or call open() first",
            )
        conn = self._conn
        async with self._lock:
            try:
                return await asyncio.to_thread(func, conn)
            except sqlite3.IntegrityError as exc:
                raise StoreError(str(exc), resolution="Check ids and foreign keys") from exc
            except sqlite3.Error as exc:
                raise StoreError(
                    f"Database error on {self.db_path}: {exc}",
                    resolution="Retry; another process may hold a write lock",
                ) from exc

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return await self._run(lambda conn: conn.execute(sql, params).fetchone())

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return await self._run(lambda conn: conn.execute(sql, params).fetchall())

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await self._run(lambda conn: conn.execute(sql, params).rowcount)

    async def table_columns(self, table: str) -> List[str]:
        rows = await self._fetchall(f"PRAGMA table_info({table})")
        return [row["name"] for row in rows]

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    async def add_feature(
        self,
        feature_id: str,
        name: str,
        description: str = "",
        priority: int = 999,
        paths: Optional[Dict[str, Optional[str]]] = None,
    ) -> Feature:
        paths = paths or {}
        unknown = set(paths) - _PATH_COLUMNS
        if unknown:
            raise StoreError(f"Unknown path fields: {', '.join(sorted(unknown))}")
        now = utc_now_iso()
        await self._execute(
            """INSERT INTO features (
                id, name, description, priority, proposal_path, spec_path,
                plan_path, tasks_path, constitution_path, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                feature_id,
                name,
                description,
                priority,
                paths.get("proposal_path"),
                paths.get("spec_path"),
                paths.get("plan_path"),
                paths.get("tasks_path"),
                paths.get("constitution_path"),
                now,
            ),
        )
        logger.info(f"Added feature {feature_id} ({name}) with priority {priority}")
        feature = await self.get_feature(feature_id)
        if feature is None:
            raise StoreError(f"Feature {feature_id} vanished after insert")
        return feature

    async def get_feature(self, feature_id: str) -> Optional[Feature]:
        row = await self._fetchone("SELECT * FROM features WHERE id = ?", (feature_id,))
        return _row_to_feature(row) if row else None

    async def find_feature_by_name(self, name: str) -> Optional[Feature]:
        row = await self._fetchone(
            "SELECT * FROM features WHERE name = ? ORDER BY created_at ASC LIMIT 1",
            (name,),
        )
        return _row_to_feature(row) if row else None

    async def list_features(self) -> List[Feature]:
        rows = await self._fetchall("SELECT * FROM features ORDER BY priority ASC, created_at ASC")
        return [_row_to_feature(row) for row in rows]

    async def next_feature(self) -> Optional[Feature]:
        """Highest priority pending feature, oldest first on ties."""
        row = await self._fetchone(
            """SELECT * FROM features
               WHERE status = 'pending'
               ORDER BY priority ASC, created_at ASC
               LIMIT 1"""
        )
        return _row_to_feature(row) if row else None

    async def update_feature_status(self, feature_id: str, status: FeatureStatus | str) -> bool:
        """Set status, stamping started_at/completed_at in the same statement.

        Moving to in_progress stamps started_at. Moving to completed stamps
        completed_at and fills started_at if it was never set.
        """
        status = FeatureStatus(status)
        now = utc_now_iso()
        if status is FeatureStatus.IN_PROGRESS:
            sql = "UPDATE features SET status = ?, started_at = ? WHERE id = ?"
            params: Tuple[Any, ...] = (status.value, now, feature_id)
        elif status is FeatureStatus.COMPLETED:
            sql = (
                "UPDATE features SET status = ?, completed_at = ?, "
                "started_at = COALESCE(started_at, ?) WHERE id = ?"
            )
            params = (status.value, now, now, feature_id)
        else:
            sql = "UPDATE features SET status = ? WHERE id = ?"
            params = (status.value, feature_id)
        changed = await self._execute(sql, params)
        logger.debug(f"Feature {feature_id} status -> {status.value} ({changed} row)")
        return changed > 0

    async def skip_feature(self, feature_id: str, reason: str) -> bool:
        changed = await self._execute(
            "UPDATE features SET status = ?, skip_reason = ? WHERE id = ?",
            (FeatureStatus.SKIPPED.value, reason, feature_id),
        )
        return changed > 0

    async def update_feature_phase(self, feature_id: str, phase: Phase | str) -> bool:
        phase = Phase(phase)
        changed = await self._execute(
            "UPDATE features SET phase = ? WHERE id = ?",
            (phase.value, feature_id),
        )
        return changed > 0

    async def update_feature_paths(self, feature_id: str, **paths: Optional[str]) -> bool:
        """Update only the path columns that were passed."""
        return await self._update_columns(feature_id, paths, _PATH_COLUMNS)

    async def update_feature_prd(self, feature_id: str, **fields: Any) -> bool:
        return await self._update_columns(feature_id, fields, _PRD_COLUMNS)

    async def _update_columns(self, feature_id: str, values: Dict[str, Any], allowed: set) -> bool:
        unknown = set(values) - allowed
        if unknown:
            raise StoreError(f"Unknown feature fields: {', '.join(sorted(unknown))}")
        if not values:
            return False
        columns = sorted(values)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [values[column] for column in columns] + [feature_id]
        changed = await self._execute(f"UPDATE features SET {assignments} WHERE id = ?", params)
        return changed > 0

    # ------------------------------------------------------------------
    # Criteria
    # ------------------------------------------------------------------

    async def add_criterion(
        self,
        feature_id: str,
        text: str,
        criterion_id: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> str:
        criterion_id = criterion_id or f"crit-{uuid.uuid4().hex[:12]}"
        await self._execute(
            "INSERT INTO criteria (id, feature_id, criterion, phase) VALUES (?, ?, ?, ?)",
            (criterion_id, feature_id, text, phase),
        )
        return criterion_id

    async def import_criteria(self, feature_id: str, criteria: Sequence[Criterion]) -> int:
        """Insert tracker criteria for a feature, keeping rows that already exist.

        Row ids are namespaced by feature (``<feature_id>:<row id>``) since
        tracker ids such as ``ISC-C1`` repeat across features.
        """
        def _import(conn: sqlite3.Connection) -> int:
            inserted = 0
            conn.execute("BEGIN IMMEDIATE")
            try:
                for criterion in criteria:
                    cursor = conn.execute(
                        """INSERT OR IGNORE INTO criteria
                           (id, feature_id, criterion, status, evidence, phase)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        (
                            f"{feature_id}:{criterion.id}",
                            feature_id,
                            criterion.text,
                            criterion.status.value,
                            criterion.evidence,
                            criterion.phase,
                        ),
                    )
                    inserted += cursor.rowcount
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            return inserted

        return await self._run(_import)

    async def get_criteria(self, feature_id: str) -> List[Criterion]:
        rows = await self._fetchall(
            "SELECT * FROM criteria WHERE feature_id = ? ORDER BY id ASC",
            (feature_id,),
        )
        return [_row_to_criterion(row) for row in rows]

    async def update_criterion_status(
        self,
        criterion_id: str,
        status: CriterionStatus | str,
        evidence: Optional[str] = None,
    ) -> bool:
        status = CriterionStatus(status)
        if status is CriterionStatus.VERIFIED:
            changed = await self._execute(
                "UPDATE criteria SET status = ?, evidence = ?, verified_at = ? WHERE id = ?",
                (status.value, evidence, utc_now_iso(), criterion_id),
            )
        else:
            changed = await self._execute(
                "UPDATE criteria SET status = ?, evidence = ? WHERE id = ?",
                (status.value, evidence, criterion_id),
            )
        return changed > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self) -> Session:
        session = Session(id=f"session-{uuid.uuid4().hex}")
        await self._execute(
            "INSERT INTO sessions (id, started_at, status) VALUES (?, ?, ?)",
            (session.id, session.started_at, session.status.value),
        )
        logger.info(f"Created session {session.id}")
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = await self._fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return _row_to_session(row) if row else None

    async def current_session(self) -> Optional[Session]:
        """Most recently started running session."""
        row = await self._fetchone(
            "SELECT * FROM sessions WHERE status = 'running' ORDER BY started_at DESC LIMIT 1"
        )
        return _row_to_session(row) if row else None

    async def end_session(self, session_id: str, status: SessionStatus | str = SessionStatus.COMPLETED) -> bool:
        status = SessionStatus(status)
        changed = await self._execute(
            "UPDATE sessions SET ended_at = ?, status = ? WHERE id = ?",
            (utc_now_iso(), status.value, session_id),
        )
        return changed > 0

    async def increment_features_completed(self, session_id: str) -> bool:
        changed = await self._execute(
            "UPDATE sessions SET features_completed = features_completed + 1 WHERE id = ?",
            (session_id,),
        )
        return changed > 0

    async def claim_feature(self, session_id: str, feature_id: str) -> bool:
        """Atomically claim a feature for a session.

        The conditional UPDATE is the whole check: it only matches when the
        feature is unclaimed or already held by this session, and the session
        exists and is still running. Of two concurrent claimants exactly one
        sees an affected row.
        """
        def _claim(conn: sqlite3.Connection) -> bool:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """UPDATE features SET session_id = ?
                       WHERE id = ? AND (session_id IS NULL OR session_id = ?)
                         AND EXISTS (SELECT 1 FROM sessions WHERE id = ? AND status = ?)""",
                    (session_id, feature_id, session_id, session_id, SessionStatus.RUNNING.value),
                )
                if cursor.rowcount != 1:
                    conn.execute("ROLLBACK")
                    return False
                cursor = conn.execute(
                    "UPDATE sessions SET current_feature_id = ? WHERE id = ?",
                    (feature_id, session_id),
                )
                if cursor.rowcount != 1:
                    conn.execute("ROLLBACK")
                    return False
                conn.execute("COMMIT")
                return True
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        return await self._run(_claim)

    async def release_feature(self, session_id: str, feature_id: str) -> bool:
        """Release a claim. Only clears fields that still name this pair."""
        def _release(conn: sqlite3.Connection) -> bool:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "UPDATE features SET session_id = NULL WHERE id = ? AND session_id = ?",
                    (feature_id, session_id),
                )
                released = cursor.rowcount == 1
                conn.execute(
                    "UPDATE sessions SET current_feature_id = NULL WHERE id = ? AND current_feature_id = ?",
                    (session_id, feature_id),
                )
                conn.execute("COMMIT")
                return released
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        return await self._run(_release)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> FeatureStats:
        row = await self._fetchone(
            """SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN status = 'in_progress' THEN 1 ELSE 0 END) AS in_progress,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                SUM(CASE WHEN status = 'skipped' THEN 1 ELSE 0 END) AS skipped
            FROM features"""
        )
        if row is None:
            return FeatureStats()
        return FeatureStats(
            total=row["total"] or 0,
            pending=row["pending"] or 0,
            in_progress=row["in_progress"] or 0,
            completed=row["completed"] or 0,
            skipped=row["skipped"] or 0,
        )


@asynccontextmanager
async def open_store(db_path: Path | str) -> AsyncIterator[RelationalStore]:
    """Open a store for the duration of one invocation."""
    store = RelationalStore(db_path)
    await store.open()
    try:
        yield store
    finally:
        await store.close()
