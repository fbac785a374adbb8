"""SQLite implementation of the run event log."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from .inmemory import summarize
from .models import EventType, RunSummary, WorkflowEvent
from .repository import EventLog


class SQLiteEventLog(EventLog):
    """Persist run events using SQLite, one row per event."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                phase_id TEXT,
                step_id TEXT,
                iteration INTEGER,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (run_id, sequence)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_run_events_run ON run_events (run_id, sequence)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _insert(self, event: WorkflowEvent) -> int:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM run_events WHERE run_id = ?",
                (event.run_id,),
            )
            sequence = cur.fetchone()[0] + 1
            cur.execute(
                """
                INSERT INTO run_events (
                    event_id, run_id, sequence, event_type, phase_id, step_id,
                    iteration, payload, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.run_id,
                    sequence,
                    event.event_type.value,
                    event.phase_id,
                    event.step_id,
                    event.iteration,
                    json.dumps(event.payload, default=str),
                    event.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return sequence

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> WorkflowEvent:
        return WorkflowEvent(
            event_id=row["event_id"],
            run_id=row["run_id"],
            sequence=row["sequence"],
            event_type=EventType(row["event_type"]),
            phase_id=row["phase_id"],
            step_id=row["step_id"],
            iteration=row["iteration"],
            payload=json.loads(row["payload"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Event log API
    async def append(self, event: WorkflowEvent) -> WorkflowEvent:
        sequence = await asyncio.to_thread(self._insert, event)
        return event.model_copy(update={"sequence": sequence})

    async def list_events(
        self, run_id: str, event_type: EventType | None = None
    ) -> list[WorkflowEvent]:
        if event_type is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM run_events WHERE run_id = ? ORDER BY sequence",
                run_id,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM run_events WHERE run_id = ? AND event_type = ? ORDER BY sequence",
                run_id,
                event_type.value,
            )
        return [self._row_to_event(r) for r in rows]

    async def list_runs(self) -> list[RunSummary]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM run_events WHERE event_type IN (?, ?) ORDER BY id",
            EventType.RUN_STARTED.value,
            EventType.RUN_TERMINATED.value,
        )
        by_run: dict[str, list[WorkflowEvent]] = {}
        for row in rows:
            event = self._row_to_event(row)
            by_run.setdefault(event.run_id, []).append(event)
        return [summarize(run_id, events) for run_id, events in by_run.items()]

    def close(self) -> None:
        self._conn.close()
