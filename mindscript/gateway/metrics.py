"""Metrics logging to SQLite for observability and trend analysis.

Usage:
    from mindscript.gateway.metrics import log_event

    # In async code:
    await log_event(
        "job_completed",
        job_id=str(job.id),
        worker_id="worker-1",
        duration_ms=4200,
    )

Query examples:
    # Average render time by job type, last 7 days
    SELECT job_type, AVG(duration_ms)
    FROM metrics_event
    WHERE event_type = 'job_completed'
      AND timestamp > datetime('now', '-7 days')
    GROUP BY job_type;

    # Retry rate
    SELECT SUM(CASE WHEN event_type = 'job_retry_scheduled' THEN 1 ELSE 0 END) * 100.0
           / SUM(CASE WHEN event_type = 'job_claimed' THEN 1 ELSE 0 END) as retry_rate
    FROM metrics_event;
"""

import asyncio
import json
import sqlite3
import traceback
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

_db_path: Path | None = None
_write_queue: asyncio.Queue[dict[str, Any]] | None = None
_writer_task: asyncio.Task[None] | None = None


SCHEMA = """
CREATE TABLE IF NOT EXISTS metrics_event (
    id INTEGER PRIMARY KEY,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    event_type TEXT NOT NULL,

    -- Job fields
    job_id TEXT,
    job_type TEXT,
    priority TEXT,
    status TEXT,
    stage TEXT,
    retry_count INTEGER,
    queue_wait_ms INTEGER,
    duration_ms INTEGER,

    -- Context
    user_id TEXT,
    worker_id TEXT,
    request_id TEXT,

    -- Flexible data
    data JSON
);

CREATE INDEX IF NOT EXISTS idx_metrics_timestamp ON metrics_event(timestamp);
CREATE INDEX IF NOT EXISTS idx_metrics_event_type ON metrics_event(event_type);
CREATE INDEX IF NOT EXISTS idx_metrics_job ON metrics_event(job_id) WHERE job_id IS NOT NULL;
"""

COLUMNS = [
    "timestamp",
    "event_type",
    "job_id",
    "job_type",
    "priority",
    "status",
    "stage",
    "retry_count",
    "queue_wait_ms",
    "duration_ms",
    "user_id",
    "worker_id",
    "request_id",
    "data",
]


def init_metrics_db(db_path: Path | str) -> None:
    """Initialize metrics database. Call once on startup."""
    global _db_path
    _db_path = Path(db_path)
    _db_path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(_db_path) as conn:
        conn.executescript(SCHEMA)
        conn.execute("PRAGMA journal_mode=WAL")


async def start_metrics_writer() -> None:
    """Start background writer task. Call after init_metrics_db."""
    global _write_queue, _writer_task
    _write_queue = asyncio.Queue()
    _writer_task = asyncio.create_task(_writer_loop())


async def stop_metrics_writer() -> None:
    """Stop background writer and flush pending events."""
    global _writer_task, _write_queue
    if _writer_task:
        _writer_task.cancel()
        try:
            await _writer_task
        except asyncio.CancelledError:
            pass
        _writer_task = None

    if _write_queue and _db_path:
        events = []
        while not _write_queue.empty():
            try:
                events.append(_write_queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        if events:
            _write_batch(events)
    _write_queue = None


async def _writer_loop() -> None:
    """Background task that batches writes to SQLite."""
    assert _write_queue is not None
    batch: list[dict[str, Any]] = []
    batch_interval = 5.0  # seconds

    while True:
        try:
            try:
                event = await asyncio.wait_for(_write_queue.get(), timeout=batch_interval)
                batch.append(event)
                while not _write_queue.empty():
                    try:
                        batch.append(_write_queue.get_nowait())
                    except asyncio.QueueEmpty:
                        break
            except TimeoutError:
                pass

            if batch:
                _write_batch(batch)
                batch = []

        except asyncio.CancelledError:
            if batch:
                _write_batch(batch)
            raise
        except Exception:
            # a broken batch must not kill the writer
            logger.exception("Failed to write metrics batch")
            batch = []


def _write_batch(events: list[dict[str, Any]]) -> None:
    """Write a batch of events to SQLite (sync, called from async context)."""
    if not _db_path:
        return

    rows = []
    for event in events:
        row = [event.get(column) for column in COLUMNS]
        row[0] = event.get("timestamp", datetime.now(tz=UTC).isoformat())
        row[-1] = json.dumps(event["data"]) if event.get("data") else None
        rows.append(row)

    placeholders = ", ".join(["?"] * len(COLUMNS))
    sql = f"INSERT INTO metrics_event ({', '.join(COLUMNS)}) VALUES ({placeholders})"

    with sqlite3.connect(_db_path) as conn:
        conn.executemany(sql, rows)


async def log_event(event_type: str, **kwargs: Any) -> None:
    """Log a metrics event asynchronously.

    Args:
        event_type: Event type (e.g., 'job_submitted', 'job_completed')
        **kwargs: Event fields matching the schema columns, plus optional 'data' dict
    """
    if _write_queue is None:
        return  # Metrics not initialized

    event = {"event_type": event_type, **kwargs}
    await _write_queue.put(event)


async def log_error(message: str, **context: Any) -> None:
    """Log an error event with optional traceback."""
    tb = traceback.format_exc()
    await log_event(
        "error",
        data={"message": message, "traceback": tb if tb != "NoneType: None\n" else None, **context},
    )
