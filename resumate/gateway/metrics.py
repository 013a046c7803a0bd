"""Billing metrics logged to SQLite for observability and trend analysis.

Usage:
    from resumate.gateway.metrics import log_event

    await log_event(
        "webhook_processed",
        event_type="invoice.paid",
        event_id="evt_123",
        user_id="user_1",
        credits_delta=10000,
    )

Query examples:
    # Webhook outcomes by type, last 7 days
    SELECT event_type, outcome, COUNT(*)
    FROM billing_metric
    WHERE metric = 'webhook_processed'
      AND timestamp > datetime('now', '-7 days')
    GROUP BY event_type, outcome;

    # Credits granted vs debited per day
    SELECT date(timestamp), SUM(CASE WHEN credits_delta > 0 THEN credits_delta ELSE 0 END),
           SUM(CASE WHEN credits_delta < 0 THEN -credits_delta ELSE 0 END)
    FROM billing_metric GROUP BY 1;
"""

import asyncio
import datetime as dt
import json
import sqlite3
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

SCHEMA = """
CREATE TABLE IF NOT EXISTS billing_metric (
    id INTEGER PRIMARY KEY,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    metric TEXT NOT NULL,

    -- Webhook fields
    event_type TEXT,
    event_id TEXT,
    outcome TEXT,
    duration_ms INTEGER,

    -- Billing fields
    plan TEXT,
    credits_delta INTEGER,
    status_code INTEGER,

    -- Context
    user_id TEXT,
    request_id TEXT,

    -- Flexible data
    data JSON
);

CREATE INDEX IF NOT EXISTS idx_billing_metric_timestamp ON billing_metric(timestamp);
CREATE INDEX IF NOT EXISTS idx_billing_metric_metric ON billing_metric(metric);
CREATE INDEX IF NOT EXISTS idx_billing_metric_user ON billing_metric(user_id) WHERE user_id IS NOT NULL;
"""

COLUMNS = (
    "timestamp",
    "metric",
    "event_type",
    "event_id",
    "outcome",
    "duration_ms",
    "plan",
    "credits_delta",
    "status_code",
    "user_id",
    "request_id",
    "data",
)
INSERT_SQL = f"INSERT INTO billing_metric ({', '.join(COLUMNS)}) VALUES ({', '.join('?' for _ in COLUMNS)})"


def _to_row(event: dict[str, Any]) -> tuple[Any, ...]:
    values = {column: event.get(column) for column in COLUMNS}
    values["timestamp"] = values["timestamp"] or datetime.now(tz=dt.UTC).isoformat()
    values["data"] = json.dumps(values["data"], default=str) if values["data"] else None
    return tuple(values.values())


class MetricsWriter:
    """Batches metric rows from the event loop into a local SQLite file."""

    def __init__(self, db_path: Path, flush_interval: float = 5.0):
        self.db_path = db_path
        self.flush_interval = flush_interval
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.write(self._drain())

    def _drain(self) -> list[dict[str, Any]]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    async def _run(self) -> None:
        while True:
            try:
                first = await asyncio.wait_for(self.queue.get(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                continue
            batch = [first, *self._drain()]
            try:
                self.write(batch)
            except sqlite3.Error as e:
                # Dropping a batch is preferable to failing billing requests over metrics
                logger.bind(dropped=len(batch)).warning(f"Metrics write failed: {e}")

    def write(self, events: list[dict[str, Any]]) -> None:
        if not events:
            return
        with sqlite3.connect(self.db_path) as conn:
            conn.executemany(INSERT_SQL, [_to_row(event) for event in events])


_metrics_path: Path | None = None
_writer: MetricsWriter | None = None


def init_metrics_db(db_path: Path | str) -> None:
    global _metrics_path
    _metrics_path = Path(db_path)
    _metrics_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(_metrics_path) as conn:
        conn.executescript(SCHEMA)
        conn.execute("PRAGMA journal_mode=WAL")


async def start_metrics_writer(flush_interval: float = 5.0) -> None:
    """Start batching rows into the file set up by init_metrics_db."""
    global _writer
    if _metrics_path is None:
        raise RuntimeError("init_metrics_db must run before start_metrics_writer")
    _writer = MetricsWriter(_metrics_path, flush_interval)
    _writer.start()


async def stop_metrics_writer() -> None:
    """Flush what's queued and stop. Safe to call when the writer never started."""
    global _writer
    if _writer is not None:
        await _writer.stop()
    _writer = None


async def log_event(metric: str, **kwargs: Any) -> None:
    """Queue a metrics row. No-op until the writer is started.

    Keyword arguments map onto `billing_metric` columns; put anything else under `data`.
    """
    if _writer is None:
        return
    await _writer.queue.put({"metric": metric, **kwargs})


async def log_error(message: str, **context: Any) -> None:
    """Record an error row, with the active traceback when called from an except block."""
    tb = traceback.format_exc()
    await log_event(
        "error",
        data={"message": message, "traceback": None if tb.startswith("NoneType: None") else tb, **context},
    )
