import json
import sqlite3

import pytest

from mindscript.contracts import JobStatus
from mindscript.gateway.metrics import init_metrics_db, log_event, start_metrics_writer, stop_metrics_writer


@pytest.mark.asyncio
async def test_events_flushed_on_stop(tmp_path):
    db_path = tmp_path / "metrics.db"
    init_metrics_db(db_path)
    await start_metrics_writer()

    await log_event("job_submitted", job_id="job-1", user_id="test-user-123", status=JobStatus.pending)
    await log_event("job_failed", job_id="job-1", retry_count=3, data={"error": "boom"})
    await stop_metrics_writer()

    with sqlite3.connect(db_path) as conn:
        rows = conn.execute("SELECT event_type, job_id, status, retry_count, data FROM metrics_event ORDER BY id").fetchall()

    assert rows[0][:3] == ("job_submitted", "job-1", "pending")
    assert rows[1][0] == "job_failed"
    assert rows[1][3] == 3
    assert json.loads(rows[1][4]) == {"error": "boom"}


@pytest.mark.asyncio
async def test_log_event_without_writer_is_noop():
    await log_event("job_submitted", job_id="job-1")
