"""Database operations for agentcue.

Every state change of a job is one SQL statement. Statements that act on a
running job are guarded by its lease token, so a worker that lost its lease
cannot finalize the job.
"""

from __future__ import annotations

import json

import aiosqlite

from agentcue.models import Job, JobState, QueueStats, TaskData

SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Jobs: the queue
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    agent_type TEXT NOT NULL,
    user_id TEXT,
    data TEXT NOT NULL,  -- JSON
    state TEXT DEFAULT 'waiting',
    progress INTEGER DEFAULT 0,
    attempts INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    timeout_ms INTEGER NOT NULL,
    backoff_type TEXT DEFAULT 'exponential',
    backoff_delay_ms INTEGER DEFAULT 2000,
    created_at REAL NOT NULL,
    available_at REAL NOT NULL,
    processed_at REAL,
    finished_at REAL,
    result TEXT,  -- JSON
    failed_reason TEXT,
    tokens_used INTEGER DEFAULT 0,
    cost REAL DEFAULT 0,
    lease_token TEXT,
    lease_expires_at REAL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_jobs_state_available ON jobs(state, available_at);
CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(lease_expires_at);
CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(finished_at);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """
    Initialize database connection and schema.

    Args:
        db_path: Path to SQLite file or ":memory:" for in-memory.

    Returns:
        Open database connection.
    """
    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row

    await conn.execute("PRAGMA journal_mode=WAL")

    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ) as cursor:
        exists = await cursor.fetchone()

    if not exists:
        await conn.executescript(SCHEMA)
        await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        await conn.commit()

    return conn


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        task_id=row["task_id"],
        data=TaskData.from_json(row["data"]),
        state=JobState(row["state"]),
        progress=row["progress"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        timeout_ms=row["timeout_ms"],
        backoff_type=row["backoff_type"],
        backoff_delay_ms=row["backoff_delay_ms"],
        created_at=row["created_at"],
        available_at=row["available_at"],
        processed_at=row["processed_at"],
        finished_at=row["finished_at"],
        result=json.loads(row["result"]) if row["result"] else None,
        failed_reason=row["failed_reason"],
        lease_token=row["lease_token"],
        lease_expires_at=row["lease_expires_at"],
    )


async def _modify(conn: aiosqlite.Connection, sql: str, params: tuple) -> int:
    cursor = await conn.execute(sql, params)
    await conn.commit()
    return cursor.rowcount


async def insert_job(conn: aiosqlite.Connection, job: Job) -> None:
    """Persist a newly submitted job."""
    await conn.execute(
        """
        INSERT INTO jobs (
            id, task_id, agent_type, user_id, data, state, progress,
            attempts, max_attempts, timeout_ms, backoff_type, backoff_delay_ms,
            created_at, available_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job.id,
            job.task_id,
            job.data.agent_type,
            job.data.user_id,
            job.data.to_json(),
            job.state.value,
            job.progress,
            job.attempts,
            job.max_attempts,
            job.timeout_ms,
            job.backoff_type,
            job.backoff_delay_ms,
            job.created_at,
            job.available_at,
        ),
    )
    await conn.commit()


async def get_job(conn: aiosqlite.Connection, job_id: str) -> Job | None:
    """Get a job by ID."""
    async with conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None


async def claim_next(
    conn: aiosqlite.Connection,
    *,
    lease_token: str,
    lease_expires_at: float,
    now: float,
) -> Job | None:
    """
    Atomically move the oldest available waiting job to active.

    Starts a new attempt: `attempts` is incremented and progress reset.
    """
    async with conn.execute(
        """
        UPDATE jobs SET
            state = 'active',
            attempts = attempts + 1,
            progress = 0,
            processed_at = ?,
            lease_token = ?,
            lease_expires_at = ?
        WHERE id = (
            SELECT id FROM jobs
            WHERE state = 'waiting' AND available_at <= ?
            ORDER BY available_at, rowid
            LIMIT 1
        )
        RETURNING *
        """,
        (now, lease_token, lease_expires_at, now),
    ) as cursor:
        row = await cursor.fetchone()
    await conn.commit()
    return _row_to_job(row) if row else None


async def extend_lease(
    conn: aiosqlite.Connection,
    job_id: str,
    lease_token: str,
    *,
    expires_at: float,
    now: float,
) -> bool:
    """Renew a lease. False if the lease is no longer held or already expired."""
    count = await _modify(
        conn,
        "UPDATE jobs SET lease_expires_at = ? "
        "WHERE id = ? AND lease_token = ? AND state = 'active' AND lease_expires_at >= ?",
        (expires_at, job_id, lease_token, now),
    )
    return count == 1


async def update_progress(
    conn: aiosqlite.Connection,
    job_id: str,
    lease_token: str,
    progress: int,
    *,
    expires_at: float,
    now: float,
) -> bool:
    """Record progress and renew the lease. Progress never moves backwards."""
    count = await _modify(
        conn,
        "UPDATE jobs SET progress = MAX(progress, ?), lease_expires_at = ? "
        "WHERE id = ? AND lease_token = ? AND state = 'active' AND lease_expires_at >= ?",
        (progress, expires_at, job_id, lease_token, now),
    )
    return count == 1


async def complete_job(
    conn: aiosqlite.Connection,
    job_id: str,
    lease_token: str,
    *,
    result: dict,
    tokens_used: int,
    cost: float,
    now: float,
) -> bool:
    count = await _modify(
        conn,
        """
        UPDATE jobs SET
            state = 'completed', progress = 100, result = ?, failed_reason = NULL,
            tokens_used = ?, cost = ?, finished_at = ?,
            lease_token = NULL, lease_expires_at = NULL
        WHERE id = ? AND lease_token = ? AND state = 'active'
        """,
        (json.dumps(result), tokens_used, cost, now, job_id, lease_token),
    )
    return count == 1


async def fail_job(
    conn: aiosqlite.Connection,
    job_id: str,
    lease_token: str,
    *,
    reason: str,
    now: float,
) -> bool:
    """Terminal failure."""
    count = await _modify(
        conn,
        """
        UPDATE jobs SET
            state = 'failed', failed_reason = ?, finished_at = ?,
            lease_token = NULL, lease_expires_at = NULL
        WHERE id = ? AND lease_token = ? AND state = 'active'
        """,
        (reason, now, job_id, lease_token),
    )
    return count == 1


async def schedule_retry(
    conn: aiosqlite.Connection,
    job_id: str,
    lease_token: str,
    *,
    reason: str,
    available_at: float,
    now: float,
) -> bool:
    """Release the job for another attempt, delayed until `available_at`."""
    state = JobState.DELAYED if available_at > now else JobState.WAITING
    count = await _modify(
        conn,
        """
        UPDATE jobs SET
            state = ?, failed_reason = ?, available_at = ?,
            lease_token = NULL, lease_expires_at = NULL
        WHERE id = ? AND lease_token = ? AND state = 'active'
        """,
        (state.value, reason, available_at, job_id, lease_token),
    )
    return count == 1


async def promote_delayed(conn: aiosqlite.Connection, now: float) -> int:
    """Move due delayed jobs to the tail of the waiting queue."""
    return await _modify(
        conn,
        "UPDATE jobs SET state = 'waiting', available_at = ? "
        "WHERE state = 'delayed' AND available_at <= ?",
        (now, now),
    )


async def requeue_job(
    conn: aiosqlite.Connection,
    job_id: str,
    lease_token: str,
    *,
    now: float,
    refund_attempt: bool = False,
) -> bool:
    """
    Put an active job back at the tail of the waiting queue.

    With `refund_attempt` the interrupted attempt is not counted.
    """
    count = await _modify(
        conn,
        """
        UPDATE jobs SET
            state = 'waiting', available_at = ?,
            attempts = CASE WHEN ? THEN MAX(attempts - 1, 0) ELSE attempts END,
            lease_token = NULL, lease_expires_at = NULL
        WHERE id = ? AND lease_token = ? AND state = 'active'
        """,
        (now, refund_attempt, job_id, lease_token),
    )
    return count == 1


async def find_expired_leases(conn: aiosqlite.Connection, now: float) -> list[Job]:
    """Active jobs whose lease ran out."""
    async with conn.execute(
        "SELECT * FROM jobs WHERE state = 'active' AND lease_expires_at < ? ORDER BY rowid",
        (now,),
    ) as cursor:
        rows = await cursor.fetchall()
        return [_row_to_job(row) for row in rows]


async def count_by_state(conn: aiosqlite.Connection) -> QueueStats:
    stats = QueueStats()
    async with conn.execute("SELECT state, COUNT(*) AS n FROM jobs GROUP BY state") as cursor:
        async for row in cursor:
            setattr(stats, row["state"], row["n"])
    return stats


async def list_finished_since(conn: aiosqlite.Connection, since: float) -> list[dict]:
    """Completed and failed jobs that finished at or after `since`."""
    async with conn.execute(
        """
        SELECT id, task_id, agent_type, user_id, state, tokens_used, cost,
               processed_at, finished_at, failed_reason
        FROM jobs
        WHERE state IN ('completed', 'failed') AND finished_at >= ?
        ORDER BY finished_at
        """,
        (since,),
    ) as cursor:
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def prune_finished(
    conn: aiosqlite.Connection,
    *,
    now: float,
    completed_max_age: float,
    completed_keep: int,
    failed_max_age: float,
) -> int:
    """
    Apply retention: completed jobs older than `completed_max_age` seconds
    or beyond the newest `completed_keep`; failed jobs older than
    `failed_max_age` seconds.
    """
    removed = 0
    cursor = await conn.execute(
        """
        DELETE FROM jobs WHERE state = 'completed' AND (
            finished_at < ?
            OR id NOT IN (
                SELECT id FROM jobs WHERE state = 'completed'
                ORDER BY finished_at DESC, rowid DESC LIMIT ?
            )
        )
        """,
        (now - completed_max_age, completed_keep),
    )
    removed += cursor.rowcount
    cursor = await conn.execute(
        "DELETE FROM jobs WHERE state = 'failed' AND finished_at < ?",
        (now - failed_max_age,),
    )
    removed += cursor.rowcount
    await conn.commit()
    return removed
