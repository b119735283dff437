import json
import sqlite3
import threading
import logging
from functools import wraps
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
from datetime import datetime

from .models import Job, JobStatus, QueueStats
from .config import ALLOWED_CONFIG_KEYS
from .utils import utcnow, to_db, from_db

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs(
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  status TEXT NOT NULL,
  priority INTEGER NOT NULL DEFAULT 0,
  target_id TEXT NOT NULL,
  parameters TEXT NOT NULL,
  user_id TEXT NOT NULL,
  retry_count INTEGER NOT NULL DEFAULT 0,
  max_retries INTEGER NOT NULL,
  next_retry_at TEXT,
  scheduled_at TEXT,
  queued_at TEXT NOT NULL,
  started_at TEXT,
  completed_at TEXT,
  updated_at TEXT NOT NULL,
  timeout_ms INTEGER NOT NULL,
  backoff TEXT NOT NULL,
  error TEXT,
  result TEXT,
  claim_token TEXT,
  dedupe_key TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status_order ON jobs(status, priority, queued_at);
CREATE INDEX IF NOT EXISTS idx_jobs_next_retry ON jobs(next_retry_at);
CREATE INDEX IF NOT EXISTS idx_jobs_target ON jobs(target_id, type);
CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id, status);
CREATE INDEX IF NOT EXISTS idx_jobs_dedupe ON jobs(dedupe_key, status);
CREATE TABLE IF NOT EXISTS config(
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""


def with_conn(fn):
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        return fn(self, self.get_conn(), *args, **kwargs)
    return wrapper


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        type=row["type"],
        status=JobStatus(row["status"]),
        priority=row["priority"],
        target_id=row["target_id"],
        parameters=json.loads(row["parameters"]),
        user_id=row["user_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        next_retry_at=from_db(row["next_retry_at"]),
        scheduled_at=from_db(row["scheduled_at"]),
        queued_at=from_db(row["queued_at"]),
        started_at=from_db(row["started_at"]),
        completed_at=from_db(row["completed_at"]),
        updated_at=from_db(row["updated_at"]),
        timeout_ms=row["timeout_ms"],
        backoff=json.loads(row["backoff"]),
        error=row["error"],
        result=json.loads(row["result"]) if row["result"] is not None else None,
        claim_token=row["claim_token"],
        dedupe_key=row["dedupe_key"],
    )


class JobStore:
    """
    SQLite-backed job rows.

    Each thread gets its own connection. Every state change after insert is a
    conditional UPDATE: a claim only wins while the row is still PENDING, and
    completions only land while the row is RUNNING under the same claim token.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._conns: Dict[threading.Thread, sqlite3.Connection] = {}
        self.init_db(self.get_conn())

    def get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._prune_dead_threads()
                self._conns[threading.current_thread()] = conn
        return conn

    def _prune_dead_threads(self):
        # caller holds self._lock
        for thread in [t for t in self._conns if not t.is_alive()]:
            self._conns.pop(thread).close()

    def open_connections(self) -> int:
        with self._lock:
            self._prune_dead_threads()
            return len(self._conns)

    def init_db(self, conn: sqlite3.Connection):
        conn.executescript(SCHEMA)
        conn.commit()

    def close(self):
        with self._lock:
            conns, self._conns = self._conns, {}
        for conn in conns.values():
            conn.close()
        self._local = threading.local()

    # ---------- Jobs: insert / read ----------
    @with_conn
    def insert(self, conn, job: Job) -> Job:
        self._insert_row(conn, job)
        conn.commit()
        return job

    @with_conn
    def insert_unless_in_flight(self, conn, job: Job) -> Job:
        """
        Insert ``job`` unless a PENDING or RUNNING row already carries its
        dedupe_key, in which case that row is returned instead. The check and
        the insert share one write transaction.
        """
        if not job.dedupe_key:
            return self.insert(job)
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                """SELECT * FROM jobs
                    WHERE dedupe_key=? AND status IN ('PENDING','RUNNING')
                    ORDER BY queued_at, rowid LIMIT 1""",
                (job.dedupe_key,),
            ).fetchone()
            if row is not None:
                conn.execute("COMMIT")
                return _row_to_job(row)
            self._insert_row(conn, job)
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        return job

    def _insert_row(self, conn, job: Job):
        conn.execute(
            """INSERT INTO jobs(id,type,status,priority,target_id,parameters,user_id,retry_count,max_retries,
                                next_retry_at,scheduled_at,queued_at,started_at,completed_at,updated_at,
                                timeout_ms,backoff,error,result,claim_token,dedupe_key)
               VALUES(:id,:type,:status,:priority,:target_id,:parameters,:user_id,:retry_count,:max_retries,
                      :next_retry_at,:scheduled_at,:queued_at,:started_at,:completed_at,:updated_at,
                      :timeout_ms,:backoff,:error,:result,:claim_token,:dedupe_key)
            """,
            {
                "id": job.id,
                "type": job.type,
                "status": job.status.value,
                "priority": job.priority,
                "target_id": job.target_id,
                "parameters": json.dumps(job.parameters, default=str),
                "user_id": job.user_id,
                "retry_count": job.retry_count,
                "max_retries": job.max_retries,
                "next_retry_at": to_db(job.next_retry_at),
                "scheduled_at": to_db(job.scheduled_at),
                "queued_at": to_db(job.queued_at),
                "started_at": to_db(job.started_at),
                "completed_at": to_db(job.completed_at),
                "updated_at": to_db(job.updated_at),
                "timeout_ms": job.timeout_ms,
                "backoff": job.backoff.model_dump_json(),
                "error": job.error,
                "result": json.dumps(job.result, default=str) if job.result is not None else None,
                "claim_token": job.claim_token,
                "dedupe_key": job.dedupe_key,
            },
        )

    @with_conn
    def get(self, conn, job_id: str) -> Optional[Job]:
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    @with_conn
    def list_jobs(
        self,
        conn,
        status: Optional[JobStatus] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status=?")
            params.append(JobStatus(status).value)
        if user_id is not None:
            clauses.append("user_id=?")
            params.append(user_id)
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY queued_at, rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_job(r) for r in conn.execute(sql, params).fetchall()]

    @with_conn
    def fetch_eligible(self, conn, limit: int, now: Optional[datetime] = None) -> List[Job]:
        """PENDING rows whose retry and schedule times have passed, in dispatch order."""
        if limit <= 0:
            return []
        ts = to_db(now or utcnow())
        rows = conn.execute(
            """
            SELECT * FROM jobs
             WHERE status='PENDING'
               AND (next_retry_at IS NULL OR next_retry_at <= :now)
               AND (scheduled_at IS NULL OR scheduled_at <= :now)
             ORDER BY priority DESC, queued_at ASC, rowid ASC
             LIMIT :limit
            """,
            {"now": ts, "limit": int(limit)},
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    @with_conn
    def find_in_flight(self, conn, job_type: str, target_id: str) -> Optional[Job]:
        """A PENDING or RUNNING job of this type for this target, if any."""
        row = conn.execute(
            """SELECT * FROM jobs
                WHERE type=? AND target_id=? AND status IN ('PENDING','RUNNING')
                ORDER BY queued_at, rowid LIMIT 1""",
            (job_type, target_id),
        ).fetchone()
        return _row_to_job(row) if row else None

    # ---------- Jobs: claim / complete / retry ----------
    @with_conn
    def claim(self, conn, job_id: str, token: str, now: Optional[datetime] = None) -> Optional[Job]:
        """Atomically move one PENDING row to RUNNING. Returns None if someone else won."""
        ts = to_db(now or utcnow())
        cur = conn.execute(
            """UPDATE jobs SET status='RUNNING', started_at=?, updated_at=?, claim_token=?
                WHERE id=? AND status='PENDING'""",
            (ts, ts, token, job_id),
        )
        conn.commit()
        if cur.rowcount != 1:
            return None
        return self.get(job_id)

    @with_conn
    def mark_completed(self, conn, job_id: str, token: str, result: Any = None) -> bool:
        ts = to_db(utcnow())
        cur = conn.execute(
            """UPDATE jobs SET status='COMPLETED', completed_at=?, updated_at=?, result=?, error=NULL,
                              claim_token=NULL
                WHERE id=? AND status='RUNNING' AND claim_token=?""",
            (ts, ts, json.dumps(result, default=str) if result is not None else None, job_id, token),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def mark_retry(
        self,
        conn,
        job_id: str,
        token: str,
        retry_count: int,
        next_retry_at: Optional[datetime],
        error: Optional[str],
    ) -> bool:
        """RUNNING -> PENDING, eligible again at next_retry_at."""
        ts = to_db(utcnow())
        cur = conn.execute(
            """UPDATE jobs SET status='PENDING', retry_count=?, next_retry_at=?, error=?, updated_at=?,
                              claim_token=NULL
                WHERE id=? AND status='RUNNING' AND claim_token=?""",
            (retry_count, to_db(next_retry_at), _truncate(error), ts, job_id, token),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def mark_failed(self, conn, job_id: str, token: str, retry_count: int, error: Optional[str]) -> bool:
        ts = to_db(utcnow())
        cur = conn.execute(
            """UPDATE jobs SET status='FAILED', retry_count=?, error=?, completed_at=?, updated_at=?,
                              next_retry_at=NULL, claim_token=NULL
                WHERE id=? AND status='RUNNING' AND claim_token=?""",
            (retry_count, _truncate(error), ts, ts, job_id, token),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def fail_pending(self, conn, job_id: str, error: Optional[str]) -> bool:
        """PENDING -> FAILED without running (cancellation of a queued job)."""
        ts = to_db(utcnow())
        cur = conn.execute(
            """UPDATE jobs SET status='FAILED', error=?, completed_at=?, updated_at=?, next_retry_at=NULL
                WHERE id=? AND status='PENDING'""",
            (_truncate(error), ts, ts, job_id),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def running_jobs(self, conn) -> List[Job]:
        rows = conn.execute("SELECT * FROM jobs WHERE status='RUNNING' ORDER BY started_at").fetchall()
        return [_row_to_job(r) for r in rows]

    # ---------- Stats ----------
    @with_conn
    def counts_by_status(self, conn, user_id: Optional[str] = None) -> QueueStats:
        if user_id is not None:
            cur = conn.execute(
                "SELECT status, COUNT(*) FROM jobs WHERE user_id=? GROUP BY status", (user_id,)
            )
        else:
            cur = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
        counts = {status.lower(): count for status, count in cur.fetchall()}
        return QueueStats(**counts)

    # ---------- Config ----------
    @with_conn
    def config_get(self, conn, key: str, default: Optional[str] = None) -> Optional[str]:
        row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row[0] if row else default

    @with_conn
    def config_set(self, conn, key: str, value: str):
        if key not in ALLOWED_CONFIG_KEYS:
            raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )
        conn.commit()

    @with_conn
    def config_all(self, conn) -> Dict[str, str]:
        return {r["key"]: r["value"] for r in conn.execute("SELECT key, value FROM config").fetchall()}


def _truncate(error: Optional[str], limit: int = 2000) -> Optional[str]:
    # keep the row small
    return error[:limit] if error else error
