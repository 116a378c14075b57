import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from .errors import JobNotFoundError, StateConflictError
from .schemas import TERMINAL_STATUSES, Job, JobError, JobPayload, ProductBundle, TraceEntry

# Allowed transitions: source status -> target statuses.
TRANSITIONS: Dict[str, tuple] = {
    "pending": ("running",),
    "running": ("done", "failed", "pending"),
    "done": (),
    "failed": (),
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


def _monotonic_now(previous: Optional[str]) -> str:
    now = utc_now()
    if previous and previous > now:
        return previous
    return now


def _trace_json(trace: Iterable[TraceEntry]) -> str:
    return _json_dumps([entry.model_dump() for entry in trace])


class JobStore:
    """Durable identification job records with a guarded status machine.

    Every transition runs inside BEGIN IMMEDIATE so a read-check-write is atomic
    across concurrent workers; illegal transitions raise StateConflictError.
    """

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS identification_jobs(
                    job_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    payload_json TEXT,
                    result_json TEXT,
                    trace_json TEXT,
                    error_json TEXT,
                    last_error_json TEXT,
                    model_used TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    started_at TEXT,
                    finished_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_identification_jobs_status
                    ON identification_jobs(status, created_at);
                """
            )
            await db.commit()

    def _row_to_job(self, row: aiosqlite.Row) -> Job:
        error = _json_loads(row["error_json"], None)
        last_error = _json_loads(row["last_error_json"], None)
        result = _json_loads(row["result_json"], None)
        return Job(
            id=row["job_id"],
            status=row["status"],
            attempts=int(row["attempts"] or 0),
            payload=JobPayload.model_validate(_json_loads(row["payload_json"], {})),
            result=ProductBundle.model_validate(result) if result is not None else None,
            trace=[TraceEntry.model_validate(e) for e in _json_loads(row["trace_json"], [])],
            error=JobError.model_validate(error) if error else None,
            last_error=JobError.model_validate(last_error) if last_error else None,
            model_used=row["model_used"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )

    async def _fetch(self, db: aiosqlite.Connection, job_id: str) -> Optional[aiosqlite.Row]:
        cursor = await db.execute("SELECT * FROM identification_jobs WHERE job_id=?", (job_id,))
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def create(self, payload: JobPayload, job_id: Optional[str] = None) -> Job:
        job_id = job_id or uuid.uuid4().hex
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO identification_jobs(job_id, status, attempts, payload_json, trace_json, "
                "created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
                (job_id, "pending", 0, payload.model_dump_json(), "[]", now, now),
            )
            await db.commit()
        return await self.get(job_id)

    async def get(self, job_id: str) -> Job:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch(db, job_id)
        if not row:
            raise JobNotFoundError(job_id)
        return self._row_to_job(row)

    async def list_by_status(self, statuses: Iterable[str]) -> List[Job]:
        wanted = list(statuses)
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM identification_jobs WHERE status IN ({placeholders}) ORDER BY created_at, job_id",
                tuple(wanted),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_job(row) for row in rows]

    async def _transition(
        self,
        job_id: str,
        target: str,
        updates: Optional[Dict[str, Any]] = None,
        bump_attempts: bool = False,
    ) -> Job:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch(db, job_id)
            if not row:
                await db.execute("ROLLBACK")
                raise JobNotFoundError(job_id)
            current = row["status"]
            if target not in TRANSITIONS.get(current, ()):
                await db.execute("ROLLBACK")
                raise StateConflictError(job_id, current, target)
            now = _monotonic_now(row["updated_at"])
            values: Dict[str, Any] = {"status": target, "updated_at": now, **(updates or {})}
            if bump_attempts:
                values["attempts"] = int(row["attempts"] or 0) + 1
            if target == "running" and not row["started_at"]:
                values["started_at"] = now
            if target in TERMINAL_STATUSES:
                values["finished_at"] = now
            assignments = ", ".join(f"{column}=?" for column in values)
            await db.execute(
                f"UPDATE identification_jobs SET {assignments} WHERE job_id=?",
                (*values.values(), job_id),
            )
            await db.commit()
            row = await self._fetch(db, job_id)
        return self._row_to_job(row)

    async def mark_running(self, job_id: str) -> Job:
        """pending -> running; bumps attempts and sets started_at on first pickup."""
        return await self._transition(job_id, "running", bump_attempts=True)

    async def mark_done(
        self,
        job_id: str,
        result: ProductBundle,
        trace: List[TraceEntry],
        model_used: Optional[str] = None,
    ) -> Job:
        return await self._transition(
            job_id,
            "done",
            {
                "result_json": result.model_dump_json(),
                "trace_json": _trace_json(trace),
                "error_json": None,
                "model_used": model_used,
            },
        )

    async def mark_failed(
        self,
        job_id: str,
        error: Dict[str, Any],
        trace: List[TraceEntry],
        model_used: Optional[str] = None,
    ) -> Job:
        return await self._transition(
            job_id,
            "failed",
            {
                "error_json": _json_dumps(JobError.model_validate(error).model_dump()),
                "result_json": None,
                "trace_json": _trace_json(trace),
                "model_used": model_used,
            },
        )

    async def requeue(self, job_id: str, last_error: Optional[Dict[str, Any]] = None) -> Job:
        """running -> pending, for retries and startup recovery. attempts is preserved."""
        updates: Dict[str, Any] = {}
        if last_error is not None:
            updates["last_error_json"] = _json_dumps(last_error)
        return await self._transition(job_id, "pending", updates)
