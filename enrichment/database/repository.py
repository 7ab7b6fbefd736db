"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. Every transaction query is scoped to one
owner_token; nothing reads or writes across owners.

The job queue lives in the same database. claim_job() is the only
operation that needs mutual exclusion between workers: it takes the
write lock with BEGIN IMMEDIATE and picks + leases the oldest eligible
row in a single UPDATE ... RETURNING statement, so the lock is held for
one statement and two workers can never lease the same job.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .models import (
    JOB_DONE,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_STATUSES,
    Job,
    Transaction,
)

MAX_ERROR_LENGTH = 2000

# Stay well inside SQLite's bound-variable limit for IN (...) lists
_CHUNK_SIZE = 500


class JobNotFoundError(Exception):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class JobStateError(Exception):
    """Raised when a job transition is attempted from the wrong status."""

    def __init__(self, job_id: str, status: str, target: str):
        self.job_id = job_id
        self.status = status
        self.target = target
        super().__init__(
            f"Cannot move job '{job_id}' from '{status}' to '{target}'"
        )


def _iso(dt: datetime | None = None) -> str:
    if dt is None:
        dt = datetime.now(timezone.utc)
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _chunks(ids: list[str]):
    for i in range(0, len(ids), _CHUNK_SIZE):
        yield ids[i : i + _CHUNK_SIZE]


class Repository:
    def __init__(self, db_path: str = ":memory:", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                self.db_path, timeout=self.timeout, check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Jobs ────────────────────────────────────────────────

    def enqueue_job(
        self,
        job_type: str,
        payload: dict | None,
        owner_token: str,
        run_after: datetime | None = None,
    ) -> str:
        """Insert a queued job and return its id."""
        job = Job(type=job_type, owner_token=owner_token, payload=payload or {})
        if run_after is not None:
            job.run_after = _iso(run_after)
        self._insert_job(job)
        self.conn.commit()
        return job.id

    def requeue_failed_job(self, job_id: str) -> str | None:
        """Queue a copy of a failed job and link the failed row to it.

        Returns the new job id, or None when the failed row was already
        requeued. The failed row keeps its status and error.
        """
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise JobNotFoundError(job_id)
            failed = self._row_to_job(row)
            if failed.status != JOB_FAILED:
                raise JobStateError(job_id, failed.status, JOB_QUEUED)
            if failed.requeued_as is not None:
                self.conn.rollback()
                return None
            job = Job(type=failed.type, owner_token=failed.owner_token, payload=failed.payload)
            self._insert_job(job)
            self.conn.execute(
                "UPDATE jobs SET requeued_as = ? WHERE id = ?", (job.id, job_id),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return job.id

    def _insert_job(self, job: Job) -> None:
        self.conn.execute(
            "INSERT INTO jobs"
            " (id, type, payload, owner_token, status, attempts,"
            "  run_after, created_on)"
            " VALUES (?,?,?,?,?,?,?,?)",
            (job.id, job.type, json.dumps(job.payload), job.owner_token,
             job.status, job.attempts, job.run_after, job.created_on),
        )

    def claim_job(self, worker_id: str, now: datetime | None = None) -> Job | None:
        """Lease the oldest eligible queued job for worker_id.

        Eligible means status='queued' and run_after <= now. Ordering is
        created_on, then insertion order. Returns None when nothing is
        eligible.
        """
        now_iso = _iso(now)
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            rows = self.conn.execute(
                "UPDATE jobs SET status = ?, locked_by = ?, locked_at = ?,"
                "  attempts = attempts + 1"
                " WHERE id = ("
                "   SELECT id FROM jobs"
                "   WHERE status = ? AND run_after <= ?"
                "   ORDER BY created_on ASC, rowid ASC"
                "   LIMIT 1"
                " ) AND status = ?"
                " RETURNING *",
                (JOB_RUNNING, worker_id, now_iso, JOB_QUEUED, now_iso, JOB_QUEUED),
            ).fetchall()
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self._row_to_job(rows[0]) if rows else None

    def complete_job(self, job_id: str) -> None:
        """Transition running -> done. A job already done is left as is."""
        cur = self.conn.execute(
            "UPDATE jobs SET status = ?, finished_on = ?"
            " WHERE id = ? AND status = ?",
            (JOB_DONE, _iso(), job_id, JOB_RUNNING),
        )
        self.conn.commit()
        if cur.rowcount == 0:
            job = self.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JOB_DONE:
                raise JobStateError(job_id, job.status, JOB_DONE)

    def fail_job(self, job_id: str, error_message: str) -> None:
        """Transition running -> failed, keeping a truncated error message."""
        message = str(error_message)[:MAX_ERROR_LENGTH]
        cur = self.conn.execute(
            "UPDATE jobs SET status = ?, last_error = ?, finished_on = ?"
            " WHERE id = ? AND status = ?",
            (JOB_FAILED, message, _iso(), job_id, JOB_RUNNING),
        )
        self.conn.commit()
        if cur.rowcount == 0:
            job = self.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            raise JobStateError(job_id, job.status, JOB_FAILED)

    def get_job(self, job_id: str) -> Job | None:
        row = self.conn.execute(
            "SELECT * FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        status: str | None = None,
        limit: int = 50,
        job_type: str | None = None,
        requeued: bool | None = None,
    ) -> list[Job]:
        """Newest jobs first. requeued=False keeps only rows not yet requeued."""
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if job_type is not None:
            clauses.append("type = ?")
            params.append(job_type)
        if requeued is True:
            clauses.append("requeued_as IS NOT NULL")
        elif requeued is False:
            clauses.append("requeued_as IS NULL")
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_on DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def count_jobs_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in JOB_STATUSES}
        rows = self.conn.execute(
            "SELECT status, COUNT(*) AS cnt FROM jobs GROUP BY status"
        ).fetchall()
        for r in rows:
            counts[r["status"]] = r["cnt"]
        return counts

    def requeue_stale_jobs(
        self,
        older_than_seconds: float,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> tuple[int, int]:
        """Recover jobs left running by a crashed worker.

        Running jobs whose lease is older than older_than_seconds go back
        to 'queued'. When max_attempts is given, stale jobs that already
        used that many attempts are failed instead.

        Returns (requeued, failed) counts.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        cutoff = _iso(now - timedelta(seconds=older_than_seconds))
        failed = 0
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            if max_attempts is not None:
                failed = self.conn.execute(
                    "UPDATE jobs SET status = ?, last_error = ?, finished_on = ?"
                    " WHERE status = ? AND locked_at < ? AND attempts >= ?",
                    (JOB_FAILED, "max attempts exceeded", _iso(now),
                     JOB_RUNNING, cutoff, max_attempts),
                ).rowcount
            requeued = self.conn.execute(
                "UPDATE jobs SET status = ?, locked_by = NULL, locked_at = NULL"
                " WHERE status = ? AND locked_at < ?",
                (JOB_QUEUED, JOB_RUNNING, cutoff),
            ).rowcount
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return requeued, failed

    # ── Transactions ────────────────────────────────────────

    _TXN_COLUMNS = (
        "id, owner_token, import_id, booking_hash, booking_text, booking_type,"
        " booking_amount_value, booking_date, merchant_normalized,"
        " booking_category, category_confidence, category_source,"
        " is_subscription, subscription_period, is_recurring,"
        " subscription_key, recurrence_score, created_at, updated_at"
    )

    @staticmethod
    def _txn_values(t: Transaction) -> tuple:
        return (
            t.id, t.owner_token, t.import_id, t.booking_hash, t.booking_text,
            t.booking_type, t.booking_amount_value, t.booking_date,
            t.merchant_normalized, t.booking_category, t.category_confidence,
            t.category_source, int(t.is_subscription), t.subscription_period,
            int(t.is_recurring), t.subscription_key, t.recurrence_score,
            t.created_at, t.updated_at,
        )

    def insert_transaction(self, txn: Transaction) -> Transaction:
        self.conn.execute(
            f"INSERT INTO transactions ({self._TXN_COLUMNS})"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            self._txn_values(txn),
        )
        self.conn.commit()
        return txn

    def insert_transactions_batch(self, txns: list[Transaction]):
        """Insert multiple transactions atomically.

        Uses a transaction wrapper so either all inserts succeed or none do.
        """
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(
                f"INSERT INTO transactions ({self._TXN_COLUMNS})"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                [self._txn_values(t) for t in txns],
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions_by_import_id(
        self, owner_token: str, import_id: str
    ) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE owner_token = ? AND import_id = ?"
            " ORDER BY booking_date, rowid",
            (owner_token, import_id),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_uncategorized_for_import(
        self, owner_token: str, import_id: str
    ) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE owner_token = ? AND import_id = ?"
            "   AND (booking_category IS NULL OR booking_category = '')"
            " ORDER BY rowid",
            (owner_token, import_id),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_for_owner(
        self, owner_token: str, date_from: str | None = None,
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE owner_token = ?"
        params: list = [owner_token]
        if date_from:
            sql += " AND booking_date >= ?"
            params.append(date_from)
        sql += " ORDER BY booking_date, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def apply_categories(self, owner_token: str, assignments: list[dict]) -> int:
        """Write classifier results for one batch in a single transaction.

        Each assignment dict has keys: txn_ids, category, confidence,
        source, merchant, is_subscription, subscription_period.
        Returns the number of transaction rows updated.
        """
        updated = 0
        try:
            self.conn.execute("BEGIN")
            for a in assignments:
                for chunk in _chunks(list(a["txn_ids"])):
                    ph = ",".join("?" * len(chunk))
                    cur = self.conn.execute(
                        "UPDATE transactions SET"
                        "  booking_category = ?, category_confidence = ?,"
                        "  category_source = ?, merchant_normalized = ?,"
                        "  is_subscription = ?, subscription_period = ?,"
                        "  updated_at = CURRENT_TIMESTAMP"
                        f" WHERE owner_token = ? AND id IN ({ph})",
                        [a["category"], a["confidence"], a["source"],
                         a["merchant"], int(a["is_subscription"]),
                         a["subscription_period"], owner_token, *chunk],
                    )
                    updated += cur.rowcount
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return updated

    # ── Recurrence ──────────────────────────────────────────

    def flag_recurring_merchants(
        self,
        owner_token: str,
        since: str,
        min_count: int = 3,
        min_months: int = 3,
    ) -> int:
        """Flag transactions of merchants seen often enough since a date.

        A merchant qualifies with at least min_count transactions spread
        over at least min_months distinct calendar months on or after
        since (YYYY-MM-DD). Returns the number of newly flagged rows.
        """
        try:
            self.conn.execute("BEGIN")
            cur = self.conn.execute(
                "UPDATE transactions SET is_recurring = 1,"
                "  updated_at = CURRENT_TIMESTAMP"
                " WHERE owner_token = ? AND booking_date >= ?"
                "   AND is_recurring = 0"
                "   AND merchant_normalized IN ("
                "     SELECT merchant_normalized FROM transactions"
                "     WHERE owner_token = ? AND booking_date >= ?"
                "       AND merchant_normalized IS NOT NULL"
                "       AND merchant_normalized != ''"
                "     GROUP BY merchant_normalized"
                "     HAVING COUNT(*) >= ?"
                "        AND COUNT(DISTINCT substr(booking_date, 1, 7)) >= ?"
                "   )",
                (owner_token, since, owner_token, since, min_count, min_months),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return cur.rowcount

    def get_pattern_candidates(
        self, owner_token: str, since: str
    ) -> list[Transaction]:
        """Positive-amount transactions with a known merchant since a date.

        Sorted by merchant, amount, then date so cohorts are contiguous.
        """
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE owner_token = ?"
            "   AND booking_amount_value > 0"
            "   AND merchant_normalized IS NOT NULL AND merchant_normalized != ''"
            "   AND booking_date IS NOT NULL AND booking_date >= ?"
            " ORDER BY merchant_normalized, booking_amount_value, booking_date, rowid",
            (owner_token, since),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def apply_cohort(
        self,
        owner_token: str,
        txn_ids: list[str],
        subscription_key: str,
        recurrence_score: float,
        is_recurring: bool,
        is_subscription: bool,
        subscription_period: str | None,
    ) -> int:
        """Write one cohort's verdict onto its members in one transaction.

        Flags are OR'd with their current values and an existing period
        other than 'unknown' is never replaced.
        """
        updated = 0
        try:
            self.conn.execute("BEGIN")
            for chunk in _chunks(list(txn_ids)):
                ph = ",".join("?" * len(chunk))
                cur = self.conn.execute(
                    "UPDATE transactions SET"
                    "  subscription_key = ?,"
                    "  recurrence_score = ?,"
                    "  is_recurring = (is_recurring OR ?),"
                    "  is_subscription = (is_subscription OR ?),"
                    "  subscription_period = CASE"
                    "    WHEN ? IS NOT NULL AND (subscription_period IS NULL"
                    "         OR subscription_period = 'unknown') THEN ?"
                    "    ELSE subscription_period END,"
                    "  updated_at = CURRENT_TIMESTAMP"
                    f" WHERE owner_token = ? AND id IN ({ph})",
                    [subscription_key, recurrence_score,
                     int(is_recurring), int(is_subscription),
                     subscription_period, subscription_period,
                     owner_token, *chunk],
                )
                updated += cur.rowcount
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return updated

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"], type=row["type"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            owner_token=row["owner_token"], status=row["status"],
            attempts=row["attempts"], locked_by=row["locked_by"],
            locked_at=row["locked_at"], run_after=row["run_after"],
            last_error=row["last_error"], created_on=row["created_on"],
            finished_on=row["finished_on"], requeued_as=row["requeued_as"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], owner_token=row["owner_token"],
            import_id=row["import_id"], booking_hash=row["booking_hash"],
            booking_text=row["booking_text"],
            booking_type=row["booking_type"],
            booking_amount_value=row["booking_amount_value"],
            booking_date=row["booking_date"],
            merchant_normalized=row["merchant_normalized"],
            booking_category=row["booking_category"],
            category_confidence=row["category_confidence"],
            category_source=row["category_source"],
            is_subscription=bool(row["is_subscription"]),
            subscription_period=row["subscription_period"],
            is_recurring=bool(row["is_recurring"]),
            subscription_key=row["subscription_key"],
            recurrence_score=row["recurrence_score"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
