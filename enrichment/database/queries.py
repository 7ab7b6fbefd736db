"""Aggregate queries used by operational tooling.

These go beyond single-table CRUD: counts across the job queue and
enrichment coverage of the transactions table.
"""

from __future__ import annotations

import sqlite3


def get_status_counts(conn: sqlite3.Connection, owner_token: str | None = None) -> dict:
    """Counts for the `enrich status` command.

    Transaction counts are restricted to one owner when owner_token is
    given. Job counts always cover the whole queue.
    """
    where = ""
    params: tuple = ()
    if owner_token is not None:
        where = " WHERE owner_token = ?"
        params = (owner_token,)
    row = conn.execute(
        "SELECT"
        "  COUNT(*) AS total_txns,"
        "  COALESCE(SUM(CASE WHEN booking_category IS NULL"
        "    OR booking_category = '' THEN 1 ELSE 0 END), 0) AS uncategorized,"
        "  COALESCE(SUM(is_recurring), 0) AS recurring,"
        "  COALESCE(SUM(is_subscription), 0) AS subscriptions,"
        "  COUNT(DISTINCT subscription_key) AS cohorts"
        f" FROM transactions{where}",
        params,
    ).fetchone()
    counts = dict(row)

    job_rows = conn.execute(
        "SELECT status, COUNT(*) AS cnt FROM jobs GROUP BY status"
    ).fetchall()
    jobs = {r["status"]: r["cnt"] for r in job_rows}
    for status in ("queued", "running", "done", "failed"):
        counts[f"jobs_{status}"] = jobs.get(status, 0)
    return counts


def get_oldest_running(conn: sqlite3.Connection, limit: int = 10) -> list[dict]:
    """Running jobs ordered by lease age, oldest first.

    Used to spot workers that crashed while holding a lease.
    """
    rows = conn.execute(
        "SELECT id, type, owner_token, locked_by, locked_at, attempts"
        " FROM jobs WHERE status = 'running'"
        " ORDER BY locked_at ASC LIMIT ?",
        (limit,),
    ).fetchall()
    return [dict(r) for r in rows]
