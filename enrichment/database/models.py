"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"

JOB_STATUSES = (JOB_QUEUED, JOB_RUNNING, JOB_DONE, JOB_FAILED)

PERIOD_MONTHLY = "monthly"
PERIOD_YEARLY = "yearly"
PERIOD_UNKNOWN = "unknown"

SUBSCRIPTION_PERIODS = (PERIOD_MONTHLY, PERIOD_YEARLY, PERIOD_UNKNOWN)


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Job:
    type: str
    owner_token: str
    id: str = field(default_factory=_new_id)
    payload: dict = field(default_factory=dict)
    status: str = JOB_QUEUED
    attempts: int = 0
    locked_by: str | None = None
    locked_at: str | None = None
    run_after: str = field(default_factory=_now)
    last_error: str | None = None
    created_on: str = field(default_factory=_now)
    finished_on: str | None = None
    requeued_as: str | None = None


@dataclass
class Transaction:
    owner_token: str
    import_id: str
    booking_hash: str
    booking_text: str | None
    booking_amount_value: float | None
    booking_date: str | None
    id: str = field(default_factory=_new_id)
    booking_type: str | None = None
    merchant_normalized: str | None = None
    booking_category: str | None = None
    category_confidence: float | None = None
    category_source: str | None = None
    is_subscription: bool = False
    subscription_period: str | None = None
    is_recurring: bool = False
    subscription_key: str | None = None
    recurrence_score: float | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
