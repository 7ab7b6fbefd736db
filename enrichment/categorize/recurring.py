"""Recurring and subscription detection over an owner's history.

Two passes run after categorization:

1. Coarse recurring flag: a merchant with >=3 transactions over >=3
   distinct months in the trailing 18 months is recurring.
2. Pattern detector: transactions are grouped into cohorts keyed by
   (merchant, amount rounded to cents). The day gaps between consecutive
   cohort members are bucketed:

     25-35 days   -> monthly signal
     330-400 days -> yearly signal

   A cohort with >=3 occurrences and >=2 monthly gaps is monthly, score =
   monthly gaps / all gaps. Otherwise a cohort with a yearly gap is
   yearly, score = yearly gaps / all gaps. Gaps between the buckets count
   for neither, so quarterly or irregular charges are not mistaken for
   subscriptions.

Verdicts only ever add information: flags are OR'd into the stored
values and a stored monthly/yearly period is never replaced.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date

from enrichment.config import Config
from enrichment.database.models import (
    PERIOD_MONTHLY,
    PERIOD_UNKNOWN,
    PERIOD_YEARLY,
    Transaction,
)
from enrichment.database.repository import Repository

logger = logging.getLogger(__name__)

MONTHLY_GAP_DAYS = (25, 35)
YEARLY_GAP_DAYS = (330, 400)
MIN_MONTHLY_OCCURRENCES = 3
MIN_MONTHLY_GAPS = 2


@dataclass
class Cohort:
    """An owner's transactions sharing merchant and rounded amount."""
    merchant: str
    amount: float
    members: list[Transaction] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.merchant}|{self.amount:.2f}"

    @property
    def dates(self) -> list[date]:
        return [_parse_date(t.booking_date) for t in self.members]


@dataclass
class CohortVerdict:
    """Outcome of analyzing one cohort."""
    key: str
    period: str | None
    score: float
    is_recurring: bool
    is_subscription: bool
    gaps: list[int]


@dataclass
class DetectionResult:
    """Summary of a detector run."""
    cohorts: int = 0
    recurring: int = 0
    subscriptions: int = 0
    monthly: int = 0
    yearly: int = 0
    updated: int = 0


def _parse_date(value: str) -> date:
    return date.fromisoformat(value[:10])


def months_ago(today: date, months: int) -> date:
    """Same day `months` calendar months earlier, clamped to month end."""
    total = today.year * 12 + (today.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def day_gaps(dates: list[date]) -> list[int]:
    """Days between consecutive dates (dates must be sorted)."""
    return [(b - a).days for a, b in zip(dates, dates[1:])]


def classify_period(
    gaps: list[int],
    monthly_bucket: tuple[int, int] = MONTHLY_GAP_DAYS,
    yearly_bucket: tuple[int, int] = YEARLY_GAP_DAYS,
) -> tuple[str | None, float]:
    """Classify a cohort's billing period from its day gaps.

    Returns (period, score); period is None with score 0.0 when neither
    pattern holds.
    """
    if not gaps:
        return None, 0.0
    occurrences = len(gaps) + 1
    monthly = sum(1 for g in gaps if monthly_bucket[0] <= g <= monthly_bucket[1])
    yearly = sum(1 for g in gaps if yearly_bucket[0] <= g <= yearly_bucket[1])

    if occurrences >= MIN_MONTHLY_OCCURRENCES and monthly >= MIN_MONTHLY_GAPS:
        return PERIOD_MONTHLY, monthly / len(gaps)
    if yearly >= 1:
        return PERIOD_YEARLY, yearly / len(gaps)
    return None, 0.0


def build_cohorts(txns: list[Transaction]) -> list[Cohort]:
    """Group transactions by (merchant, amount rounded to 2 decimals).

    Members of each cohort are sorted chronologically.
    """
    cohorts: dict[tuple[str, float], Cohort] = {}
    for txn in txns:
        amount = round(float(txn.booking_amount_value), 2)
        key = (txn.merchant_normalized, amount)
        if key not in cohorts:
            cohorts[key] = Cohort(merchant=txn.merchant_normalized, amount=amount)
        cohorts[key].members.append(txn)
    for cohort in cohorts.values():
        cohort.members.sort(key=lambda t: (t.booking_date, t.id))
    return list(cohorts.values())


def evaluate_cohort(cohort: Cohort, config: Config) -> CohortVerdict:
    """Compute period, score and flags for a cohort of two or more members."""
    rec = config.recurrence
    dates = cohort.dates
    gaps = day_gaps(dates)
    period, score = classify_period(
        gaps, rec["monthly_gap_days"], rec["yearly_gap_days"],
    )

    distinct_months = {(d.year, d.month) for d in dates}
    is_recurring = period is not None or (
        len(distinct_months) >= rec["min_distinct_months"]
        and len(cohort.members) >= rec["min_occurrences"]
    )

    hints = config.subscription_hints
    hinted = any(
        hint in (t.booking_category or "").lower()
        for t in cohort.members
        for hint in hints
    )
    is_subscription = period is not None or hinted

    return CohortVerdict(
        key=cohort.key,
        period=period,
        score=score,
        is_recurring=is_recurring,
        is_subscription=is_subscription,
        gaps=gaps,
    )


def flag_recurring(
    owner_token: str,
    repo: Repository,
    config: Config,
    today: date | None = None,
) -> int:
    """Coarse pass: flag merchants seen in enough distinct recent months.

    Returns the number of newly flagged transactions.
    """
    rec = config.recurrence
    today = today or date.today()
    since = months_ago(today, rec["coarse_window_months"]).isoformat()
    flagged = repo.flag_recurring_merchants(
        owner_token, since,
        min_count=rec["min_occurrences"],
        min_months=rec["min_distinct_months"],
    )
    logger.debug("Coarse recurring pass flagged %d transactions since %s", flagged, since)
    return flagged


def detect_patterns(
    owner_token: str,
    repo: Repository,
    config: Config,
    today: date | None = None,
) -> DetectionResult:
    """Run the cohort detector over an owner's trailing history.

    Each cohort is committed on its own, so a failure partway through
    leaves earlier cohorts updated. Re-running recomputes the same
    verdicts.
    """
    rec = config.recurrence
    today = today or date.today()
    since = months_ago(today, rec["pattern_window_months"]).isoformat()

    candidates = repo.get_pattern_candidates(owner_token, since)
    result = DetectionResult()

    for cohort in build_cohorts(candidates):
        if len(cohort.members) < 2:
            continue
        verdict = evaluate_cohort(cohort, config)
        result.cohorts += 1

        period = verdict.period
        if period is None and verdict.is_subscription:
            period = PERIOD_UNKNOWN

        result.updated += repo.apply_cohort(
            owner_token,
            [t.id for t in cohort.members],
            subscription_key=verdict.key,
            recurrence_score=verdict.score,
            is_recurring=verdict.is_recurring,
            is_subscription=verdict.is_subscription,
            subscription_period=period,
        )

        if verdict.is_recurring:
            result.recurring += 1
        if verdict.is_subscription:
            result.subscriptions += 1
        if verdict.period == PERIOD_MONTHLY:
            result.monthly += 1
        elif verdict.period == PERIOD_YEARLY:
            result.yearly += 1

    logger.info(
        "Pattern detector for owner: %d cohorts, %d recurring, %d subscriptions"
        " (%d monthly, %d yearly)",
        result.cohorts, result.recurring, result.subscriptions,
        result.monthly, result.yearly,
    )
    return result
