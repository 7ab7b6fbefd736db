"""Categorization of one import: group → batch → classify → write.

Steps:
1.  Load the import's transactions that have no category yet
2.  Group them by exact booking_text (anonymized text is the key)
3.  Split groups into batches of config.batch_size
4.  Classify each batch with one Claude call
5.  Write each batch's results in one local transaction
6.  Post-steps over the owner's whole history:
    a. coarse recurring flag (merchants in >=3 distinct months)
    b. cohort pattern detector (best-effort)

A failing batch aborts the import. Batches written before it stay
committed; a retry picks up only the rows still lacking a category.
The pattern detector is layered on top: if it raises, the error is
logged and recorded on the result and the import still counts as
categorized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from enrichment.categorize.classifier import ClassifyItem, classify_batch
from enrichment.categorize.merchant import clean_merchant, normalize_merchant
from enrichment.categorize.recurring import (
    DetectionResult,
    detect_patterns,
    flag_recurring,
)
from enrichment.config import Config
from enrichment.database.models import Transaction
from enrichment.database.repository import Repository

logger = logging.getLogger(__name__)

CATEGORY_SOURCE_LLM = "llm"


@dataclass
class TextGroup:
    """Uncategorized transactions of one import sharing booking_text."""
    key: str
    text: str
    members: list[Transaction] = field(default_factory=list)

    def to_item(self) -> ClassifyItem:
        amounts = [
            t.booking_amount_value for t in self.members
            if t.booking_amount_value is not None
        ]
        type_hint = next(
            (t.booking_type for t in self.members if t.booking_type), "unknown",
        )
        return ClassifyItem(
            key=self.key,
            text=self.text,
            type_hint=type_hint,
            count=len(self.members),
            amount_min=min(amounts) if amounts else None,
            amount_max=max(amounts) if amounts else None,
        )


@dataclass
class CategorizeImportResult:
    """Outcome of categorizing one import.

    `degraded` is True when categorization succeeded but the pattern
    detector failed; the job still completes.
    """
    import_id: str
    total: int = 0
    groups: int = 0
    batches: int = 0
    categorized: int = 0
    recurring_flagged: int = 0
    detection: DetectionResult | None = None
    detector_error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.detector_error is not None


def group_by_text(txns: list[Transaction]) -> list[TextGroup]:
    """Group transactions by exact booking_text, keeping first-seen order."""
    groups: dict[str, TextGroup] = {}
    for txn in txns:
        text = txn.booking_text or ""
        if text not in groups:
            groups[text] = TextGroup(key=f"g{len(groups) + 1}", text=text)
        groups[text].members.append(txn)
    return list(groups.values())


def make_batches(groups: list[TextGroup], batch_size: int) -> list[list[TextGroup]]:
    return [groups[i : i + batch_size] for i in range(0, len(groups), batch_size)]


def categorize_import(
    import_id: str,
    owner_token: str,
    repo: Repository,
    config: Config,
    claude_fn,
    today: date | None = None,
) -> CategorizeImportResult:
    """Categorize all uncategorized transactions of one import.

    Args:
        import_id: Import whose transactions are processed.
        owner_token: Owner the import belongs to; scopes every query.
        repo: Database repository.
        config: Application config.
        claude_fn: Callable (system: str, prompt: str) -> str.
        today: Reference date for the recurrence windows (default: today).

    Raises:
        ClassificationError: A batch reply was malformed.
        Any exception from claude_fn or the repository.
    """
    result = CategorizeImportResult(import_id=import_id)
    pending = repo.get_uncategorized_for_import(owner_token, import_id)
    result.total = len(pending)
    if not pending:
        logger.info("Import %s has no uncategorized transactions", import_id)
        return result

    groups = group_by_text(pending)
    batches = make_batches(groups, config.batch_size)
    result.groups = len(groups)

    for n, batch in enumerate(batches, start=1):
        verdicts = classify_batch([g.to_item() for g in batch], config, claude_fn)
        assignments = []
        for group in batch:
            verdict = verdicts[group.key]
            merchant = clean_merchant(verdict.merchant or "")
            if not merchant:
                merchant = normalize_merchant(group.text, config.merchant_tokens)
            assignments.append({
                "txn_ids": [t.id for t in group.members],
                "category": verdict.category_path,
                "confidence": verdict.confidence,
                "source": CATEGORY_SOURCE_LLM,
                "merchant": merchant,
                "is_subscription": verdict.is_subscription,
                "subscription_period": (
                    verdict.subscription_period if verdict.is_subscription else None
                ),
            })
        result.categorized += repo.apply_categories(owner_token, assignments)
        result.batches += 1
        logger.debug(
            "Import %s batch %d/%d: %d groups written",
            import_id, n, len(batches), len(batch),
        )

    result.recurring_flagged = flag_recurring(owner_token, repo, config, today=today)

    try:
        result.detection = detect_patterns(owner_token, repo, config, today=today)
    except Exception as e:
        logger.exception("Pattern detection failed after import %s", import_id)
        result.detector_error = str(e) or type(e).__name__

    logger.info(
        "Categorized import %s: %d transactions in %d groups, %d batches%s",
        import_id, result.categorized, result.groups, result.batches,
        " (detector failed)" if result.degraded else "",
    )
    return result
