"""Batch classification of transaction text groups via Claude.

One call covers a whole batch of text groups. The model is asked for a
JSON array with one record per group key. Uses the claude_fn callback
pattern (system: str, prompt: str) -> str so tests never hit the API.

Unlike single-item lookups there is no partial credit: a reply that is
not a JSON array, or that leaves out a requested key or a required
field, raises ClassificationError and the whole import fails.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass

from enrichment.config import Config
from enrichment.database.models import PERIOD_MONTHLY, PERIOD_UNKNOWN, PERIOD_YEARLY

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("key", "category_path", "confidence")

_TRUE_STRINGS = {"true", "yes", "1", "y"}


class ClassificationError(Exception):
    """Raised when the classifier reply cannot be used for the batch."""

    def __init__(self, message: str, raw: str | None = None):
        self.raw = raw
        super().__init__(message)


@dataclass
class ClassifyItem:
    """One text group offered to the classifier."""
    key: str
    text: str
    type_hint: str
    count: int
    amount_min: float | None
    amount_max: float | None


@dataclass
class ClassificationResult:
    """Classifier verdict for one text group."""
    merchant: str | None
    category_path: str
    confidence: float
    is_subscription: bool
    subscription_period: str | None


def build_prompts(items: list[ClassifyItem], config: Config) -> tuple[str, str]:
    """Return (system, user) prompts for a batch."""
    category_list = "\n".join(f"- {p}" for p in config.category_paths())

    system_prompt = (
        "You categorize anonymized bank transactions. Placeholders such as "
        "<IBAN> or <NAME> replace personal data; never guess what they hide.\n"
        "For every input item return one JSON object with these fields:\n"
        '  - "key": the item key, copied exactly\n'
        '  - "merchant": short merchant name, or null if unknown\n'
        '  - "category_path": the best matching category path from the list\n'
        '  - "confidence": your confidence from 0.0 to 1.0\n'
        '  - "is_subscription": true if this looks like a subscription or contract\n'
        '  - "subscription_period": "monthly", "yearly" or "unknown"\n'
        "Return ONLY a JSON array with one object per item, no other text."
    )

    payload = [
        {
            "key": item.key,
            "text": item.text,
            "type": item.type_hint,
            "count": item.count,
            "amount_min": item.amount_min,
            "amount_max": item.amount_max,
        }
        for item in items
    ]
    user_prompt = (
        f"Available categories:\n{category_list}\n\n"
        f"Items:\n{json.dumps(payload, ensure_ascii=False)}"
    )
    return system_prompt, user_prompt


def classify_batch(
    items: list[ClassifyItem],
    config: Config,
    claude_fn,
) -> dict[str, ClassificationResult]:
    """Classify a batch of text groups.

    Args:
        items: Groups to classify, each with a unique key.
        config: Application config (category list, fallback category).
        claude_fn: Callable (system: str, prompt: str) -> str.

    Returns:
        Mapping of item key to ClassificationResult, one per item.

    Raises:
        ClassificationError: If the reply is malformed or incomplete.
        Exceptions from claude_fn propagate unchanged.
    """
    if not items:
        return {}
    system_prompt, user_prompt = build_prompts(items, config)
    response = claude_fn(system_prompt, user_prompt)
    return parse_response(
        response, [item.key for item in items], config.fallback_category,
    )


def extract_json(text: str | None):
    """Decode the first JSON value in a model reply.

    Tolerates ``` code fences and leading prose before the JSON.
    """
    if not text or not text.strip():
        raise ClassificationError("Empty classifier response", raw=text)

    stripped = text.strip()
    if stripped.startswith("```"):
        lines = [
            line for line in stripped.split("\n")
            if not line.strip().startswith("```")
        ]
        stripped = "\n".join(lines).strip()

    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    starts = [i for i in (stripped.find("["), stripped.find("{")) if i != -1]
    if not starts:
        raise ClassificationError("No JSON found in classifier response", raw=text)
    try:
        value, _ = json.JSONDecoder().raw_decode(stripped, min(starts))
    except json.JSONDecodeError as e:
        raise ClassificationError(
            f"Invalid JSON in classifier response: {e}", raw=text,
        ) from e
    return value


def parse_response(
    response: str,
    expected_keys: list[str],
    fallback_category: str,
) -> dict[str, ClassificationResult]:
    """Validate a classifier reply and convert it into results by key."""
    data = extract_json(response)
    if not isinstance(data, list):
        raise ClassificationError(
            f"Classifier response is not a JSON array: {type(data).__name__}",
            raw=response,
        )

    expected = set(expected_keys)
    results: dict[str, ClassificationResult] = {}
    for record in data:
        if not isinstance(record, dict):
            raise ClassificationError(
                f"Classifier record is not an object: {record!r:.200}", raw=response,
            )
        missing = [f for f in REQUIRED_FIELDS if f not in record]
        if missing:
            raise ClassificationError(
                f"Classifier record missing fields {missing}: {record!r:.200}",
                raw=response,
            )
        key = str(record["key"])
        if key not in expected:
            logger.warning("Classifier returned unrequested key '%s', ignoring", key)
            continue
        results[key] = _to_result(record, fallback_category, response)

    absent = expected - results.keys()
    if absent:
        raise ClassificationError(
            f"Classifier response missing keys: {sorted(absent)}", raw=response,
        )
    return results


def _to_result(record: dict, fallback_category: str, raw: str) -> ClassificationResult:
    category = record.get("category_path")
    if isinstance(category, list):
        category = " > ".join(str(part).strip() for part in category if part)
    category = str(category).strip() if category is not None else ""
    if not category:
        category = fallback_category

    merchant = record.get("merchant")
    merchant = str(merchant).strip() if merchant is not None else ""

    is_subscription = _as_bool(record.get("is_subscription"))
    period = None
    if is_subscription:
        period = str(record.get("subscription_period") or "").strip().lower()
        if period not in (PERIOD_MONTHLY, PERIOD_YEARLY):
            period = PERIOD_UNKNOWN

    return ClassificationResult(
        merchant=merchant or None,
        category_path=category,
        confidence=_clamp_confidence(record["confidence"], raw),
        is_subscription=is_subscription,
        subscription_period=period,
    )


def _clamp_confidence(value, raw: str) -> float:
    """Out-of-range numbers are clamped to [0, 1]; anything else is rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ClassificationError(
            f"Classifier confidence is not a number: {value!r:.50}", raw=raw,
        )
    return max(0.0, min(1.0, float(value)))


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)
