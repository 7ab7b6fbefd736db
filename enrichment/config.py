"""YAML configuration loader for the enrichment worker.

Loads the seed config files from the config/ directory:
  categories.yaml, rules.yaml
"""

from pathlib import Path

import yaml

DEFAULT_BATCH_SIZE = 30
DEFAULT_POLL_INTERVAL = 0.7
DEFAULT_MERCHANT_TOKENS = 3
DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 4096

DEFAULT_SUBSCRIPTION_HINTS = (
    "abo", "subscription", "insurance", "versicherung", "rent", "miete",
    "internet", "phone", "telefon", "streaming",
)


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._categories: list[dict] | None = None
        self._rules: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def categories(self) -> list[dict]:
        if self._categories is None:
            data = self._load("categories.yaml")
            if isinstance(data, dict):
                self._categories = data.get("tree", data.get("categories", data))
            else:
                self._categories = data
        return self._categories

    @property
    def rules(self) -> dict:
        if self._rules is None:
            self._rules = self._load("rules.yaml")
        return self._rules

    def _section(self, name: str) -> dict:
        section = self.rules.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"rules.yaml section '{name}' must be a mapping")
        return section

    # ── Categorization ────────────────────────────────────

    @property
    def batch_size(self) -> int:
        """Maximum number of text groups sent in one classifier call."""
        size = int(self._section("categorization").get("batch_size", DEFAULT_BATCH_SIZE))
        if size < 1:
            raise ValueError(f"batch_size must be positive, got {size}")
        return size

    @property
    def fallback_category(self) -> str:
        """Category written when the classifier returns an empty path."""
        return self._section("categorization").get("fallback_category", "Uncategorized")

    @property
    def merchant_tokens(self) -> int:
        return int(self._section("categorization").get("merchant_tokens", DEFAULT_MERCHANT_TOKENS))

    @property
    def model(self) -> str:
        return self._section("categorization").get("model", DEFAULT_MODEL)

    @property
    def max_tokens(self) -> int:
        return int(self._section("categorization").get("max_tokens", DEFAULT_MAX_TOKENS))

    def category_paths(self) -> list[str]:
        """Walk the categories tree and return leaf paths like 'Housing > Rent'."""
        paths: list[str] = []

        def _walk(nodes: list[dict], ancestors: list[str]) -> None:
            for node in nodes:
                name = node.get("name", "")
                if not name:
                    continue
                children = node.get("children", [])
                trail = ancestors + [name]
                if children:
                    _walk(children, trail)
                else:
                    paths.append(" > ".join(trail))

        _walk(self.categories, [])
        return paths

    # ── Worker ────────────────────────────────────────────

    @property
    def poll_interval(self) -> float:
        """Seconds a worker sleeps when no job is eligible."""
        return float(self._section("worker").get("poll_interval", DEFAULT_POLL_INTERVAL))

    # ── Recurrence ────────────────────────────────────────

    @property
    def recurrence(self) -> dict:
        """Recurrence thresholds with defaults filled in.

        Keys: coarse_window_months, min_occurrences, min_distinct_months,
        pattern_window_months, monthly_gap_days, yearly_gap_days.
        """
        raw = self._section("recurrence")
        monthly = tuple(raw.get("monthly_gap_days", (25, 35)))
        yearly = tuple(raw.get("yearly_gap_days", (330, 400)))
        for label, bucket in (("monthly_gap_days", monthly), ("yearly_gap_days", yearly)):
            if len(bucket) != 2 or bucket[0] > bucket[1]:
                raise ValueError(f"{label} must be [min, max], got {list(bucket)}")
        return {
            "coarse_window_months": int(raw.get("coarse_window_months", 18)),
            "min_occurrences": int(raw.get("min_occurrences", 3)),
            "min_distinct_months": int(raw.get("min_distinct_months", 3)),
            "pattern_window_months": int(raw.get("pattern_window_months", 24)),
            "monthly_gap_days": monthly,
            "yearly_gap_days": yearly,
        }

    @property
    def subscription_hints(self) -> list[str]:
        """Lowercase category substrings that mark a cohort as a subscription."""
        hints = self.rules.get("subscription_hints", DEFAULT_SUBSCRIPTION_HINTS)
        return [h.lower() for h in hints if h]
