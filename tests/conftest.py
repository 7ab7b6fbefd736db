"""Shared test paths."""

from pathlib import Path

ROOT = Path(__file__).parent.parent

# Synthetic taxonomy and rules; batch_size is 2 so batching shows up in small tests
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"

MIGRATIONS_DIR = ROOT / "enrichment" / "database" / "migrations"
