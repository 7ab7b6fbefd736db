"""Tests for schema migration system."""

import sqlite3

import pytest

from enrichment.database.repository import Repository
from tests.conftest import MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    yield r
    r.close()


class TestMigrationApply:
    def test_creates_all_tables(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        tables = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"schema_version", "transactions", "jobs"}.issubset(tables)

    def test_tracks_version(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        row = repo.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        assert row[0] == 3

    def test_idempotent(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        repo.apply_migrations(MIGRATIONS_DIR)  # second run
        row = repo.conn.execute(
            "SELECT COUNT(*) FROM schema_version"
        ).fetchone()
        assert row[0] == 3  # one record per migration

    def test_creates_indexes(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        indexes = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        expected = {
            "idx_transactions_import",
            "idx_transactions_merchant",
            "idx_jobs_claim",
        }
        assert expected.issubset(indexes)

    def test_failed_migration_is_not_recorded(self, repo, tmp_path):
        (tmp_path / "001_ok.sql").write_text("CREATE TABLE a (id INTEGER)")
        (tmp_path / "002_bad.sql").write_text("CREATE TABLE b (id INTEGER);\nNOT VALID SQL")
        with pytest.raises(sqlite3.OperationalError):
            repo.apply_migrations(tmp_path)
        row = repo.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        assert row[0] == 1
        tables = {
            r[0] for r in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert "b" not in tables


class TestSchemaConstraints:
    @pytest.fixture(autouse=True)
    def _schema(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)

    def _insert(self, repo, **overrides):
        values = dict(
            id="t1", owner_token="owner-a", import_id="imp-1",
            booking_hash="h1", subscription_period=None,
        )
        values.update(overrides)
        repo.conn.execute(
            "INSERT INTO transactions (id, owner_token, import_id, booking_hash,"
            " subscription_period) VALUES (:id, :owner_token, :import_id,"
            " :booking_hash, :subscription_period)",
            values,
        )

    def test_rejects_unknown_subscription_period(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, subscription_period="weekly")

    def test_accepts_known_periods(self, repo):
        for i, period in enumerate(("monthly", "yearly", "unknown")):
            self._insert(repo, id=f"t{i}", booking_hash=f"h{i}", subscription_period=period)

    def test_booking_hash_unique_per_owner(self, repo):
        self._insert(repo)
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, id="t2")

    def test_same_hash_allowed_for_other_owner(self, repo):
        self._insert(repo)
        self._insert(repo, id="t2", owner_token="owner-b")

    def test_rejects_unknown_job_status(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            repo.conn.execute(
                "INSERT INTO jobs (id, type, owner_token, status, run_after, created_on)"
                " VALUES ('j1', 'x', 'o', 'paused', '2024-01-01', '2024-01-01')"
            )

    def test_flags_default_to_false(self, repo):
        self._insert(repo)
        row = repo.conn.execute(
            "SELECT is_subscription, is_recurring FROM transactions WHERE id = 't1'"
        ).fetchone()
        assert tuple(row) == (0, 0)
