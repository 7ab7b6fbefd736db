"""Tests for the job queue operations on Repository."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from enrichment.database.models import JOB_DONE, JOB_FAILED, JOB_QUEUED, JOB_RUNNING
from enrichment.database.repository import (
    MAX_ERROR_LENGTH,
    JobNotFoundError,
    JobStateError,
    Repository,
)
from tests.conftest import MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


def _enqueue(repo, import_id="imp-1", **kw):
    return repo.enqueue_job("categorize_import", {"import_id": import_id}, "owner-a", **kw)


class TestEnqueue:
    def test_new_job_is_queued(self, repo):
        job = repo.get_job(_enqueue(repo))
        assert job.status == JOB_QUEUED
        assert job.attempts == 0
        assert job.locked_by is None
        assert job.payload == {"import_id": "imp-1"}
        assert job.owner_token == "owner-a"

    def test_empty_payload_defaults_to_dict(self, repo):
        job = repo.get_job(repo.enqueue_job("noop", None, "owner-a"))
        assert job.payload == {}


class TestClaim:
    def test_claim_empty_queue_returns_none(self, repo):
        assert repo.claim_job("w1") is None

    def test_claim_leases_job(self, repo):
        job_id = _enqueue(repo)
        job = repo.claim_job("w1")
        assert job.id == job_id
        assert job.status == JOB_RUNNING
        assert job.locked_by == "w1"
        assert job.locked_at is not None
        assert job.attempts == 1
        assert repo.get_job(job_id).status == JOB_RUNNING

    def test_claim_is_fifo(self, repo):
        ids = [_enqueue(repo, import_id=f"imp-{i}") for i in range(3)]
        claimed = [repo.claim_job("w1").id for _ in range(3)]
        assert claimed == ids
        assert repo.claim_job("w1") is None

    def test_running_job_not_claimed_twice(self, repo):
        _enqueue(repo)
        assert repo.claim_job("w1") is not None
        assert repo.claim_job("w2") is None

    def test_future_run_after_is_not_eligible(self, repo):
        now = datetime.now(timezone.utc)
        job_id = _enqueue(repo, run_after=now + timedelta(hours=1))
        assert repo.claim_job("w1", now=now) is None
        job = repo.claim_job("w1", now=now + timedelta(hours=2))
        assert job.id == job_id

    def test_done_and_failed_jobs_not_claimed(self, repo):
        a = _enqueue(repo, import_id="a")
        b = _enqueue(repo, import_id="b")
        repo.claim_job("w1")
        repo.complete_job(a)
        repo.claim_job("w1")
        repo.fail_job(b, "boom")
        assert repo.claim_job("w1") is None

    def test_concurrent_workers_never_share_a_job(self, tmp_path):
        db_path = str(tmp_path / "queue.db")
        setup = Repository(db_path)
        setup.apply_migrations(MIGRATIONS_DIR)
        job_ids = [
            setup.enqueue_job("categorize_import", {"import_id": f"imp-{i}"}, "owner-a")
            for i in range(40)
        ]
        setup.close()

        claimed: dict[str, list[str]] = {}
        errors = []

        def worker(name):
            r = Repository(db_path)
            mine = claimed.setdefault(name, [])
            try:
                while True:
                    job = r.claim_job(name)
                    if job is None:
                        break
                    mine.append(job.id)
            except Exception as e:  # surfaced below
                errors.append(e)
            finally:
                r.close()

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        all_claimed = [j for ids in claimed.values() for j in ids]
        assert len(all_claimed) == len(set(all_claimed))
        assert sorted(all_claimed) == sorted(job_ids)


class TestComplete:
    def test_complete_running_job(self, repo):
        job_id = _enqueue(repo)
        repo.claim_job("w1")
        repo.complete_job(job_id)
        job = repo.get_job(job_id)
        assert job.status == JOB_DONE
        assert job.finished_on is not None

    def test_complete_is_idempotent(self, repo):
        job_id = _enqueue(repo)
        repo.claim_job("w1")
        repo.complete_job(job_id)
        repo.complete_job(job_id)
        assert repo.get_job(job_id).status == JOB_DONE

    def test_complete_queued_job_raises(self, repo):
        job_id = _enqueue(repo)
        with pytest.raises(JobStateError):
            repo.complete_job(job_id)

    def test_complete_missing_job_raises(self, repo):
        with pytest.raises(JobNotFoundError):
            repo.complete_job("missing")


class TestFail:
    def test_fail_records_error(self, repo):
        job_id = _enqueue(repo)
        repo.claim_job("w1")
        repo.fail_job(job_id, "classifier exploded")
        job = repo.get_job(job_id)
        assert job.status == JOB_FAILED
        assert job.last_error == "classifier exploded"
        assert job.finished_on is not None

    def test_fail_truncates_long_errors(self, repo):
        job_id = _enqueue(repo)
        repo.claim_job("w1")
        repo.fail_job(job_id, "x" * 5000)
        assert len(repo.get_job(job_id).last_error) == MAX_ERROR_LENGTH

    def test_fail_done_job_raises(self, repo):
        job_id = _enqueue(repo)
        repo.claim_job("w1")
        repo.complete_job(job_id)
        with pytest.raises(JobStateError):
            repo.fail_job(job_id, "late failure")
        assert repo.get_job(job_id).status == JOB_DONE

    def test_fail_missing_job_raises(self, repo):
        with pytest.raises(JobNotFoundError):
            repo.fail_job("missing", "boom")


class TestListing:
    def test_list_jobs_by_status(self, repo):
        a = _enqueue(repo, import_id="a")
        _enqueue(repo, import_id="b")
        repo.claim_job("w1")
        repo.fail_job(a, "boom")
        failed = repo.list_jobs(status=JOB_FAILED)
        assert [j.id for j in failed] == [a]
        assert len(repo.list_jobs()) == 2

    def test_list_jobs_filters_type_before_limit(self, repo):
        target = _enqueue(repo, import_id="a")
        for i in range(3):
            repo.enqueue_job("other", {"n": i}, "owner-a")
        jobs = repo.list_jobs(job_type="categorize_import", limit=2)
        assert [j.id for j in jobs] == [target]

    def test_list_jobs_requeued_filter(self, repo):
        a = _enqueue(repo, import_id="a")
        b = _enqueue(repo, import_id="b")
        for job_id in (a, b):
            repo.claim_job("w1")
            repo.fail_job(job_id, "boom")
        repo.requeue_failed_job(a)
        pending = repo.list_jobs(status=JOB_FAILED, requeued=False)
        done = repo.list_jobs(status=JOB_FAILED, requeued=True)
        assert [j.id for j in pending] == [b]
        assert [j.id for j in done] == [a]

    def test_count_jobs_by_status(self, repo):
        _enqueue(repo, import_id="a")
        _enqueue(repo, import_id="b")
        repo.claim_job("w1")
        counts = repo.count_jobs_by_status()
        assert counts == {"queued": 1, "running": 1, "done": 0, "failed": 0}


class TestRequeueStale:
    def test_requeues_old_leases(self, repo):
        t0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        job_id = _enqueue(repo, run_after=t0)
        repo.claim_job("w1", now=t0)
        requeued, failed = repo.requeue_stale_jobs(60, now=t0 + timedelta(minutes=10))
        assert (requeued, failed) == (1, 0)
        job = repo.get_job(job_id)
        assert job.status == JOB_QUEUED
        assert job.locked_by is None
        assert job.attempts == 1

    def test_fresh_leases_untouched(self, repo):
        t0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        _enqueue(repo, run_after=t0)
        repo.claim_job("w1", now=t0)
        assert repo.requeue_stale_jobs(3600, now=t0 + timedelta(minutes=10)) == (0, 0)

    def test_max_attempts_fails_instead(self, repo):
        t0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        job_id = _enqueue(repo, run_after=t0)
        repo.claim_job("w1", now=t0)
        requeued, failed = repo.requeue_stale_jobs(
            60, max_attempts=1, now=t0 + timedelta(minutes=10),
        )
        assert (requeued, failed) == (0, 1)
        job = repo.get_job(job_id)
        assert job.status == JOB_FAILED
        assert job.last_error == "max attempts exceeded"


class TestRequeueFailed:
    def _failed(self, repo):
        job_id = _enqueue(repo)
        repo.claim_job("w1")
        repo.fail_job(job_id, "boom")
        return job_id

    def test_queues_copy_and_links_it(self, repo):
        old = self._failed(repo)
        new = repo.requeue_failed_job(old)
        copy = repo.get_job(new)
        assert copy.status == JOB_QUEUED
        assert copy.attempts == 0
        assert copy.payload == {"import_id": "imp-1"}
        assert copy.owner_token == "owner-a"
        original = repo.get_job(old)
        assert original.status == JOB_FAILED
        assert original.last_error == "boom"
        assert original.requeued_as == new

    def test_second_requeue_returns_none(self, repo):
        old = self._failed(repo)
        repo.requeue_failed_job(old)
        assert repo.requeue_failed_job(old) is None
        assert repo.count_jobs_by_status()["queued"] == 1

    def test_requeue_queued_job_raises(self, repo):
        job_id = _enqueue(repo)
        with pytest.raises(JobStateError):
            repo.requeue_failed_job(job_id)
        assert repo.count_jobs_by_status()["queued"] == 1

    def test_requeue_missing_job_raises(self, repo):
        with pytest.raises(JobNotFoundError):
            repo.requeue_failed_job("nope")
