"""Job worker: claim → dispatch by type → complete/fail.

Each worker is an independent sequential polling loop. Workers never talk
to each other; the store's atomic claim is the only coordination, so any
number of worker processes can share one database.

When nothing is eligible the worker waits a fixed poll interval on its
stop event before polling again. The stop event doubles as cancellation
token: stop() ends the loop at the next poll. Failed jobs are not
retried here; a failed job stays failed until it is re-enqueued.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import Callable

from enrichment.categorize.batch import categorize_import
from enrichment.config import DEFAULT_POLL_INTERVAL, Config
from enrichment.database.models import JOB_DONE, JOB_FAILED, Job
from enrichment.database.repository import Repository

logger = logging.getLogger(__name__)

JOB_CATEGORIZE_IMPORT = "categorize_import"

Handler = Callable[[Job], object]


@dataclass
class JobOutcome:
    """Result of processing one claimed job."""
    job_id: str
    job_type: str
    status: str  # "done" or "failed"
    error_message: str | None = None
    result: object = None


def enqueue_categorize_import(repo: Repository, import_id: str, owner_token: str) -> str:
    """Producer entry point: queue categorization of an import."""
    if not import_id:
        raise ValueError("import_id is required")
    return repo.enqueue_job(
        JOB_CATEGORIZE_IMPORT, {"import_id": import_id}, owner_token,
    )


def build_handlers(
    repo: Repository,
    config: Config,
    claude_fn,
    today: date | None = None,
) -> dict[str, Handler]:
    """Create the job handlers, sharing one repository and LLM callable."""

    def handle_categorize_import(job: Job):
        import_id = (job.payload or {}).get("import_id")
        if not import_id:
            raise ValueError(f"Job {job.id} payload has no import_id")
        result = categorize_import(
            str(import_id), job.owner_token, repo, config, claude_fn, today=today,
        )
        if result.degraded:
            logger.warning(
                "Job %s completed without pattern detection: %s",
                job.id, result.detector_error,
            )
        return result

    return {JOB_CATEGORIZE_IMPORT: handle_categorize_import}


class Worker:
    """Poll the job table and run handlers until stopped.

    Args:
        repo: Repository holding the job queue.
        handlers: Mapping of job type to callable(job).
        worker_id: Recorded as locked_by on claimed jobs.
        poll_interval: Seconds to wait when no job is eligible.
        stop_event: Optional shared event; set it to stop the loop.
    """

    def __init__(
        self,
        repo: Repository,
        handlers: dict[str, Handler] | None = None,
        worker_id: str = "worker-1",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stop_event: threading.Event | None = None,
    ):
        self.repo = repo
        self.handlers: dict[str, Handler] = dict(handlers or {})
        self.worker_id = worker_id
        self.poll_interval = poll_interval
        self._stop_event = stop_event or threading.Event()

    def register(self, job_type: str, handler: Handler) -> None:
        self.handlers[job_type] = handler

    def stop(self) -> None:
        """Ask the loop to exit at its next poll."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run_once(self) -> JobOutcome | None:
        """Claim and process at most one job. Returns None if none was eligible."""
        job = self.repo.claim_job(self.worker_id)
        if job is None:
            return None
        return self.process(job)

    def process(self, job: Job) -> JobOutcome:
        """Dispatch a claimed job and record done/failed."""
        handler = self.handlers.get(job.type)
        if handler is None:
            message = f"Unknown job type: {job.type!r}"
            logger.error("Job %s: %s", job.id, message)
            self.repo.fail_job(job.id, message)
            return JobOutcome(job.id, job.type, JOB_FAILED, error_message=message)

        logger.info(
            "Worker %s running job %s (%s, attempt %d)",
            self.worker_id, job.id, job.type, job.attempts,
        )
        try:
            result = handler(job)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.exception("Job %s failed", job.id)
            self.repo.fail_job(job.id, message)
            return JobOutcome(job.id, job.type, JOB_FAILED, error_message=message)

        self.repo.complete_job(job.id)
        logger.info("Job %s done", job.id)
        return JobOutcome(job.id, job.type, JOB_DONE, result=result)

    def run(self, max_iterations: int | None = None) -> int:
        """Poll until stopped, or for max_iterations polls.

        Store errors while claiming or recording a job are logged and the
        loop backs off for one poll interval instead of exiting.

        Returns the number of jobs processed.
        """
        logger.info("Worker %s started, polling every %.2fs", self.worker_id, self.poll_interval)
        processed = 0
        iterations = 0
        while not self._stop_event.is_set():
            if max_iterations is not None and iterations >= max_iterations:
                break
            iterations += 1
            try:
                outcome = self.run_once()
            except Exception:
                logger.exception("Worker %s loop error", self.worker_id)
                outcome = None
            if outcome is None:
                self._stop_event.wait(self.poll_interval)
                continue
            processed += 1
        logger.info("Worker %s stopped after %d jobs", self.worker_id, processed)
        return processed
