#!/usr/bin/env python3
"""Re-enqueue failed jobs after the underlying problem has been fixed.

Usage:
    python -m scripts.requeue_failed [--type TYPE] [--limit N] [--dry-run]

Failed jobs are never retried automatically. This script queues a fresh
job with the same type, payload and owner for each failed job and marks
the failed row with the new job id, so running it twice queues nothing
the second time. The failed row stays behind as a record of the earlier
attempt.
"""

import argparse
import os
from pathlib import Path

from enrichment.database.models import JOB_FAILED
from enrichment.database.repository import Repository


def main(argv=None):
    parser = argparse.ArgumentParser(description="Re-enqueue failed jobs")
    parser.add_argument("--type", default=None, help="Only requeue jobs of this type")
    parser.add_argument("--limit", type=int, default=100, help="Maximum number of jobs to requeue")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be queued without writing")
    args = parser.parse_args(argv)

    db_path = os.environ.get("ENRICH_DB_PATH", "enrichment.db")
    repo = Repository(db_path=db_path)
    default_migrations = Path(__file__).parent.parent / "enrichment" / "database" / "migrations"
    migrations_dir = Path(os.environ.get("ENRICH_MIGRATIONS_DIR", default_migrations))
    repo.apply_migrations(migrations_dir)

    try:
        failed = repo.list_jobs(
            status=JOB_FAILED, limit=args.limit, job_type=args.type, requeued=False,
        )

        if not failed:
            print("No failed jobs found.")
            return

        print(f"Found {len(failed)} failed jobs")

        by_type = {}
        for job in failed:
            error = (job.last_error or "").replace("\n", " ")
            print(f"  {job.id}  {job.type}  {job.payload}")
            print(f"      last error: {error[:120]}")
            if not args.dry_run:
                new_id = repo.requeue_failed_job(job.id)
                if new_id is None:
                    print("      -> already requeued, skipped")
                    continue
                print(f"      -> queued as {new_id}")
            by_type[job.type] = by_type.get(job.type, 0) + 1

        print(f"\nResults:")
        for job_type, count in sorted(by_type.items(), key=lambda x: -x[1]):
            print(f"    {job_type:25s} {count}")

        if args.dry_run:
            print("\n(dry run, no jobs queued)")
    finally:
        repo.close()


if __name__ == "__main__":
    main()
