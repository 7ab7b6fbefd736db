"""CLI entry point for the enrichment worker.

Commands:
    enrich worker [--max-iterations N]        Run the job polling loop
    enrich enqueue IMPORT_ID --owner TOKEN    Queue categorization of an import
    enrich status [--owner TOKEN]             Job queue and enrichment counts
    enrich failed [--limit N]                 List failed jobs with their errors
    enrich detect --owner TOKEN               Run the pattern detector now
    enrich reap --older-than SECONDS [--max-attempts N]
                                              Requeue jobs stuck in 'running'
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on ENRICH_LOG_LEVEL env var."""
    level = os.environ.get("ENRICH_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from enrichment.config import Config

    config_dir = os.environ.get("ENRICH_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("ENRICH_MIGRATIONS_DIR", default))


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from enrichment.database.repository import Repository

    db_path = os.environ.get("ENRICH_DB_PATH", "enrichment.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _make_claude_fn(config):
    """Create a Claude API callback for batch classification.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    try:
        import anthropic

        client = anthropic.Anthropic(api_key=api_key)
        model = config.model
        max_tokens = config.max_tokens

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return "".join(
                block.text for block in response.content
                if getattr(block, "type", "text") == "text"
            )

        return claude_fn
    except Exception as e:
        logger.warning("Claude API not available: %s", e)
        return None


# ── Command handlers ─────────────────────────────────────


def cmd_worker(args: argparse.Namespace) -> int:
    """Run the worker loop until interrupted."""
    from enrichment.worker.loop import Worker, build_handlers

    config = _get_config()
    claude_fn = _make_claude_fn(config)
    if claude_fn is None:
        print("Error: ANTHROPIC_API_KEY is not set; cannot categorize without a classifier.")
        return 1

    repo = _get_repo()
    worker = Worker(
        repo,
        build_handlers(repo, config, claude_fn),
        worker_id=os.environ.get("WORKER_ID", "worker-1"),
        poll_interval=config.poll_interval,
    )

    print(f"Worker {worker.worker_id} polling for jobs... (Ctrl+C to stop)")
    try:
        worker.run(max_iterations=args.max_iterations)
    except KeyboardInterrupt:
        print("\nStopping worker...")
        worker.stop()
    finally:
        repo.close()
    return 0


def cmd_enqueue(args: argparse.Namespace) -> int:
    """Queue a categorize_import job."""
    from enrichment.worker.loop import enqueue_categorize_import

    repo = _get_repo()
    try:
        job_id = enqueue_categorize_import(repo, args.import_id, args.owner)
    finally:
        repo.close()
    print(job_id)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display job queue and enrichment counts."""
    from enrichment.database.queries import get_oldest_running, get_status_counts

    repo = _get_repo()
    try:
        counts = get_status_counts(repo.conn, owner_token=args.owner)
        running = get_oldest_running(repo.conn, limit=5)
    finally:
        repo.close()

    print("Enrichment Status")
    print("=" * 40)
    print(f"  Jobs queued:           {counts['jobs_queued']:,}")
    print(f"  Jobs running:          {counts['jobs_running']:,}")
    print(f"  Jobs done:             {counts['jobs_done']:,}")
    print(f"  Jobs failed:           {counts['jobs_failed']:,}")
    print(f"  Total transactions:    {counts['total_txns']:,}")
    print(f"  Uncategorized:         {counts['uncategorized']:,}")
    print(f"  Recurring:             {counts['recurring']:,}")
    print(f"  Subscriptions:         {counts['subscriptions']:,}")
    print(f"  Cohorts:               {counts['cohorts']:,}")

    if running:
        print("\n  Oldest running leases:")
        for r in running:
            print(f"    {r['id']}  {r['locked_by']}  since {r['locked_at']}  (attempt {r['attempts']})")
    return 0


def cmd_failed(args: argparse.Namespace) -> int:
    """List failed jobs with their last error."""
    from enrichment.database.models import JOB_FAILED

    repo = _get_repo()
    try:
        jobs = repo.list_jobs(status=JOB_FAILED, limit=args.limit)
    finally:
        repo.close()

    if not jobs:
        print("No failed jobs.")
        return 0

    print(f"Failed jobs ({len(jobs)}):")
    print("-" * 80)
    for job in jobs:
        error = (job.last_error or "").replace("\n", " ")
        print(f"  {job.id}  {job.type}  attempts={job.attempts}  {job.created_on}")
        print(f"      {error[:200]}")
        if job.requeued_as:
            print(f"      requeued as {job.requeued_as}")
    return 0


def cmd_detect(args: argparse.Namespace) -> int:
    """Run the recurring passes for one owner outside the job queue."""
    from enrichment.categorize.recurring import detect_patterns, flag_recurring

    config = _get_config()
    repo = _get_repo()
    try:
        flagged = flag_recurring(args.owner, repo, config)
        result = detect_patterns(args.owner, repo, config)
    finally:
        repo.close()

    print(f"Coarse pass flagged {flagged} transactions")
    print(
        f"Cohorts: {result.cohorts}  recurring: {result.recurring}"
        f"  subscriptions: {result.subscriptions}"
        f"  monthly: {result.monthly}  yearly: {result.yearly}"
    )
    return 0


def cmd_reap(args: argparse.Namespace) -> int:
    """Requeue jobs whose lease is older than --older-than seconds."""
    repo = _get_repo()
    try:
        requeued, failed = repo.requeue_stale_jobs(
            args.older_than, max_attempts=args.max_attempts,
        )
    finally:
        repo.close()
    print(f"Requeued {requeued} stale jobs, failed {failed} over the attempt limit")
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "worker": cmd_worker,
    "enqueue": cmd_enqueue,
    "status": cmd_status,
    "failed": cmd_failed,
    "detect": cmd_detect,
    "reap": cmd_reap,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="enrich",
        description="Transaction enrichment job worker",
    )
    subparsers = parser.add_subparsers(dest="command")

    worker_p = subparsers.add_parser("worker", help="Run the job polling loop")
    worker_p.add_argument(
        "--max-iterations", type=int, default=None,
        help="Stop after this many polls (default: run until interrupted)",
    )

    enqueue_p = subparsers.add_parser("enqueue", help="Queue categorization of an import")
    enqueue_p.add_argument("import_id", help="Import to categorize")
    enqueue_p.add_argument("--owner", required=True, help="Owner token of the import")

    status_p = subparsers.add_parser("status", help="Show job queue and enrichment counts")
    status_p.add_argument("--owner", default=None, help="Restrict transaction counts to one owner")

    failed_p = subparsers.add_parser("failed", help="List failed jobs")
    failed_p.add_argument("--limit", type=int, default=20)

    detect_p = subparsers.add_parser("detect", help="Run the recurring pattern detector")
    detect_p.add_argument("--owner", required=True, help="Owner token to analyze")

    reap_p = subparsers.add_parser("reap", help="Requeue jobs stuck in 'running'")
    reap_p.add_argument(
        "--older-than", type=float, required=True,
        help="Lease age in seconds after which a running job counts as stale",
    )
    reap_p.add_argument(
        "--max-attempts", type=int, default=None,
        help="Fail stale jobs that already used this many attempts",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
