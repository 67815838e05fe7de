"""
Reception Crawler CLI
=====================

Command-line interface for the review crawler.

Commands:
    run         - Crawl reviews for the selected subjects (resumes automatically)
    subject     - Crawl reviews for a single subject
    status      - Show checkpoint progress and recent errors
    reset       - Delete the checkpoint and start over
    export      - Write a progress snapshot next to the checkpoint
    analyze     - Recompute reception profiles (one subject or all stale ones)
    stats       - Show database-wide review coverage

Exit codes:
    0 completed, 1 failed, 2 partial failure, 130 interrupted

Usage:
    python -m reception.orchestrator.cli run --items-per-subject 50 --max-subjects 100
    python -m reception.orchestrator.cli run --mode backfill --top-up
    python -m reception.orchestrator.cli subject 5114
    python -m reception.orchestrator.cli status --json
    python -m reception.orchestrator.cli analyze --stale --limit 50
"""

import argparse
import json
import logging
import sys

from ..data.config import CheckpointConfig, LoggingConfig
from ..data.data_models import CrawlConfig, SelectionMode
from ..reviews.reception_insights import ReceptionAggregator, NoReviewsError
from ..reviews.reception_models import STALE_AFTER_DAYS
from .checkpoint import CheckpointStore, CheckpointWriteError
from .crawl_pipeline import CrawlOrchestrator, CrawlStatus
from .logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_CODES = {
    CrawlStatus.COMPLETED: 0,
    CrawlStatus.FAILED: 1,
    CrawlStatus.PARTIAL_FAILURE: 2,
    CrawlStatus.INTERRUPTED: 130,
}


def _checkpoint() -> CheckpointStore:
    """Checkpoint access that does not need database credentials."""
    config = CheckpointConfig()
    return CheckpointStore(config.directory, save_interval=config.save_interval)


def _crawl_config(args) -> CrawlConfig:
    return CrawlConfig(
        items_per_subject=args.items_per_subject,
        include_preliminary=not args.no_preliminary,
        request_delay=args.request_delay,
        subject_delay=args.subject_delay,
        max_subjects=getattr(args, "max_subjects", 1),
        max_total_items=getattr(args, "max_total", args.items_per_subject),
        selection=getattr(args, "mode", SelectionMode.PRIORITY.value),
        min_members=getattr(args, "min_members", 0),
        top_up_existing=args.top_up,
    )


def _print_result(result, as_json: bool):
    print()
    print("=" * 60)
    print("CRAWL COMPLETE")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    if result.duration_seconds is not None:
        print(f"Duration: {result.duration_seconds:.1f} seconds")
    print(f"Subjects: {result.subjects_completed} completed, "
          f"{result.subjects_skipped} skipped, {result.subjects_failed} failed "
          f"(of {result.subjects_targeted})")
    print(f"Reviews ingested: {result.items_ingested}")
    print(f"Duplicates skipped: {result.duplicates_skipped}")
    print(f"Item errors: {result.item_errors}")
    print(f"Reception profiles updated: {result.subjects_analyzed}")

    if as_json:
        print()
        print(json.dumps(result.get_summary(), indent=2, default=str))


def cmd_run(args):
    """Crawl reviews for the selected subjects."""
    config = _crawl_config(args)

    print("=" * 60)
    print("REVIEW CRAWLER")
    print("=" * 60)
    print(f"Mode: {config.selection}, reviews/subject: {config.items_per_subject}, "
          f"max subjects: {config.max_subjects}, max reviews: {config.max_total_items}")
    print()

    try:
        with CrawlOrchestrator.from_settings() as orchestrator:
            if args.fresh:
                orchestrator.checkpoint.reset()
            result = orchestrator.run(config, handle_signals=True)
    except CheckpointWriteError as e:
        print(f"\nERROR: {e}")
        logger.exception("Checkpoint write failed, crawl aborted")
        return 1
    except Exception as e:
        print(f"\nERROR: Crawl failed: {e}")
        logger.exception("Crawl failed")
        return 1

    _print_result(result, args.json)
    return EXIT_CODES[result.status]


def cmd_subject(args):
    """Crawl reviews for a single subject."""
    config = _crawl_config(args)

    try:
        with CrawlOrchestrator.from_settings() as orchestrator:
            with orchestrator.signal_handlers():
                outcome = orchestrator.crawl_subject(args.subject_id, config)
            orchestrator.checkpoint.save()
    except CheckpointWriteError as e:
        print(f"\nERROR: {e}")
        return 1
    except Exception as e:
        print(f"\nERROR: Failed to crawl subject {args.subject_id}: {e}")
        logger.exception("Subject crawl failed")
        return 1

    print(f"{outcome.title}: {outcome.status}")
    print(f"  Pages fetched: {outcome.pages_fetched} (from page {outcome.start_page})")
    print(f"  Reviews ingested: {outcome.items_ingested}")
    print(f"  Duplicates skipped: {outcome.duplicates_skipped}")
    print(f"  Item errors: {outcome.item_errors}")
    if outcome.error:
        print(f"  Error: {outcome.error}")

    if outcome.status == "failed":
        return 1
    if outcome.status == "interrupted":
        return 130
    return 0


def cmd_status(args):
    """Show checkpoint progress."""
    checkpoint = _checkpoint()
    summary = checkpoint.get_progress_summary()

    if args.json:
        summary["recent_errors"] = [
            {"timestamp": e.timestamp, "kind": e.kind, "subject_id": e.subject_id, "message": e.message}
            for e in checkpoint.recent_errors(args.errors)
        ]
        print(json.dumps(summary, indent=2, default=str))
        return 0

    print("=" * 60)
    print("CRAWLER PROGRESS")
    print("=" * 60)
    print(f"Subjects completed: {summary['total_subjects']}")
    print(f"Reviews ingested: {summary['total_items']}")
    print(f"Average reviews/subject: {summary['average_items_per_subject']:.1f}")
    if summary["current_subject"]:
        print(f"Current subject: {summary['current_subject']} (page {summary['current_page']})")
    print(f"Started: {summary['started_at']}")
    print(f"Last updated: {summary['last_updated_at']}")
    print(f"Errors logged: {summary['errors']}")

    errors = checkpoint.recent_errors(args.errors)
    if errors:
        print()
        print("Recent errors:")
        for error in errors:
            where = f" [subject {error.subject_id}]" if error.subject_id is not None else ""
            print(f"  {error.timestamp} {error.kind}{where}: {error.message}")

    return 0


def cmd_reset(args):
    """Delete the checkpoint."""
    if not args.yes:
        answer = input("Reset all crawler progress? This cannot be undone. (y/N) ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Reset cancelled.")
            return 0

    _checkpoint().reset()
    print("Crawler progress reset.")
    return 0


def cmd_export(args):
    """Export a progress snapshot."""
    try:
        path = _checkpoint().export_progress()
    except CheckpointWriteError as e:
        print(f"ERROR: {e}")
        return 1
    print(f"Progress exported to: {path}")
    return 0


def cmd_analyze(args):
    """Recompute reception profiles."""
    try:
        with CrawlOrchestrator.from_settings() as orchestrator:
            aggregator: ReceptionAggregator = orchestrator.aggregator

            if args.subject_id is not None:
                profile = aggregator.recompute(args.subject_id)
                print(f"Subject {args.subject_id}: {profile.review_count} reviews")
                print(f"  Mean score: {profile.mean_score}")
                print(f"  Polarization: {profile.polarization_score}")
                print(f"  Sentiment ratio: {profile.sentiment_ratio:.2f}")
                print(f"  Common praises: {', '.join(profile.common_praises) or '-'}")
                print(f"  Common complaints: {', '.join(profile.common_complaints) or '-'}")
                if args.json:
                    print(json.dumps(profile.to_reception_data(), indent=2))
                return 0

            processed = aggregator.recompute_stale(limit=args.limit, max_age_days=args.max_age_days)
            print(f"Reception profiles recomputed: {processed}")
            return 0

    except NoReviewsError as e:
        print(f"ERROR: {e}")
        return 1
    except Exception as e:
        print(f"ERROR: Analysis failed: {e}")
        logger.exception("Analysis failed")
        return 1


def cmd_stats(args):
    """Show database-wide review coverage."""
    try:
        with CrawlOrchestrator.from_settings() as orchestrator:
            stats = orchestrator.store.get_stats(min_members=args.min_members)
    except Exception as e:
        print(f"ERROR: Failed to get stats: {e}")
        return 1

    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    print("=" * 60)
    print("REVIEW COVERAGE")
    print("=" * 60)
    print(f"Total subjects: {stats['total_subjects']}")
    print(f"Subjects with reviews: {stats['subjects_with_reviews']}")
    print(f"Total reviews: {stats['total_reviews']}")
    print(f"Average reviews/subject: {stats['avg_reviews_per_subject']}")
    print(f"Subjects needing reviews (members > {args.min_members}): {stats['subjects_needing_reviews']}")
    return 0


def _add_crawl_arguments(parser):
    parser.add_argument(
        "--items-per-subject",
        type=int,
        default=50,
        help="Reviews to collect per subject (default: 50)",
    )
    parser.add_argument(
        "--no-preliminary",
        action="store_true",
        help="Exclude reviews written before the subject finished airing",
    )
    parser.add_argument(
        "--request-delay",
        type=float,
        default=1.5,
        help="Seconds between page requests (default: 1.5)",
    )
    parser.add_argument(
        "--subject-delay",
        type=float,
        default=3.0,
        help="Seconds between subjects (default: 3.0)",
    )
    parser.add_argument(
        "--top-up",
        action="store_true",
        help="Count already stored reviews toward the per-subject target",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reception",
        description="Review crawler and reception analyzer",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Crawl reviews for the selected subjects")
    _add_crawl_arguments(run_parser)
    run_parser.add_argument(
        "--max-subjects",
        type=int,
        default=200,
        help="Maximum subjects per run (default: 200)",
    )
    run_parser.add_argument(
        "--max-total",
        type=int,
        default=5000,
        help="Maximum new reviews per run (default: 5000)",
    )
    run_parser.add_argument(
        "--mode",
        choices=[m.value for m in SelectionMode],
        default=SelectionMode.PRIORITY.value,
        help="Subject selection: priority (airing, popular, polarizing), backfill (below target), new (no reviews yet)",
    )
    run_parser.add_argument(
        "--min-members",
        type=int,
        default=1000,
        help="Minimum subject popularity (default: 1000)",
    )
    run_parser.add_argument(
        "--fresh",
        action="store_true",
        help="Reset the checkpoint before crawling",
    )

    # subject command
    subject_parser = subparsers.add_parser("subject", help="Crawl reviews for one subject")
    subject_parser.add_argument("subject_id", type=int, help="Subject id")
    _add_crawl_arguments(subject_parser)

    # status command
    status_parser = subparsers.add_parser("status", help="Show checkpoint progress")
    status_parser.add_argument(
        "--errors",
        type=int,
        default=10,
        help="Recent errors to show (default: 10)",
    )
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # reset command
    reset_parser = subparsers.add_parser("reset", help="Delete crawler progress")
    reset_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    # export command
    subparsers.add_parser("export", help="Export a progress snapshot")

    # analyze command
    analyze_parser = subparsers.add_parser("analyze", help="Recompute reception profiles")
    target = analyze_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--subject-id", type=int, help="Recompute one subject")
    target.add_argument("--stale", action="store_true", help="Recompute missing or stale profiles")
    analyze_parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum stale subjects to recompute (default: 100)",
    )
    analyze_parser.add_argument(
        "--max-age-days",
        type=int,
        default=STALE_AFTER_DAYS,
        help=f"Profile age considered stale (default: {STALE_AFTER_DAYS})",
    )
    analyze_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show review coverage")
    stats_parser.add_argument(
        "--min-members",
        type=int,
        default=1000,
        help="Popularity floor for 'needing reviews' (default: 1000)",
    )
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    log_config = LoggingConfig()
    setup_logging(
        level="DEBUG" if args.verbose else log_config.level,
        json_output=log_config.json_logs,
        log_file=log_config.log_file,
    )

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "run": cmd_run,
        "subject": cmd_subject,
        "status": cmd_status,
        "reset": cmd_reset,
        "export": cmd_export,
        "analyze": cmd_analyze,
        "stats": cmd_stats,
    }

    try:
        return commands[args.command](args)
    except ValueError as e:
        # Invalid run parameters (CrawlConfig validation)
        print(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
