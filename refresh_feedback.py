#!/usr/bin/env python3
"""Force-refresh feedback from the upstream API into the database.

Usage:
    python refresh_feedback.py                # last 7 days
    python refresh_feedback.py --days 30
    python refresh_feedback.py --quarterly    # last 3 months, one week at a time
    python refresh_feedback.py --export       # also write a CSV of the refreshed range
"""

import argparse
import logging
import sys
from datetime import date, timedelta
from typing import List, Optional

from feedback_service import RefreshResult, create_service_from_env
from feedback_summary import save_results, summarize_feedback

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_DAYS = 7
QUARTER_DAYS = 90


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Force-refresh feedback from the upstream API.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--days", type=int, default=DEFAULT_DAYS,
                      help=f"Refresh the last N days (default {DEFAULT_DAYS})")
    mode.add_argument("--quarterly", action="store_true",
                      help="Refresh the last 3 months in weekly chunks")
    parser.add_argument("--export", action="store_true",
                        help="Export the refreshed range to CSV with a summary")
    return parser.parse_args(argv)


def refresh_range(args: argparse.Namespace, today: Optional[date] = None):
    """Range to refresh; the end is tomorrow so today's items are included."""
    today = today or date.today()
    days = QUARTER_DAYS if args.quarterly else args.days
    return today - timedelta(days=days), today + timedelta(days=1)


def print_summary(results: List[RefreshResult]):
    succeeded = [r for r in results if r.success]
    failed = [r for r in results if not r.success]

    print(f"\n🎉 REFRESH COMPLETE!")
    print(f"=" * 60)
    print(f"  Successful chunks: {len(succeeded)}/{len(results)}")
    print(f"  Total items refreshed: {sum(r.count for r in succeeded):,}")

    if failed:
        print(f"\n❌ Failed chunks:")
        for result in failed:
            print(f"  {result.date_from} - {result.date_to}: {result.error}")


def provider_ready(service) -> bool:
    """Startup check of the AI provider. Providers without test_connection are trusted."""
    analyzer = service.batch_analyzer
    test_connection = getattr(analyzer.provider, 'test_connection', None) if analyzer else None
    return test_connection is None or test_connection()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    date_from, date_to = refresh_range(args)

    try:
        service = create_service_from_env()
    except Exception as e:
        logger.error(f"Service setup failed: {e}")
        print(f"❌ Error: {e}")
        print("💡 Make sure to:")
        print("  - Set DB_NAME / DB_HOST / DB_USER / DB_PASSWORD for the database")
        print("  - Configure your OpenAI API key")
        return 1

    with service:
        if not provider_ready(service):
            logger.error("AI provider connection check failed, aborting refresh")
            print("❌ Error: could not reach the AI provider")
            return 1

        logger.info(f"🕐 Refreshing feedback from {date_from} to {date_to}")
        if args.quarterly:
            results = service.refresh_in_weeks(date_from, date_to)
        else:
            results = [service.force_refresh(date_from, date_to)]

        # Exported rows must reflect what was just written
        service.wait_for_background()
        print_summary(results)

        if args.export and any(r.success for r in results):
            query = service.get_feedback(date_from, date_to, require_ai=False)
            filename = save_results(query.records)
            summary = summarize_feedback(query.records)
            print(f"\n📊 Exported {summary['total_feedback']:,} items to {filename}")
            print(f"  Sentiment: {summary['sentiment_distribution']}")
            print(f"  Categories: {summary['category_distribution']}")
            print(f"  Average rating: {summary['average_rating']}")

    return 0 if all(r.success for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
