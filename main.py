"""
main.py
--------
Entry point for the $ave+ Subscription Intelligence Engine.

Loads transactions from CSV, runs the per-user batch (detection, upsert,
zombie scoring, optional anomaly scan) and writes the detected candidates to
the outputs/ folder.

Usage (from the project root):
    python main.py --input transactions.csv

    # With optional arguments:
    python main.py --input transactions.csv --db saveplus.sqlite
    python main.py --input transactions.csv --as-of 2024-12-31 --workers 8
    python main.py --input transactions.csv --scan-anomalies
"""

import sys
import os
import argparse
import logging
import pandas as pd
from datetime import date, datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from pipeline import SubscriptionPipeline, candidates_to_frame
from storage.sqlite_store import SQLiteStore


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="$ave+ Subscription Intelligence — detect recurring charges and zombie subscriptions."
    )
    parser.add_argument(
        "--input", type=str, default=None,
        help="Path to input transactions CSV. Optional when --db already holds transactions."
    )
    parser.add_argument(
        "--db", type=str, default=":memory:",
        help="SQLite database path. Defaults to a throwaway in-memory database."
    )
    parser.add_argument(
        "--as-of", type=date.fromisoformat, default=None,
        help="Run date (YYYY-MM-DD). Defaults to today."
    )
    parser.add_argument(
        "--lookback", type=int, default=None,
        help="Detection lookback window in days. Defaults to config value (365)."
    )
    parser.add_argument(
        "--workers", type=int, default=None,
        help="Parallel user workers. Defaults to config value."
    )
    parser.add_argument(
        "--scan-anomalies", action="store_true", default=False,
        help="Also run the multi-factor anomaly scan."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None) -> int:
    args = parse_args(argv)

    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    store = SQLiteStore(args.db)

    # --- Load transactions ---
    if args.input:
        logger.info(f"Loading transactions from: {args.input}")
        if not os.path.exists(args.input):
            logger.error(f"Input file not found: {args.input}")
            return 1
        transactions = pd.read_csv(args.input)
        loaded = store.load_transactions(transactions)
        logger.info(f"Loaded {loaded:,} transactions, {transactions['user_id'].nunique():,} users.")

    user_ids = store.list_user_ids()
    if not user_ids:
        logger.error("No transactions to process. Pass --input or point --db at a populated database.")
        return 1

    # --- Run pipeline ---
    pipeline = SubscriptionPipeline(
        transaction_store=store,
        subscription_store=store,
        nudge_store=store,
        anomaly_store=store,
        scan_anomalies=args.scan_anomalies,
        lookback_days=args.lookback,
    )
    report = pipeline.run_batch(user_ids, as_of=args.as_of, max_workers=args.workers)

    # --- Output ---
    candidates = [c for r in report.succeeded for c in r.candidates]
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    candidates_path = os.path.join(output_dir, f"subscriptions_{timestamp}.csv")
    candidates_to_frame(candidates).to_csv(candidates_path, index=False)
    logger.info(f"Candidates saved to: {candidates_path}")

    for failure in report.failed:
        logger.error(f"[{failure.user_id}] {failure.error}")

    _print_summary(report)
    store.close()
    return 0 if not report.failed else 2


def _print_summary(report):
    """Prints a clean summary table to the console."""
    summary = report.summary

    print("\n" + "=" * 80)
    print("  SUBSCRIPTION INTELLIGENCE SUMMARY")
    print("=" * 80)
    print(f"\n  Users processed: {summary['users']:,}  (failed: {summary['failed']:,})")

    frequencies = {}
    for r in report.succeeded:
        for c in r.candidates:
            frequencies[c.frequency] = frequencies.get(c.frequency, 0) + 1

    print("\n  Detected subscriptions by cadence:")
    print("  " + "-" * 60)
    if not frequencies:
        print("    (none)")
    for frequency in ["weekly", "monthly", "quarterly", "yearly"]:
        if frequency in frequencies:
            print(f"    {frequency:12s}  {frequencies[frequency]:>6,}")

    print(f"\n  Confirmed subscriptions scored: {summary['scored']:,}")
    print(f"  Price hikes detected:           {summary['price_hikes']:,}")
    print(f"  Nudges created:                 {summary['nudges_created']:,}")
    if summary["anomalies"]:
        print(f"  Spending anomalies:             {summary['anomalies']:,}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    sys.exit(main())
