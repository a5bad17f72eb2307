"""
pipeline.py
------------
Main orchestration layer. Wires together, per user:
    1. TransactionStore         →  fetches the user's history
    2. RecurringChargeDetector  →  produces SubscriptionCandidates
    3. SubscriptionStore        →  upserts candidates keyed by (user, merchant)
    4. ZombieScorer             →  scores confirmed subscriptions, flips flags
       PriceHikeDetector        →  latest charge well above the stored amount
    5. NudgeStore               →  one nudge per flag flip or new price level
    6. MultiFactorAnomalyDetector (optional) → AnomalyStore

Each user is an independent unit of work. The batch runner fans users out
across a thread pool; one user's failure is logged and reported without
touching any other user's results.

Usage:
    from pipeline import SubscriptionPipeline

    pipeline = SubscriptionPipeline(txn_store, sub_store, nudge_store)
    report = pipeline.run_batch()
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

import pandas as pd

from core.models import Anomaly, PriceHike, SubscriptionCandidate, ZombieAssessment
from core.recurring_charge_detector import RecurringChargeDetector
from monitoring.anomaly_detector import MultiFactorAnomalyDetector
from scoring.price_hike_detector import PriceHikeDetector
from scoring.zombie_scorer import ZombieScorer
from storage.base_store import AnomalyStore, NudgeStore, SubscriptionStore, TransactionStore
from config.config_loader import (
    get_anomaly_detection_config,
    get_batch_config,
    get_recurring_detection_config,
    get_zombie_scoring_config,
)

logger = logging.getLogger(__name__)


CANDIDATE_COLUMNS = [
    "user_id", "merchant_key", "merchant", "frequency", "average_amount_cents",
    "confidence", "next_expected_date", "first_seen_date", "last_charge_date",
    "transaction_count",
]


@dataclass
class UserRunResult:
    """Outcome of one user's run. `error` is set iff the run failed."""
    user_id: str
    candidates: List[SubscriptionCandidate] = field(default_factory=list)
    assessments: List[ZombieAssessment] = field(default_factory=list)
    price_hikes: List[PriceHike] = field(default_factory=list)
    nudges_created: int = 0
    anomalies: List[Anomaly] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    """All per-user results of a batch run, ordered by user_id."""
    run_timestamp: str
    results: List[UserRunResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[UserRunResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[UserRunResult]:
        return [r for r in self.results if not r.ok]

    @property
    def summary(self) -> dict:
        return {
            "users": len(self.results),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "candidates": sum(len(r.candidates) for r in self.results),
            "scored": sum(len(r.assessments) for r in self.results),
            "price_hikes": sum(len(r.price_hikes) for r in self.results),
            "nudges_created": sum(r.nudges_created for r in self.results),
            "anomalies": sum(len(r.anomalies) for r in self.results),
        }


class SubscriptionPipeline:
    """
    End-to-end subscription detection and zombie scoring pipeline.
    """

    def __init__(
        self,
        transaction_store: TransactionStore,
        subscription_store: SubscriptionStore,
        nudge_store: NudgeStore,
        anomaly_store: AnomalyStore | None = None,
        scan_anomalies: bool = False,
        lookback_days: int | None = None,
    ):
        """
        Args:
            lookback_days: Override the detection lookback window from config.
            scan_anomalies: Also run the anomaly scan; requires anomaly_store.
        """
        if scan_anomalies and anomaly_store is None:
            raise ValueError("scan_anomalies=True requires an anomaly_store.")

        self.transaction_store = transaction_store
        self.subscription_store = subscription_store
        self.nudge_store = nudge_store
        self.anomaly_store = anomaly_store
        self.scan_anomalies = scan_anomalies

        self.detector = RecurringChargeDetector()
        self.scorer = ZombieScorer()
        self.price_hikes = PriceHikeDetector()
        self.anomaly_detector = MultiFactorAnomalyDetector() if scan_anomalies else None

        if lookback_days is None:
            lookback_days = get_recurring_detection_config()["default_lookback_days"]
        self.lookback_days = lookback_days
        self.fetch_days = self._fetch_window_days()

        logger.info(
            f"Pipeline initialized. Lookback: {self.lookback_days} days. "
            f"Fetch window: {self.fetch_days} days. Anomaly scan: {scan_anomalies}."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run_user(
        self, user_id: str, as_of: date | None = None, now: datetime | None = None
    ) -> UserRunResult:
        """
        Run detection, upsert, zombie scoring, the price hike check and
        (optionally) the anomaly scan for one user. Store errors propagate to the caller.
        """
        as_of = as_of or date.today()
        now = now or datetime.now()
        result = UserRunResult(user_id=user_id)

        # --- Stage 1: Fetch ---
        transactions = self.transaction_store.fetch(
            user_id, as_of - timedelta(days=self.fetch_days), as_of
        )
        logger.debug(f"[{user_id}] Fetched {len(transactions):,} transactions.")

        # --- Stage 2: Detect + upsert ---
        result.candidates = self.detector.detect(
            transactions, as_of=as_of, lookback_days=self.lookback_days
        )
        self.subscription_store.upsert_candidates(result.candidates)

        # --- Stage 3: Zombie scoring + price hikes ---
        for subscription in self.subscription_store.list_subscriptions(user_id):
            if not self.scorer.is_scorable(subscription):
                continue

            assessment = self.scorer.assess(subscription, transactions, as_of=as_of, now=now)
            result.assessments.append(assessment)

            # The nudge goes in before the flag is saved. If the save fails, the
            # retry flips the flag again and the dedupe key swallows the nudge.
            if assessment.newly_flagged:
                nudge = self.scorer.build_nudge(subscription, assessment)
                if self.nudge_store.append(nudge):
                    result.nudges_created += 1
                    logger.info(
                        f"[{user_id}] Flagged '{subscription.merchant}' as zombie "
                        f"(score={assessment.zombie_score})."
                    )

            self.subscription_store.save(self.scorer.apply(subscription, assessment, now=now))

            hike = self.price_hikes.check(subscription)
            if hike is not None:
                result.price_hikes.append(hike)
                if self.nudge_store.append(self.price_hikes.build_nudge(hike)):
                    result.nudges_created += 1
                    logger.info(
                        f"[{user_id}] Price hike at '{subscription.merchant}': "
                        f"{hike.previous_amount_cents} -> {hike.new_amount_cents} cents."
                    )

        # --- Stage 4: Anomaly scan ---
        if self.scan_anomalies:
            result.anomalies = self.anomaly_detector.detect(transactions, as_of=as_of)
            if result.anomalies:
                self.anomaly_store.append_many(result.anomalies)

        logger.info(
            f"[{user_id}] Candidates: {len(result.candidates)}, scored: {len(result.assessments)}, "
            f"price hikes: {len(result.price_hikes)}, nudges: {result.nudges_created}, anomalies: {len(result.anomalies)}."
        )
        return result

    def run_batch(
        self,
        user_ids: Iterable[str] | None = None,
        as_of: date | None = None,
        max_workers: int | None = None,
    ) -> BatchReport:
        """
        Run every user as an independent task on a thread pool.

        Args:
            user_ids: Users to process. Defaults to every user in the
                transaction store.
            max_workers: Pool size. Defaults to config batch.max_workers.

        Returns:
            BatchReport with one UserRunResult per user, failures included.
        """
        if user_ids is None:
            user_ids = self.transaction_store.list_user_ids()
        user_ids = list(dict.fromkeys(user_ids))
        max_workers = max_workers or get_batch_config()["max_workers"]
        as_of = as_of or date.today()
        now = datetime.now()

        logger.info(f"Batch starting. Users: {len(user_ids):,}. Workers: {max_workers}.")

        results: List[UserRunResult] = []
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {
                pool.submit(self._run_user_safely, uid, as_of, now): uid for uid in user_ids
            }
            for future in as_completed(futures):
                results.append(future.result())

        report = BatchReport(
            run_timestamp=now.isoformat(),
            results=sorted(results, key=lambda r: r.user_id),
        )
        logger.info(f"Batch complete. {report.summary}")
        return report

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _run_user_safely(self, user_id: str, as_of: date, now: datetime) -> UserRunResult:
        """Per-user failure boundary for the batch runner."""
        try:
            return self.run_user(user_id, as_of=as_of, now=now)
        except Exception as e:
            logger.exception(f"[{user_id}] Run failed.")
            return UserRunResult(user_id=user_id, error=f"{type(e).__name__}: {e}")

    def _fetch_window_days(self) -> int:
        """Widest window any stage needs, so each user is fetched once."""
        windows = [self.lookback_days, get_zombie_scoring_config()["usage_lookback_days"]]
        if self.scan_anomalies:
            cfg = get_anomaly_detection_config()
            windows.append(cfg["recent_days"] + cfg["baseline_days"])
        return max(windows)


def candidates_to_frame(candidates: List[SubscriptionCandidate]) -> pd.DataFrame:
    """
    Flattens candidates into a DataFrame for CSV output, sorted by user then
    confidence descending.
    """
    if not candidates:
        return pd.DataFrame(columns=CANDIDATE_COLUMNS)

    rows = [
        {
            "user_id": c.user_id,
            "merchant_key": c.merchant_key,
            "merchant": c.merchant,
            "frequency": c.frequency,
            "average_amount_cents": c.average_amount_cents,
            "confidence": c.confidence,
            "next_expected_date": c.next_expected_date.strftime("%Y-%m-%d"),
            "first_seen_date": c.first_seen_date.strftime("%Y-%m-%d"),
            "last_charge_date": c.last_charge_date.strftime("%Y-%m-%d"),
            "transaction_count": c.transaction_count,
        }
        for c in candidates
    ]

    df = pd.DataFrame(rows)
    df = df.sort_values(
        ["user_id", "confidence", "merchant_key"],
        ascending=[True, False, True],
    ).reset_index(drop=True)

    return df
