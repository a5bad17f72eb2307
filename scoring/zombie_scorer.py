"""
zombie_scorer.py
------------------
Zombie subscription scoring.

A "zombie" is a confirmed recurring charge with little or no independent
usage evidence: the user keeps paying but no longer buys anything else from
the merchant. The scorer blends four 0-bounded components into a 0–100 score:

    time_score       = min(days_since_last_usage / 90 * 40, 40)
    usage_score      = max(30 - usage_count * 6, 0)
    cost_score       = min(monthly_amount / 50 * 20, 20)
    confidence_bonus = confidence * 10
    zombie_score     = min(sum, 100)

Crossing the threshold moves the subscription's flag Unflagged -> Flagged
exactly once. Nothing here moves it back.

Weights, windows and the threshold come from config.yaml.
"""

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Optional

import pandas as pd

from core.merchant import MerchantNormalizer
from core.models import (
    Flagged,
    Nudge,
    STATUS_ACTIVE,
    Subscription,
    ZombieAssessment,
)
from core.recurring_charge_detector import to_timestamps
from config.config_loader import get_zombie_scoring_config

logger = logging.getLogger(__name__)


class ZombieScorer:
    """
    Scores confirmed subscriptions for lack of usage and applies the one-way
    zombie flag.

    Usage:
        scorer = ZombieScorer()
        assessment = scorer.assess(subscription, transactions_df, as_of=date.today())
        if assessment.newly_flagged:
            nudge_store.append(scorer.build_nudge(subscription, assessment))
    """

    def __init__(self):
        self.config = get_zombie_scoring_config()
        self.usage_lookback_days = self.config["usage_lookback_days"]
        self.usage_window_days = self.config["usage_window_days"]
        self.default_days = self.config["default_days_since_usage"]
        self.subscription_categories = {c.lower() for c in self.config["subscription_categories"]}
        self.flag_threshold = self.config["flag_threshold"]
        self.nudge_config = self.config["nudge"]
        self.normalizer = MerchantNormalizer()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def is_scorable(self, subscription: Subscription) -> bool:
        """Only confirmed, active subscriptions are scored."""
        return subscription.is_confirmed and subscription.status == STATUS_ACTIVE

    def compute_score(
        self,
        days_since_last_usage: float,
        usage_count: int,
        amount: float,
        confidence: float,
    ) -> float:
        """Returns the 0–100 zombie score. `amount` is a monthly-equivalent dollar figure."""
        return self.score_components(days_since_last_usage, usage_count, amount, confidence)["zombie_score"]

    def score_components(
        self,
        days_since_last_usage: float,
        usage_count: int,
        amount: float,
        confidence: float,
    ) -> dict:
        """Each term is clamped to its own range before the sum is capped. Values are rounded for display."""
        return {
            name: round(float(value), 2)
            for name, value in self._raw_components(
                days_since_last_usage, usage_count, amount, confidence
            ).items()
        }

    def monthly_equivalent_amount(self, amount_cents: int, frequency: str) -> float:
        """Converts a per-charge amount in cents into dollars per month."""
        periods = self.config["periods_per_year"]
        per_year = periods.get(frequency)
        if per_year is None:
            logger.debug(f"Unknown frequency '{frequency}', treating as monthly.")
            per_year = periods["monthly"]
        return abs(amount_cents) / 100.0 * per_year / 12.0

    def usage_signals(
        self, subscription: Subscription, transactions: pd.DataFrame, as_of: date
    ) -> tuple[int, int, Optional[date]]:
        """
        Derives (days_since_last_usage, usage_count, last_usage_date) from
        non-subscription transactions at the subscription's merchant.

        Missing usage in the lookback window gives the default day count.
        """
        required = {"merchant", "transaction_date", "category"}
        if transactions is None or transactions.empty or not required.issubset(transactions.columns):
            return self.default_days, 0, None

        df = transactions.copy()
        df["transaction_date"] = to_timestamps(df["transaction_date"])
        df = df[df["transaction_date"].notna()]

        as_of_ts = pd.Timestamp(as_of).normalize()
        lookback_start = as_of_ts - pd.Timedelta(days=self.usage_lookback_days)

        merchant_match = df["merchant"].map(self.normalizer.normalize) == subscription.merchant_key
        category = df["category"].fillna("").astype(str).str.strip().str.lower()
        is_usage = ~category.isin(self.subscription_categories)
        in_window = (df["transaction_date"] >= lookback_start) & (df["transaction_date"] <= as_of_ts)

        usage = df[merchant_match & is_usage & in_window]
        if usage.empty:
            return self.default_days, 0, None

        last_usage = usage["transaction_date"].max()
        days_since = min(int((as_of_ts - last_usage).days), self.default_days)

        window_start = as_of_ts - pd.Timedelta(days=self.usage_window_days)
        usage_count = int((usage["transaction_date"] >= window_start).sum())

        return days_since, usage_count, last_usage.date()

    def assess(
        self,
        subscription: Subscription,
        transactions: pd.DataFrame,
        as_of: date | None = None,
        now: datetime | None = None,
    ) -> ZombieAssessment:
        """
        Scores one subscription and works out its flag state.

        The flag flips to Flagged(now) only if the score is strictly above the
        threshold and the subscription has never been flagged before.
        """
        as_of = as_of or date.today()
        now = now or datetime.now()

        days_since, usage_count, last_usage = self.usage_signals(subscription, transactions, as_of)
        monthly_amount = self.monthly_equivalent_amount(
            subscription.average_amount_cents, subscription.frequency
        )
        raw = self._raw_components(
            days_since, usage_count, monthly_amount, subscription.confidence
        )
        components = {name: round(float(value), 2) for name, value in raw.items()}

        # Threshold applies to the unrounded score.
        flag = subscription.zombie_flag
        newly_flagged = False
        if raw["zombie_score"] > self.flag_threshold and not flag.is_flagged:
            flag = Flagged(at=now)
            newly_flagged = True

        return ZombieAssessment(
            user_id=subscription.user_id,
            merchant_key=subscription.merchant_key,
            days_since_last_usage=days_since,
            usage_count=usage_count,
            monthly_amount=round(monthly_amount, 2),
            last_usage_date=last_usage,
            flag=flag,
            newly_flagged=newly_flagged,
            **components,
        )

    def apply(
        self, subscription: Subscription, assessment: ZombieAssessment, now: datetime | None = None
    ) -> Subscription:
        """Returns a copy of `subscription` carrying the assessment's score, usage and flag."""
        return replace(
            subscription,
            zombie_score=assessment.zombie_score,
            zombie_flag=assessment.flag,
            last_usage_date=assessment.last_usage_date,
            usage_count_last_30_days=assessment.usage_count,
            updated_at=now or datetime.now(),
        )

    def build_nudge(self, subscription: Subscription, assessment: ZombieAssessment) -> Nudge:
        """
        Builds the single nudge for a flag flip. The dedupe key depends only on
        (user, merchant) because a subscription can be flagged at most once.
        """
        n = self.nudge_config
        message = n["message"].format(
            merchant=subscription.merchant,
            days=assessment.days_since_last_usage,
            amount=assessment.monthly_amount,
        )
        return Nudge(
            user_id=subscription.user_id,
            nudge_type=n["nudge_type"],
            agent_type=n["agent_type"],
            message=message,
            priority=n["priority"],
            dedupe_key=f"zombie:{subscription.user_id}:{subscription.merchant_key}",
            trigger_data={
                "merchant": subscription.merchant,
                "merchant_key": subscription.merchant_key,
                "zombie_score": assessment.zombie_score,
                "monthly_amount": assessment.monthly_amount,
                "days_since_last_usage": assessment.days_since_last_usage,
                "usage_count_last_30_days": assessment.usage_count,
                "flagged_at": assessment.flag.at.isoformat() if assessment.flag.is_flagged else None,
            },
        )

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _raw_components(
        self,
        days_since_last_usage: float,
        usage_count: int,
        amount: float,
        confidence: float,
    ) -> dict:
        c = self.config

        days = max(float(days_since_last_usage), 0.0)
        time_score = min(days / c["time_days_scale"] * c["time_max"], c["time_max"])

        usage_score = max(c["usage_base"] - max(int(usage_count), 0) * c["usage_penalty"], 0)

        # Zero or negative amounts carry no cost signal.
        if amount > 0:
            cost_score = min(amount / c["cost_amount_scale"] * c["cost_max"], c["cost_max"])
        else:
            cost_score = 0.0

        confidence_bonus = max(float(confidence or 0.0), 0.0) * c["confidence_weight"]

        total = min(time_score + usage_score + cost_score + confidence_bonus, c["max_score"])

        return {
            "time_score": time_score,
            "usage_score": usage_score,
            "cost_score": cost_score,
            "confidence_bonus": confidence_bonus,
            "zombie_score": total,
        }
