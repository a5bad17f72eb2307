"""
recurring_charge_detector.py
------------------------------
Recurring charge ("subscription") detection engine.

Answers one question per (user, merchant):

    "Do this merchant's charges arrive on a regular interval?"

Output: a SubscriptionCandidate per qualifying group. Candidates are then
upserted into the subscription store by the pipeline.

Design decisions:
    - Grouping key is (user_id, normalized merchant). See core/merchant.py.
    - Regularity is a hard gate: every inter-charge gap must fall within
      gap_tolerance of the mean gap. Irregular groups produce nothing; they
      are not down-weighted.
    - A two-charge group has a single gap and always passes the gate. This
      is a known weak spot, kept as observed behaviour.
    - Confidence reflects amount uniformity only, clamped to
      [confidence_floor, confidence_cap].
    - Malformed rows are dropped individually; they never abort a run.
"""

import logging
from datetime import date, datetime, timedelta
from typing import List

import numpy as np
import pandas as pd

from core.merchant import MerchantNormalizer
from core.models import SubscriptionCandidate
from config.config_loader import get_recurring_detection_config

logger = logging.getLogger(__name__)


REQUIRED_COLUMNS = [
    "transaction_id", "user_id", "merchant", "amount_cents",
    "transaction_date", "category",
]


def round_half_up(value: float) -> int:
    """Rounds .5 away from zero for positive values (round() would give banker's rounding)."""
    return int(np.floor(value + 0.5))


def to_timestamps(values: pd.Series) -> pd.Series:
    """
    Parses a column of dates/strings into tz-naive, midnight-normalized
    timestamps. Unparseable values become NaT.
    """
    parsed = pd.to_datetime(values, errors="coerce", utc=True, format="mixed")
    return parsed.dt.tz_localize(None).dt.normalize()


class RecurringChargeDetector:
    """
    Detects recurring charge patterns in transaction data.

    Usage:
        detector = RecurringChargeDetector()
        candidates = detector.detect(transactions_df)
    """

    def __init__(self):
        self.config = get_recurring_detection_config()
        self.min_transactions = self.config["min_transactions"]
        self.gap_tolerance = self.config["gap_tolerance"]
        self.cadence_buckets = self.config["cadence_buckets"]
        self.fallback_cadence = self.config["fallback_cadence"]
        self.confidence_floor = self.config["confidence_floor"]
        self.confidence_cap = self.config["confidence_cap"]
        self.normalizer = MerchantNormalizer()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect(
        self,
        transactions: pd.DataFrame,
        as_of: date | datetime | None = None,
        lookback_days: int | None = None,
    ) -> List[SubscriptionCandidate]:
        """
        Run recurring charge detection on a transactions DataFrame.

        Args:
            transactions: DataFrame with columns:
                transaction_id, user_id, merchant, amount_cents,
                transaction_date, category
            as_of: End of the lookback window. Defaults to the latest
                transaction date in the input.
            lookback_days: Override the default lookback window.

        Returns:
            List of SubscriptionCandidate, one per consistent
            (user, merchant) group. Empty input gives an empty list.
        """
        df = self._prepare(transactions, as_of, lookback_days)

        if df.empty:
            return []

        grouped = df.groupby(["user_id", "merchant_key"], sort=True)
        results: List[SubscriptionCandidate] = []

        for (user_id, merchant_key), group in grouped:
            if len(group) < self.min_transactions:
                continue

            candidate = self._build_candidate(str(user_id), merchant_key, group)
            if candidate is not None:
                results.append(candidate)

        logger.debug(
            f"Detection: {grouped.ngroups} merchant groups, {len(results)} candidates."
        )
        return results

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(
        self,
        transactions: pd.DataFrame,
        as_of: date | datetime | None,
        lookback_days: int | None,
    ) -> pd.DataFrame:
        """
        Validates input, coerces types, drops malformed rows and applies the
        lookback window filter.
        """
        missing = [c for c in REQUIRED_COLUMNS if c not in transactions.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        df = transactions.copy()
        df["transaction_date"] = to_timestamps(df["transaction_date"])
        df["amount_cents"] = pd.to_numeric(df["amount_cents"], errors="coerce")
        df["merchant_key"] = df["merchant"].map(self.normalizer.normalize)

        invalid = (
            df["transaction_date"].isna()
            | df["amount_cents"].isna()
            | (df["merchant_key"] == "")
        )
        if invalid.any():
            logger.warning(
                f"Dropping {int(invalid.sum())} transaction(s) with missing or "
                f"malformed date, amount or merchant."
            )
            df = df[~invalid]

        if df.empty:
            return df

        if lookback_days is None:
            lookback_days = self.config["default_lookback_days"]

        reference = pd.Timestamp(as_of).normalize() if as_of is not None else df["transaction_date"].max()
        cutoff = reference - pd.Timedelta(days=lookback_days)
        df = df[(df["transaction_date"] >= cutoff) & (df["transaction_date"] <= reference)]

        df = df.sort_values(["user_id", "merchant_key", "transaction_date"]).reset_index(drop=True)

        return df

    # -------------------------------------------------------------------------
    # INTERNAL: CANDIDATE CONSTRUCTION
    # -------------------------------------------------------------------------

    def _build_candidate(
        self, user_id: str, merchant_key: str, group: pd.DataFrame
    ) -> SubscriptionCandidate | None:
        """
        Builds a SubscriptionCandidate from a single date-sorted group.

        Returns None if the gaps are not regular enough to call it recurring.
        """
        dates = group["transaction_date"].values
        gaps = np.diff(dates).astype("timedelta64[D]").astype(float)
        avg_gap = float(np.mean(gaps))

        # All charges on the same day: there is no interval to speak of.
        if avg_gap <= 0:
            return None

        if not self._is_consistent(gaps, avg_gap):
            return None

        frequency = self._classify_cadence(avg_gap)

        amounts = np.abs(group["amount_cents"].values.astype(float))
        avg_amount = float(np.mean(amounts))
        confidence = self._compute_confidence(amounts, avg_amount)

        first_seen = group["transaction_date"].iloc[0].date()
        last_charge = group["transaction_date"].iloc[-1].date()

        return SubscriptionCandidate(
            user_id=user_id,
            merchant_key=merchant_key,
            merchant=str(group["merchant"].iloc[-1]),
            frequency=frequency,
            average_gap_days=round(avg_gap, 2),
            average_amount_cents=round_half_up(avg_amount),
            confidence=confidence,
            next_expected_date=last_charge + timedelta(days=round_half_up(avg_gap)),
            first_seen_date=first_seen,
            last_charge_date=last_charge,
            transaction_count=len(group),
            transaction_ids=group["transaction_id"].tolist(),
            last_charge_amount_cents=round_half_up(amounts[-1]),
        )

    # -------------------------------------------------------------------------
    # INTERNAL: REGULARITY & CADENCE
    # -------------------------------------------------------------------------

    def _is_consistent(self, gaps: np.ndarray, avg_gap: float) -> bool:
        """True iff every gap lies within gap_tolerance * avg_gap of avg_gap."""
        return bool(np.all(np.abs(gaps - avg_gap) <= self.gap_tolerance * avg_gap))

    def _classify_cadence(self, avg_gap: float) -> str:
        """
        Buckets are checked in config order with inclusive upper bounds, so a
        mean gap sitting exactly on a boundary lands in the shorter cadence.
        """
        for cadence_name, max_gap in self.cadence_buckets.items():
            if avg_gap <= max_gap:
                return cadence_name
        return self.fallback_cadence

    # -------------------------------------------------------------------------
    # INTERNAL: CONFIDENCE
    # -------------------------------------------------------------------------

    def _compute_confidence(self, amounts: np.ndarray, avg_amount: float) -> float:
        """
        confidence = clamp(1 - mean(|amount - avg| / avg), floor, cap)

        A zero average (all charges $0) counts as zero variance.
        """
        if avg_amount == 0:
            amount_variance = 0.0
        else:
            amount_variance = float(np.mean(np.abs(amounts - avg_amount) / avg_amount))

        confidence = min(max(1.0 - amount_variance, self.confidence_floor), self.confidence_cap)
        return round(confidence, 4)
