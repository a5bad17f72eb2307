"""
anomaly_detector.py
---------------------
Multi-factor spending anomaly scan for a single user.

Compares a recent window (default: last 30 days) against a baseline window
(the 90 days before that) along four dimensions:
    1. Amount deviation — z-score of each recent amount against the baseline.
    2. Time-of-day — recent transactions at hours that are rare in the baseline.
    3. New merchant — recent merchants never seen in the baseline.
    4. Category shift — change in a category's share of transactions.

All thresholds and window sizes come from config.yaml.
"""

import logging
from datetime import date
from typing import List

import numpy as np
import pandas as pd

from core.merchant import MerchantNormalizer
from core.models import Anomaly, AnomalyFactor
from core.recurring_charge_detector import to_timestamps
from config.config_loader import get_anomaly_detection_config

logger = logging.getLogger(__name__)


class MultiFactorAnomalyDetector:
    """
    Flags unusual recent transactions for one user.

    Usage:
        detector = MultiFactorAnomalyDetector()
        anomalies = detector.detect(transactions_df, as_of=date.today())
    """

    def __init__(self):
        self.config = get_anomaly_detection_config()
        self.recent_days = self.config["recent_days"]
        self.baseline_days = self.config["baseline_days"]
        self.min_baseline = self.config["min_baseline_transactions"]
        self.normalizer = MerchantNormalizer()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect(self, transactions: pd.DataFrame, as_of: date | None = None) -> List[Anomaly]:
        """
        Run all anomaly checks.

        Args:
            transactions: DataFrame with at least user_id, transaction_id,
                merchant, amount_cents, transaction_date, category.
                An optional created_at column enables the time-of-day check.
            as_of: End of the recent window. Defaults to today.

        Returns:
            List of Anomaly. Empty if there is no recent activity or the
            baseline is too thin to compare against.
        """
        if transactions is None or transactions.empty:
            return []

        as_of_ts = pd.Timestamp(as_of or date.today()).normalize()
        recent_start = as_of_ts - pd.Timedelta(days=self.recent_days)
        baseline_start = recent_start - pd.Timedelta(days=self.baseline_days)

        df = transactions.copy()
        df["transaction_date"] = to_timestamps(df["transaction_date"])
        df["amount_cents"] = pd.to_numeric(df["amount_cents"], errors="coerce")
        df = df[df["transaction_date"].notna() & df["amount_cents"].notna()]

        recent = df[(df["transaction_date"] >= recent_start) & (df["transaction_date"] <= as_of_ts)]
        baseline = df[(df["transaction_date"] >= baseline_start) & (df["transaction_date"] < recent_start)]

        if recent.empty:
            return []
        if len(baseline) < self.min_baseline:
            logger.debug(f"Baseline has {len(baseline)} transactions; need {self.min_baseline}.")
            return []

        user_id = str(df["user_id"].iloc[0]) if "user_id" in df.columns else ""

        anomalies: List[Anomaly] = []
        anomalies.extend(self._check_amount_deviation(user_id, recent, baseline))
        anomalies.extend(self._check_time_pattern(user_id, recent, baseline))
        anomalies.extend(self._check_new_merchants(user_id, recent, baseline))
        anomalies.extend(self._check_category_shift(user_id, recent, baseline))

        return anomalies

    # -------------------------------------------------------------------------
    # INTERNAL: AMOUNT DEVIATION
    # -------------------------------------------------------------------------

    def _check_amount_deviation(
        self, user_id: str, recent: pd.DataFrame, baseline: pd.DataFrame
    ) -> List[Anomaly]:
        """3-sigma rule on absolute amounts, population standard deviation."""
        baseline_amounts = np.abs(baseline["amount_cents"].values.astype(float))
        mean = float(np.mean(baseline_amounts))
        std = float(np.std(baseline_amounts))

        # Flat baseline: every z-score would be infinite or undefined.
        if std == 0:
            return []

        threshold = self.config["amount_z_threshold"]
        high = self.config["amount_z_high"]

        anomalies = []
        for row in recent.itertuples(index=False):
            z = (abs(float(row.amount_cents)) - mean) / std
            if abs(z) <= threshold:
                continue
            anomalies.append(Anomaly(
                user_id=user_id,
                anomaly_type="unusual_amount",
                severity="high" if abs(z) > high else "medium",
                factors=[AnomalyFactor(
                    type="amount_deviation",
                    deviation=round(z, 3),
                    description=f"Amount is {z:.1f}σ from baseline",
                )],
                affected_entity_type="transaction",
                affected_entity_id=str(row.transaction_id),
            ))
        return anomalies

    # -------------------------------------------------------------------------
    # INTERNAL: TIME-OF-DAY
    # -------------------------------------------------------------------------

    def _check_time_pattern(
        self, user_id: str, recent: pd.DataFrame, baseline: pd.DataFrame
    ) -> List[Anomaly]:
        if "created_at" not in baseline.columns:
            return []

        baseline_hours = pd.to_datetime(baseline["created_at"], errors="coerce", format="mixed").dt.hour.dropna()
        recent_hours = pd.to_datetime(recent["created_at"], errors="coerce", format="mixed").dt.hour
        if baseline_hours.empty:
            return []

        hour_counts = baseline_hours.astype(int).value_counts()
        total = int(hour_counts.sum())
        rare_share = self.config["rare_hour_share"]
        min_count = self.config["rare_hour_min_count"]

        anomalies = []
        for txn_id, hour in zip(recent["transaction_id"], recent_hours):
            if pd.isna(hour):
                continue
            hour = int(hour)
            count = int(hour_counts.get(hour, 0))
            share = count / total
            if share < rare_share and count > min_count:
                anomalies.append(Anomaly(
                    user_id=user_id,
                    anomaly_type="unusual_time",
                    severity="low",
                    factors=[AnomalyFactor(
                        type="time_deviation",
                        deviation=round(1 - share, 4),
                        description=f"Transaction at unusual time ({hour}:00)",
                    )],
                    affected_entity_type="transaction",
                    affected_entity_id=str(txn_id),
                ))
        return anomalies

    # -------------------------------------------------------------------------
    # INTERNAL: NEW MERCHANTS
    # -------------------------------------------------------------------------

    def _check_new_merchants(
        self, user_id: str, recent: pd.DataFrame, baseline: pd.DataFrame
    ) -> List[Anomaly]:
        known = set(baseline["merchant"].map(self.normalizer.normalize)) - {""}

        anomalies = []
        for txn_id, merchant in zip(recent["transaction_id"], recent["merchant"]):
            key = self.normalizer.normalize(merchant)
            if not key or key in known:
                continue
            anomalies.append(Anomaly(
                user_id=user_id,
                anomaly_type="new_merchant",
                severity="low",
                factors=[AnomalyFactor(
                    type="merchant_deviation",
                    deviation=1.0,
                    description=f"New merchant: {merchant}",
                )],
                affected_entity_type="transaction",
                affected_entity_id=str(txn_id),
            ))
        return anomalies

    # -------------------------------------------------------------------------
    # INTERNAL: CATEGORY SHIFT
    # -------------------------------------------------------------------------

    def _check_category_shift(
        self, user_id: str, recent: pd.DataFrame, baseline: pd.DataFrame
    ) -> List[Anomaly]:
        """Compares each recent category's share of transactions with its baseline share."""
        baseline_counts = baseline["category"].dropna().value_counts()
        recent_counts = recent["category"].dropna().value_counts()
        if baseline_counts.empty or recent_counts.empty:
            return []

        baseline_total = int(baseline_counts.sum())
        recent_total = int(recent_counts.sum())
        threshold = self.config["category_shift_threshold"]
        high = self.config["category_shift_high"]
        min_recent = self.config["category_min_recent_count"]

        anomalies = []
        for category, recent_count in recent_counts.items():
            baseline_freq = int(baseline_counts.get(category, 0)) / baseline_total
            recent_freq = int(recent_count) / recent_total
            change = recent_freq - baseline_freq

            if abs(change) <= threshold or recent_count <= min_recent:
                continue
            direction = "increased" if change > 0 else "decreased"
            anomalies.append(Anomaly(
                user_id=user_id,
                anomaly_type="category_shift",
                severity="high" if abs(change) > high else "medium",
                factors=[AnomalyFactor(
                    type="category_shift",
                    deviation=round(change, 4),
                    description=f"{category} spending {direction} by {abs(change * 100):.0f}%",
                )],
            ))
        return anomalies
