"""
memory_store.py
----------------
In-process implementations of the store interfaces.

Transactions are held in a pandas DataFrame; subscriptions, nudges and
anomalies in plain containers guarded by a lock so parallel batch workers
can share one instance.
"""

import threading
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from core.models import Anomaly, Nudge, Subscription, SubscriptionCandidate
from core.recurring_charge_detector import to_timestamps
from storage.base_store import (
    AnomalyStore,
    NudgeStore,
    SubscriptionStore,
    TRANSACTION_COLUMNS,
    TransactionStore,
)


class InMemoryTransactionStore(TransactionStore):
    """Serves transactions out of a DataFrame (e.g. loaded from CSV)."""

    def __init__(self, transactions: pd.DataFrame | None = None):
        if transactions is None:
            transactions = pd.DataFrame(columns=TRANSACTION_COLUMNS)
        df = transactions.copy()
        for col in TRANSACTION_COLUMNS:
            if col not in df.columns:
                df[col] = None
        df["user_id"] = df["user_id"].astype(str)
        df["_date"] = to_timestamps(df["transaction_date"])
        self._df = df

    def fetch(self, user_id: str, start: date, end: date) -> pd.DataFrame:
        start_ts = pd.Timestamp(start).normalize()
        end_ts = pd.Timestamp(end).normalize()
        mask = (
            (self._df["user_id"] == str(user_id))
            & (self._df["_date"] >= start_ts)
            & (self._df["_date"] <= end_ts)
        )
        return self._df.loc[mask, TRANSACTION_COLUMNS].reset_index(drop=True)

    def list_user_ids(self) -> List[str]:
        return sorted(self._df["user_id"].dropna().unique().tolist())


class InMemorySubscriptionStore(SubscriptionStore):

    def __init__(self):
        self._rows: Dict[Tuple[str, str], Subscription] = {}
        self._lock = threading.Lock()

    def upsert_candidates(self, candidates: Iterable[SubscriptionCandidate]) -> int:
        written = 0
        with self._lock:
            for candidate in candidates:
                key = (candidate.user_id, candidate.merchant_key)
                existing = self._rows.get(key)
                if existing is None:
                    self._rows[key] = Subscription.from_candidate(candidate)
                else:
                    self._rows[key] = existing.with_detection(candidate)
                written += 1
        return written

    def get(self, user_id: str, merchant_key: str) -> Optional[Subscription]:
        with self._lock:
            return self._rows.get((user_id, merchant_key))

    def list_subscriptions(self, user_id: str) -> List[Subscription]:
        with self._lock:
            rows = [s for (uid, _), s in self._rows.items() if uid == user_id]
        return sorted(rows, key=lambda s: s.merchant_key)

    def save(self, subscription: Subscription) -> None:
        key = (subscription.user_id, subscription.merchant_key)
        with self._lock:
            existing = self._rows.get(key)
            if existing is not None and existing.zombie_flag.is_flagged:
                subscription = replace(subscription, zombie_flag=existing.zombie_flag)
            self._rows[key] = subscription


class InMemoryNudgeStore(NudgeStore):

    def __init__(self):
        self._nudges: List[Nudge] = []
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def append(self, nudge: Nudge) -> bool:
        with self._lock:
            if nudge.dedupe_key in self._keys:
                return False
            self._keys.add(nudge.dedupe_key)
            self._nudges.append(nudge)
            return True

    def list_nudges(self, user_id: str) -> List[Nudge]:
        with self._lock:
            return [n for n in self._nudges if n.user_id == user_id]


class InMemoryAnomalyStore(AnomalyStore):

    def __init__(self):
        self._anomalies: List[Anomaly] = []
        self._lock = threading.Lock()

    def append_many(self, anomalies: Iterable[Anomaly]) -> int:
        batch = list(anomalies)
        with self._lock:
            self._anomalies.extend(batch)
        return len(batch)

    def list_anomalies(self, user_id: str) -> List[Anomaly]:
        with self._lock:
            return [a for a in self._anomalies if a.user_id == user_id]
