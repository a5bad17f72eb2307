"""
base_store.py
--------------
Abstract collaborator interfaces for the engine's persistence.

The engine never talks to a database directly. It reads transactions from a
TransactionStore and writes through a SubscriptionStore (upsert keyed by
(user_id, merchant_key)), a NudgeStore (append-only, deduplicated) and an
AnomalyStore (append-only).

Concrete backends:
    - storage.memory_store: in-process, for tests and CSV-driven runs
    - storage.sqlite_store: durable, single-file SQLite database

Implementations must be safe to call from several worker threads at once;
the batch runner processes users in parallel.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Iterable, List, Optional

import pandas as pd

from core.models import Anomaly, Nudge, Subscription, SubscriptionCandidate


TRANSACTION_COLUMNS = [
    "transaction_id", "user_id", "merchant", "amount_cents",
    "transaction_date", "category", "created_at",
]


class TransactionStore(ABC):
    """Read-only source of bank-synced transactions."""

    @abstractmethod
    def fetch(self, user_id: str, start: date, end: date) -> pd.DataFrame:
        """
        Returns one user's transactions dated within [start, end], with the
        columns in TRANSACTION_COLUMNS. An unknown user gives an empty frame.
        """
        ...

    @abstractmethod
    def list_user_ids(self) -> List[str]:
        ...


class SubscriptionStore(ABC):
    """Subscription records keyed by (user_id, merchant_key)."""

    @abstractmethod
    def upsert_candidates(self, candidates: Iterable[SubscriptionCandidate]) -> int:
        """
        Inserts new candidates and overwrites the detection fields of existing
        ones. Confirmation and zombie state on existing rows are preserved.

        Returns:
            Number of candidates written.
        """
        ...

    @abstractmethod
    def get(self, user_id: str, merchant_key: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    def list_subscriptions(self, user_id: str) -> List[Subscription]:
        """All of a user's subscriptions, ordered by merchant_key."""
        ...

    @abstractmethod
    def save(self, subscription: Subscription) -> None:
        """
        Writes a full record. A stored zombie flag is never cleared by a save:
        once flagged, the original flag timestamp is kept.
        """
        ...


class NudgeStore(ABC):
    """Append-only store of user-facing nudges."""

    @abstractmethod
    def append(self, nudge: Nudge) -> bool:
        """
        Appends a nudge unless one with the same dedupe_key already exists.

        Returns:
            True if written, False if it was a duplicate.
        """
        ...

    @abstractmethod
    def list_nudges(self, user_id: str) -> List[Nudge]:
        ...


class AnomalyStore(ABC):
    """Append-only store of detected anomalies."""

    @abstractmethod
    def append_many(self, anomalies: Iterable[Anomaly]) -> int:
        """
        Appends every anomaly as a new row and returns how many were written.

        There is no deduplication: rescanning the same window appends the
        same anomalies again. Callers that rerun a scan over an overlapping
        window should expect repeated rows.
        """
        ...

    @abstractmethod
    def list_anomalies(self, user_id: str) -> List[Anomaly]:
        ...
