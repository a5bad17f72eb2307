"""
sqlite_store.py
----------------
SQLite-backed implementation of all four store interfaces.

Every public write runs in its own transaction (commit on success, rollback
on any exception), so a failure while writing one user's rows leaves every
other user's rows untouched.

Schema:
    transactions   — bank-synced input, read by user and date range
    subscriptions  — UNIQUE(user_id, merchant_key); upserted by detection
    nudges         — UNIQUE(dedupe_key); append-only
    anomalies      — append-only
"""

import contextlib
import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from typing import Iterable, List, Optional

import pandas as pd

from core.recurring_charge_detector import to_timestamps
from core.models import (
    Anomaly,
    AnomalyFactor,
    Flagged,
    Nudge,
    Subscription,
    SubscriptionCandidate,
    Unflagged,
)
from storage.base_store import (
    AnomalyStore,
    NudgeStore,
    SubscriptionStore,
    TRANSACTION_COLUMNS,
    TransactionStore,
)

logger = logging.getLogger(__name__)


DDL = {
    "transactions": """
    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id    TEXT NOT NULL,
        user_id           TEXT NOT NULL,
        merchant          TEXT,
        amount_cents      INTEGER,
        transaction_date  TEXT,
        category          TEXT,
        created_at        TEXT,
        PRIMARY KEY (user_id, transaction_id)
    );
    """,
    "subscriptions": """
    CREATE TABLE IF NOT EXISTS subscriptions (
        user_id                   TEXT NOT NULL,
        merchant_key              TEXT NOT NULL,
        merchant                  TEXT NOT NULL,
        frequency                 TEXT,
        average_amount_cents      INTEGER NOT NULL,
        confidence                REAL,
        next_expected_date        TEXT,
        first_seen_date           TEXT,
        last_charge_date          TEXT,
        last_charge_amount_cents  INTEGER,
        is_confirmed              INTEGER NOT NULL DEFAULT 0,
        status                    TEXT NOT NULL DEFAULT 'active',
        zombie_score              REAL,
        zombie_flagged_at         TEXT,
        last_usage_date           TEXT,
        usage_count_last_30_days  INTEGER NOT NULL DEFAULT 0,
        updated_at                TEXT,
        UNIQUE (user_id, merchant_key)
    );
    """,
    "nudges": """
    CREATE TABLE IF NOT EXISTS nudges (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id       TEXT NOT NULL,
        nudge_type    TEXT NOT NULL,
        agent_type    TEXT NOT NULL,
        message       TEXT NOT NULL,
        priority      INTEGER,
        dedupe_key    TEXT NOT NULL UNIQUE,
        trigger_data  TEXT,
        created_at    TEXT NOT NULL
    );
    """,
    "anomalies": """
    CREATE TABLE IF NOT EXISTS anomalies (
        id                    INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id               TEXT NOT NULL,
        anomaly_type          TEXT NOT NULL,
        severity              TEXT NOT NULL,
        factors               TEXT,
        affected_entity_type  TEXT,
        affected_entity_id    TEXT,
        detected_at           TEXT NOT NULL
    );
    """,
}

_DETECTION_FIELDS = [
    "merchant", "frequency", "average_amount_cents", "confidence",
    "next_expected_date", "first_seen_date", "last_charge_date", "last_charge_amount_cents",
]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _to_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _optional_int(value) -> Optional[int]:
    return int(value) if value is not None else None


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class SQLiteStore(TransactionStore, SubscriptionStore, NudgeStore, AnomalyStore):
    """
    Usage:
        store = SQLiteStore("saveplus.sqlite")
        store.load_transactions(df)
        pipeline = SubscriptionPipeline(store, store, store, store)

    Pass ":memory:" for a throwaway database (a single shared connection is
    kept open for its lifetime).
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._shared: Optional[sqlite3.Connection] = None
        if db_path == ":memory:":
            self._shared = sqlite3.connect(db_path, check_same_thread=False)
        self.bootstrap()

    # -------------------------------------------------------------------------
    # CONNECTION HANDLING
    # -------------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        con = sqlite3.connect(self.db_path, timeout=30)
        con.execute("PRAGMA journal_mode=WAL")
        con.execute("PRAGMA synchronous=NORMAL")
        return con

    @contextlib.contextmanager
    def get_conn(self):
        with self._lock:
            con = self._connect()
            con.row_factory = sqlite3.Row
            try:
                yield con
                con.commit()
            except Exception:
                con.rollback()
                raise
            finally:
                if con is not self._shared:
                    con.close()

    def bootstrap(self) -> None:
        with self.get_conn() as con:
            for ddl in DDL.values():
                con.execute(ddl)
        logger.debug(f"SQLite schema ready at {self.db_path}.")

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    # -------------------------------------------------------------------------
    # TRANSACTIONS
    # -------------------------------------------------------------------------

    def load_transactions(self, transactions: pd.DataFrame) -> int:
        """Inserts (or replaces) transactions. Dates are stored as ISO strings."""
        df = transactions.copy()
        for col in TRANSACTION_COLUMNS:
            if col not in df.columns:
                df[col] = None
        df["transaction_date"] = to_timestamps(df["transaction_date"]).dt.strftime("%Y-%m-%d")
        df = df[TRANSACTION_COLUMNS].astype(object)
        df = df.where(df.notna(), None)
        for col in ("transaction_id", "user_id", "created_at"):
            df[col] = df[col].map(lambda v: None if v is None else str(v))
        rows = list(df.itertuples(index=False, name=None))

        with self.get_conn() as con:
            con.executemany(
                f"INSERT OR REPLACE INTO transactions ({', '.join(TRANSACTION_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in TRANSACTION_COLUMNS)})",
                rows,
            )
        return len(rows)

    def fetch(self, user_id: str, start: date, end: date) -> pd.DataFrame:
        with self.get_conn() as con:
            con.row_factory = None
            return pd.read_sql_query(
                f"SELECT {', '.join(TRANSACTION_COLUMNS)} FROM transactions "
                "WHERE user_id = ? AND transaction_date >= ? AND transaction_date <= ? "
                "ORDER BY transaction_date",
                con,
                params=(
                    str(user_id),
                    pd.Timestamp(start).strftime("%Y-%m-%d"),
                    pd.Timestamp(end).strftime("%Y-%m-%d"),
                ),
            )

    def list_user_ids(self) -> List[str]:
        with self.get_conn() as con:
            rows = con.execute("SELECT DISTINCT user_id FROM transactions ORDER BY user_id").fetchall()
        return [r["user_id"] for r in rows]

    # -------------------------------------------------------------------------
    # SUBSCRIPTIONS
    # -------------------------------------------------------------------------

    def upsert_candidates(self, candidates: Iterable[SubscriptionCandidate]) -> int:
        rows = [
            (
                c.user_id, c.merchant_key, c.merchant, c.frequency,
                int(c.average_amount_cents), float(c.confidence),
                _iso(c.next_expected_date), _iso(c.first_seen_date),
                _iso(c.last_charge_date), _optional_int(c.last_charge_amount_cents),
                datetime.now().isoformat(),
            )
            for c in candidates
        ]
        updates = ", ".join(f"{f} = excluded.{f}" for f in _DETECTION_FIELDS)
        with self.get_conn() as con:
            con.executemany(
                f"""
                INSERT INTO subscriptions (
                    user_id, merchant_key, {', '.join(_DETECTION_FIELDS)}, updated_at
                ) VALUES ({_placeholders(len(_DETECTION_FIELDS) + 3)})
                ON CONFLICT (user_id, merchant_key) DO UPDATE SET
                    {updates}, updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def get(self, user_id: str, merchant_key: str) -> Optional[Subscription]:
        with self.get_conn() as con:
            row = con.execute(
                "SELECT * FROM subscriptions WHERE user_id = ? AND merchant_key = ?",
                (user_id, merchant_key),
            ).fetchone()
        return self._row_to_subscription(row) if row else None

    def list_subscriptions(self, user_id: str) -> List[Subscription]:
        with self.get_conn() as con:
            rows = con.execute(
                "SELECT * FROM subscriptions WHERE user_id = ? ORDER BY merchant_key",
                (user_id,),
            ).fetchall()
        return [self._row_to_subscription(r) for r in rows]

    def save(self, subscription: Subscription) -> None:
        s = subscription
        flagged_at = s.zombie_flag.at.isoformat() if s.zombie_flag.is_flagged else None
        with self.get_conn() as con:
            con.execute(
                f"""
                INSERT INTO subscriptions (
                    user_id, merchant_key, {', '.join(_DETECTION_FIELDS)},
                    is_confirmed, status, zombie_score, zombie_flagged_at,
                    last_usage_date, usage_count_last_30_days, updated_at
                ) VALUES ({_placeholders(len(_DETECTION_FIELDS) + 9)})
                ON CONFLICT (user_id, merchant_key) DO UPDATE SET
                    {', '.join(f'{f} = excluded.{f}' for f in _DETECTION_FIELDS)},
                    is_confirmed = excluded.is_confirmed,
                    status = excluded.status,
                    zombie_score = excluded.zombie_score,
                    zombie_flagged_at = COALESCE(subscriptions.zombie_flagged_at, excluded.zombie_flagged_at),
                    last_usage_date = excluded.last_usage_date,
                    usage_count_last_30_days = excluded.usage_count_last_30_days,
                    updated_at = excluded.updated_at
                """,
                (
                    s.user_id, s.merchant_key, s.merchant, s.frequency,
                    int(s.average_amount_cents), s.confidence,
                    _iso(s.next_expected_date), _iso(s.first_seen_date), _iso(s.last_charge_date),
                    _optional_int(s.last_charge_amount_cents),
                    int(bool(s.is_confirmed)), s.status, s.zombie_score, flagged_at,
                    _iso(s.last_usage_date), int(s.usage_count_last_30_days),
                    _iso(s.updated_at or datetime.now()),
                ),
            )

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        flagged_at = _to_datetime(row["zombie_flagged_at"])
        return Subscription(
            user_id=row["user_id"],
            merchant_key=row["merchant_key"],
            merchant=row["merchant"],
            frequency=row["frequency"],
            average_amount_cents=row["average_amount_cents"],
            confidence=row["confidence"],
            next_expected_date=_to_date(row["next_expected_date"]),
            first_seen_date=_to_date(row["first_seen_date"]),
            last_charge_date=_to_date(row["last_charge_date"]),
            last_charge_amount_cents=row["last_charge_amount_cents"],
            is_confirmed=bool(row["is_confirmed"]),
            status=row["status"],
            zombie_score=row["zombie_score"],
            zombie_flag=Flagged(at=flagged_at) if flagged_at else Unflagged(),
            last_usage_date=_to_date(row["last_usage_date"]),
            usage_count_last_30_days=row["usage_count_last_30_days"],
            updated_at=_to_datetime(row["updated_at"]),
        )

    # -------------------------------------------------------------------------
    # NUDGES
    # -------------------------------------------------------------------------

    def append(self, nudge: Nudge) -> bool:
        with self.get_conn() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO nudges (
                    user_id, nudge_type, agent_type, message, priority,
                    dedupe_key, trigger_data, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    nudge.user_id, nudge.nudge_type, nudge.agent_type, nudge.message,
                    nudge.priority, nudge.dedupe_key,
                    json.dumps(nudge.trigger_data, default=str), nudge.created_at.isoformat(),
                ),
            )
            return cur.rowcount == 1

    def list_nudges(self, user_id: str) -> List[Nudge]:
        with self.get_conn() as con:
            rows = con.execute(
                "SELECT * FROM nudges WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [
            Nudge(
                user_id=r["user_id"],
                nudge_type=r["nudge_type"],
                agent_type=r["agent_type"],
                message=r["message"],
                priority=r["priority"],
                dedupe_key=r["dedupe_key"],
                trigger_data=json.loads(r["trigger_data"]) if r["trigger_data"] else {},
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    # -------------------------------------------------------------------------
    # ANOMALIES
    # -------------------------------------------------------------------------

    def append_many(self, anomalies: Iterable[Anomaly]) -> int:
        rows = [
            (
                a.user_id, a.anomaly_type, a.severity,
                json.dumps([vars(f) for f in a.factors]),
                a.affected_entity_type, a.affected_entity_id, a.detected_at.isoformat(),
            )
            for a in anomalies
        ]
        with self.get_conn() as con:
            con.executemany(
                """
                INSERT INTO anomalies (
                    user_id, anomaly_type, severity, factors,
                    affected_entity_type, affected_entity_id, detected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def list_anomalies(self, user_id: str) -> List[Anomaly]:
        with self.get_conn() as con:
            rows = con.execute(
                "SELECT * FROM anomalies WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [
            Anomaly(
                user_id=r["user_id"],
                anomaly_type=r["anomaly_type"],
                severity=r["severity"],
                factors=[AnomalyFactor(**f) for f in json.loads(r["factors"] or "[]")],
                affected_entity_type=r["affected_entity_type"],
                affected_entity_id=r["affected_entity_id"],
                detected_at=datetime.fromisoformat(r["detected_at"]),
            )
            for r in rows
        ]
