"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- SubscriptionCandidate: Output of the detection layer. One per
  (user, merchant) group with a regular charge interval.

- Subscription: The stored record for a (user, merchant). Detection fields are
  overwritten on every run; confirmation and zombie state are not.

- ZombieFlag (Unflagged | Flagged): One-way flag state. There is no transition
  from Flagged back to Unflagged.

- ZombieAssessment / Nudge: Output of the zombie scorer and the single
  user-facing side effect of a flag flip.

- PriceHike: A confirmed subscription whose latest charge jumped above its
  stored amount.

- Anomaly / AnomalyFactor: Output of the multi-factor anomaly scan.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional, Union


# Cadence labels
WEEKLY = "weekly"
MONTHLY = "monthly"
QUARTERLY = "quarterly"
YEARLY = "yearly"
CADENCES = (WEEKLY, MONTHLY, QUARTERLY, YEARLY)

# Subscription status values
STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class Unflagged:
    """Subscription has never crossed the zombie threshold."""

    @property
    def is_flagged(self) -> bool:
        return False


@dataclass(frozen=True)
class Flagged:
    """Subscription crossed the zombie threshold at `at`. Terminal for this engine."""
    at: datetime

    @property
    def is_flagged(self) -> bool:
        return True


ZombieFlag = Union[Unflagged, Flagged]


@dataclass
class SubscriptionCandidate:
    """
    Recurring charge detected for a single (user, merchant) group.

    Produced by RecurringChargeDetector. Recomputed wholesale on every run and
    persisted by upsert keyed on (user_id, merchant_key).
    """

    # Identity
    user_id: str
    merchant_key: str                # Normalized grouping key
    merchant: str                    # Most recent raw merchant name, for display

    # Cadence
    frequency: str                   # "weekly" | "monthly" | "quarterly" | "yearly"
    average_gap_days: float

    # Amount
    average_amount_cents: int
    confidence: float                # 0.5 – 0.99

    # Timing
    next_expected_date: date
    first_seen_date: date
    last_charge_date: date

    # Evidence
    transaction_count: int
    transaction_ids: list = field(default_factory=list)
    last_charge_amount_cents: Optional[int] = None   # Magnitude of the most recent charge


@dataclass
class Subscription:
    """
    Stored subscription record for a (user, merchant).

    The first block mirrors SubscriptionCandidate and is replaced on each
    detection run. Everything from is_confirmed down is owned elsewhere
    (user confirmation, the zombie scorer) and survives re-detection.
    """

    user_id: str
    merchant_key: str
    merchant: str
    frequency: str
    average_amount_cents: int
    confidence: float
    next_expected_date: Optional[date] = None
    first_seen_date: Optional[date] = None
    last_charge_date: Optional[date] = None
    last_charge_amount_cents: Optional[int] = None

    is_confirmed: bool = False
    status: str = STATUS_ACTIVE
    zombie_score: Optional[float] = None
    zombie_flag: ZombieFlag = field(default_factory=Unflagged)
    last_usage_date: Optional[date] = None
    usage_count_last_30_days: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def from_candidate(cls, candidate: SubscriptionCandidate) -> "Subscription":
        return cls(
            user_id=candidate.user_id,
            merchant_key=candidate.merchant_key,
            merchant=candidate.merchant,
            frequency=candidate.frequency,
            average_amount_cents=candidate.average_amount_cents,
            confidence=candidate.confidence,
            next_expected_date=candidate.next_expected_date,
            first_seen_date=candidate.first_seen_date,
            last_charge_date=candidate.last_charge_date,
            last_charge_amount_cents=candidate.last_charge_amount_cents,
        )

    def with_detection(self, candidate: SubscriptionCandidate) -> "Subscription":
        """Returns a copy with detection fields taken from `candidate`."""
        return replace(
            self,
            merchant=candidate.merchant,
            frequency=candidate.frequency,
            average_amount_cents=candidate.average_amount_cents,
            confidence=candidate.confidence,
            next_expected_date=candidate.next_expected_date,
            first_seen_date=candidate.first_seen_date,
            last_charge_date=candidate.last_charge_date,
            last_charge_amount_cents=candidate.last_charge_amount_cents,
        )


@dataclass
class ZombieAssessment:
    """Zombie scorer output for one subscription."""

    user_id: str
    merchant_key: str

    # Inputs
    days_since_last_usage: int
    usage_count: int
    monthly_amount: float            # Dollars, monthly-equivalent
    last_usage_date: Optional[date]

    # Component scores
    time_score: float
    usage_score: float
    cost_score: float
    confidence_bonus: float
    zombie_score: float              # 0 – 100

    # Flag state after this assessment
    flag: ZombieFlag
    newly_flagged: bool = False


@dataclass
class PriceHike:
    """Latest charge of a confirmed subscription is well above its usual amount."""

    user_id: str
    merchant_key: str
    merchant: str
    previous_amount_cents: int       # Stored average charge
    new_amount_cents: int            # Most recent charge
    annual_increase: float           # Dollars per year at the subscription's cadence


@dataclass
class Nudge:
    """
    User-facing notification. Append-only; `dedupe_key` makes the append
    idempotent for a given flag event.
    """

    user_id: str
    nudge_type: str
    agent_type: str
    message: str
    priority: int
    dedupe_key: str
    trigger_data: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class AnomalyFactor:
    type: str                        # "amount_deviation" | "time_deviation" | ...
    deviation: float
    description: str


@dataclass
class Anomaly:
    """A single detected spending anomaly."""

    user_id: str
    anomaly_type: str                # "unusual_amount" | "unusual_time" | "new_merchant" | "category_shift"
    severity: str                    # "low" | "medium" | "high"
    factors: list = field(default_factory=list)
    affected_entity_type: Optional[str] = None
    affected_entity_id: Optional[str] = None
    detected_at: datetime = field(default_factory=datetime.now)
