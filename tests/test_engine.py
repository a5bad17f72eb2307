"""
test_engine.py
---------------
Test suite for the subscription intelligence engine.

Run from the project root:
    python -m pytest tests/test_engine.py -v

Tests are organized by layer:
    - Config & Merchant Normalization
    - Recurring Charge Detector
    - Zombie Scorer & Price Hike Detector
    - Stores (in-memory + SQLite)
    - Pipeline (integration)
    - Anomaly Detector
"""

import sys
import os
import pytest
import pandas as pd
from dataclasses import replace
from datetime import date, datetime, timedelta

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import (
    load_config, get_price_hike_config, get_zombie_scoring_config, reset_config, _get_block,
)
from core.merchant import MerchantNormalizer, normalize_merchant
from core.models import Flagged, Subscription, SubscriptionCandidate, Unflagged
from core.recurring_charge_detector import RecurringChargeDetector, round_half_up
from scoring.price_hike_detector import PriceHikeDetector
from scoring.zombie_scorer import ZombieScorer
from storage.memory_store import (
    InMemoryAnomalyStore,
    InMemoryNudgeStore,
    InMemorySubscriptionStore,
    InMemoryTransactionStore,
)
from storage.sqlite_store import SQLiteStore
from pipeline import SubscriptionPipeline, candidates_to_frame, CANDIDATE_COLUMNS
from monitoring.anomaly_detector import MultiFactorAnomalyDetector


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_txns(
    gaps: list[int],
    amounts: list[int] | None = None,
    user_id: str = "u1",
    merchant: str = "NETFLIX.COM",
    category: str = "Subscriptions",
    start_date: date = date(2024, 1, 1),
    start_txn_id: int = 1,
) -> pd.DataFrame:
    """Helper: one charge at start_date, then one after each gap (in days)."""
    dates = [start_date]
    for gap in gaps:
        dates.append(dates[-1] + timedelta(days=gap))
    if amounts is None:
        amounts = [1599] * len(dates)
    assert len(amounts) == len(dates)

    rows = []
    for i, (d, amount) in enumerate(zip(dates, amounts)):
        rows.append({
            "transaction_id": start_txn_id + i,
            "user_id": user_id,
            "merchant": merchant,
            "amount_cents": amount,
            "transaction_date": d.isoformat(),
            "category": category,
        })
    return pd.DataFrame(rows)


def _make_candidate(**overrides) -> SubscriptionCandidate:
    fields = dict(
        user_id="u1",
        merchant_key="netflix com",
        merchant="NETFLIX.COM",
        frequency="monthly",
        average_gap_days=30.0,
        average_amount_cents=1599,
        confidence=0.99,
        next_expected_date=date(2024, 4, 30),
        first_seen_date=date(2024, 1, 1),
        last_charge_date=date(2024, 3, 31),
        transaction_count=4,
        transaction_ids=[1, 2, 3, 4],
    )
    fields.update(overrides)
    return SubscriptionCandidate(**fields)


def _make_subscription(**overrides) -> Subscription:
    sub = Subscription.from_candidate(_make_candidate())
    sub = replace(sub, is_confirmed=True)
    return replace(sub, **overrides)


# =============================================================================
# CONFIG & MERCHANT NORMALIZATION TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        assert "recurring_detection" in config
        assert "zombie_scoring" in config
        assert "anomaly_detection" in config
        assert "merchant_normalization" in config
        assert "batch" in config
        assert get_price_hike_config()["increase_factor"] == pytest.approx(1.1)

    def test_detection_constants(self):
        cfg = load_config()["recurring_detection"]
        assert cfg["gap_tolerance"] == pytest.approx(0.10)
        assert list(cfg["cadence_buckets"].keys()) == ["weekly", "monthly", "quarterly"]
        assert cfg["confidence_floor"] == 0.5
        assert cfg["confidence_cap"] == 0.99

    def test_zombie_threshold(self):
        assert get_zombie_scoring_config()["flag_threshold"] == 70

    def test_missing_block_raises(self):
        with pytest.raises(KeyError):
            _get_block("nonexistent_block")

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/config.yaml")


class TestMerchantNormalization:
    def test_case_and_punctuation_folded(self):
        assert normalize_merchant("NETFLIX.COM") == normalize_merchant("Netflix.com")
        assert normalize_merchant("Netflix.com") == "netflix com"

    def test_store_numbers_stripped(self):
        assert normalize_merchant("Starbucks #1234") == "starbucks"
        assert normalize_merchant("SPOTIFY USA 000123456") == "spotify usa"

    def test_processor_prefix_stripped(self):
        assert normalize_merchant("SQ *Blue Bottle Coffee") == "blue bottle coffee"

    def test_missing_names_are_empty(self):
        normalizer = MerchantNormalizer()
        assert normalizer(None) == ""
        assert normalizer(float("nan")) == ""


# =============================================================================
# RECURRING CHARGE DETECTOR TESTS
# =============================================================================

class TestRecurringChargeDetector:
    def test_single_transaction_group_emits_nothing(self):
        txns = _make_txns(gaps=[])
        assert RecurringChargeDetector().detect(txns) == []

    def test_regular_monthly_series(self):
        txns = _make_txns(gaps=[30, 30, 30], amounts=[999, 999, 999, 999])
        results = RecurringChargeDetector().detect(txns)

        assert len(results) == 1
        c = results[0]
        assert c.frequency == "monthly"
        assert c.merchant_key == "netflix com"
        assert c.average_amount_cents == 999
        assert c.first_seen_date == date(2024, 1, 1)
        assert c.last_charge_date == date(2024, 3, 31)
        assert c.next_expected_date == date(2024, 4, 30)
        assert c.transaction_count == 4
        assert c.transaction_ids == [1, 2, 3, 4]
        assert c.last_charge_amount_cents == 999

    def test_identical_amounts_cap_confidence(self):
        txns = _make_txns(gaps=[30, 30], amounts=[999, 999, 999])
        results = RecurringChargeDetector().detect(txns)
        assert results[0].confidence == 0.99

    def test_irregular_gap_rejects_group(self):
        # 45 deviates from the ~35 day mean by more than 10%
        txns = _make_txns(gaps=[30, 45, 30])
        assert RecurringChargeDetector().detect(txns) == []

    def test_gap_inside_tolerance_accepted(self):
        # mean 30, every gap within 3 days
        txns = _make_txns(gaps=[28, 31, 31])
        results = RecurringChargeDetector().detect(txns)
        assert len(results) == 1
        assert results[0].frequency == "monthly"

    def test_amount_variance_lowers_confidence(self):
        txns = _make_txns(gaps=[30, 30], amounts=[999, 500, 999])
        results = RecurringChargeDetector().detect(txns)
        assert len(results) == 1
        assert 0.5 <= results[0].confidence < 0.99
        assert results[0].confidence == pytest.approx(0.7337, abs=1e-3)

    def test_confidence_floors_at_half(self):
        # relative deviations 0.75, 1.5, 0.75 -> variance 1.0 -> raw confidence 0
        txns = _make_txns(gaps=[30, 30], amounts=[100, 1000, 100])
        results = RecurringChargeDetector().detect(txns)
        assert results[0].confidence == 0.5

    def test_zero_amounts_do_not_produce_nan(self):
        txns = _make_txns(gaps=[30, 30], amounts=[0, 0, 0])
        results = RecurringChargeDetector().detect(txns)
        assert len(results) == 1
        assert results[0].average_amount_cents == 0
        assert results[0].confidence == 0.99

    def test_negative_amounts_use_magnitude(self):
        txns = _make_txns(gaps=[30, 30], amounts=[-1599, -1599, -1599])
        results = RecurringChargeDetector().detect(txns)
        assert results[0].average_amount_cents == 1599
        assert results[0].confidence == 0.99

    @pytest.mark.parametrize("gap,expected", [
        (7, "weekly"),
        (9, "weekly"),
        (10, "monthly"),
        (35, "monthly"),
        (36, "quarterly"),
        (91, "quarterly"),
        (100, "quarterly"),
        (101, "yearly"),
    ])
    def test_cadence_buckets(self, gap, expected):
        txns = _make_txns(gaps=[gap, gap])
        results = RecurringChargeDetector().detect(txns)
        assert len(results) == 1
        assert results[0].frequency == expected

    def test_yearly_series_with_extended_lookback(self):
        txns = _make_txns(gaps=[366, 365], start_date=date(2022, 1, 1))
        detector = RecurringChargeDetector()
        # Default 365-day window only sees the last two charges
        short = detector.detect(txns)
        assert short[0].transaction_count == 2
        full = detector.detect(txns, lookback_days=800)
        assert full[0].transaction_count == 3
        assert full[0].frequency == "yearly"

    def test_two_point_group_always_classified(self):
        # Known limitation: a single gap never deviates from its own mean.
        txns = _make_txns(gaps=[50])
        results = RecurringChargeDetector().detect(txns)
        assert len(results) == 1
        assert results[0].frequency == "quarterly"
        assert results[0].next_expected_date == date(2024, 2, 20) + timedelta(days=50)

    def test_same_day_charges_rejected(self):
        txns = _make_txns(gaps=[0, 0])
        assert RecurringChargeDetector().detect(txns) == []

    def test_next_expected_rounds_half_up(self):
        assert round_half_up(30.5) == 31
        assert round_half_up(30.49) == 30
        # gaps 30, 31 -> mean 30.5 -> 31 days after the last charge
        txns = _make_txns(gaps=[30, 31])
        c = RecurringChargeDetector().detect(txns)[0]
        assert c.next_expected_date == c.last_charge_date + timedelta(days=31)

    def test_merchant_variants_grouped_together(self):
        txns = _make_txns(gaps=[30, 30, 30])
        txns.loc[1, "merchant"] = "Netflix.com"
        txns.loc[2, "merchant"] = "netflix.com #42"
        results = RecurringChargeDetector().detect(txns)
        assert len(results) == 1
        assert results[0].transaction_count == 4

    def test_malformed_rows_dropped_not_fatal(self):
        txns = _make_txns(gaps=[30, 30, 30])
        bad = pd.DataFrame([
            {"transaction_id": 90, "user_id": "u1", "merchant": "NETFLIX.COM",
             "amount_cents": 1599, "transaction_date": "not-a-date", "category": "Subscriptions"},
            {"transaction_id": 91, "user_id": "u1", "merchant": "NETFLIX.COM",
             "amount_cents": None, "transaction_date": "2024-02-15", "category": "Subscriptions"},
        ])
        txns = pd.concat([txns, bad], ignore_index=True)
        results = RecurringChargeDetector().detect(txns)
        assert len(results) == 1
        assert results[0].transaction_count == 4

    def test_empty_input_returns_empty(self):
        empty = pd.DataFrame(columns=[
            "transaction_id", "user_id", "merchant", "amount_cents",
            "transaction_date", "category",
        ])
        assert RecurringChargeDetector().detect(empty) == []

    def test_missing_columns_raises(self):
        bad_df = pd.DataFrame({"user_id": ["u1"], "amount_cents": [100]})
        with pytest.raises(ValueError, match="Missing required columns"):
            RecurringChargeDetector().detect(bad_df)

    def test_as_of_limits_window(self):
        txns = _make_txns(gaps=[30, 30, 30])
        results = RecurringChargeDetector().detect(txns, as_of=date(2024, 3, 15))
        assert results[0].transaction_count == 3
        assert results[0].last_charge_date == date(2024, 3, 1)

    def test_users_are_independent(self):
        txns = pd.concat([
            _make_txns(gaps=[30, 30], user_id="u1"),
            _make_txns(gaps=[7, 7], user_id="u2", merchant="Gym Weekly", start_txn_id=100),
        ], ignore_index=True)
        results = RecurringChargeDetector().detect(txns)
        assert {(c.user_id, c.frequency) for c in results} == {("u1", "monthly"), ("u2", "weekly")}

    def test_detection_is_deterministic(self):
        txns = pd.concat([
            _make_txns(gaps=[30, 30, 30]),
            _make_txns(gaps=[7, 7, 7], merchant="Gym", start_txn_id=50),
        ], ignore_index=True)
        detector = RecurringChargeDetector()
        assert detector.detect(txns) == detector.detect(txns)


# =============================================================================
# ZOMBIE SCORER TESTS
# =============================================================================

class TestZombieScorer:
    def test_maximum_score(self):
        assert ZombieScorer().compute_score(90, 0, 50, 1.0) == 100

    def test_minimum_score(self):
        assert ZombieScorer().compute_score(0, 10, 0, 0) == 0

    def test_components_clamped(self):
        parts = ZombieScorer().score_components(500, 100, 1000, 0.5)
        assert parts["time_score"] == 40
        assert parts["usage_score"] == 0
        assert parts["cost_score"] == 20
        assert parts["confidence_bonus"] == 5
        assert parts["zombie_score"] == 65

    def test_partial_score(self):
        # 20 + 18 + 10 + 8
        assert ZombieScorer().compute_score(45, 2, 25, 0.8) == pytest.approx(56.0)

    def test_monthly_equivalent_amount(self):
        scorer = ZombieScorer()
        assert scorer.monthly_equivalent_amount(1599, "monthly") == pytest.approx(15.99)
        assert scorer.monthly_equivalent_amount(1000, "weekly") == pytest.approx(10 * 52 / 12)
        assert scorer.monthly_equivalent_amount(3000, "quarterly") == pytest.approx(10.0)
        assert scorer.monthly_equivalent_amount(12000, "yearly") == pytest.approx(10.0)
        assert scorer.monthly_equivalent_amount(-1599, None) == pytest.approx(15.99)

    def test_usage_signals_default_when_unused(self):
        sub = _make_subscription()
        txns = _make_txns(gaps=[30, 30])
        days, count, last = ZombieScorer().usage_signals(sub, txns, date(2024, 3, 31))
        assert (days, count, last) == (90, 0, None)

    def test_usage_signals_from_non_subscription_rows(self):
        sub = _make_subscription(merchant_key="spotify", merchant="SPOTIFY")
        as_of = date(2024, 6, 30)
        txns = pd.DataFrame([
            {"merchant": "SPOTIFY", "category": "Subscriptions", "transaction_date": "2024-06-28"},
            {"merchant": "Spotify", "category": "Music", "transaction_date": "2024-06-25"},
            {"merchant": "SPOTIFY", "category": "Music", "transaction_date": "2024-06-10"},
            {"merchant": "SPOTIFY", "category": "Music", "transaction_date": "2024-05-15"},
            {"merchant": "Other Shop", "category": "Music", "transaction_date": "2024-06-29"},
        ])
        days, count, last = ZombieScorer().usage_signals(sub, txns, as_of)
        assert days == 5
        assert count == 2
        assert last == date(2024, 6, 25)

    def test_unused_subscription_flagged_once(self):
        scorer = ZombieScorer()
        now = datetime(2024, 4, 1, 9, 0)
        assessment = scorer.assess(_make_subscription(), _make_txns(gaps=[30, 30]),
                                   as_of=date(2024, 4, 1), now=now)
        # 40 + 30 + 6.4 + 9.9
        assert assessment.zombie_score == pytest.approx(86.3, abs=0.01)
        assert assessment.newly_flagged is True
        assert assessment.flag == Flagged(at=now)

    def test_already_flagged_not_reflagged(self):
        scorer = ZombieScorer()
        earlier = datetime(2024, 1, 15)
        sub = _make_subscription(zombie_flag=Flagged(at=earlier))
        assessment = scorer.assess(sub, _make_txns(gaps=[30, 30]),
                                   as_of=date(2024, 4, 1), now=datetime(2024, 4, 1))
        assert assessment.zombie_score > 70
        assert assessment.newly_flagged is False
        assert assessment.flag.at == earlier

    def test_score_at_threshold_not_flagged(self):
        # 40 + 30 + 0 + 0 = 70, which is not strictly above the threshold
        sub = _make_subscription(average_amount_cents=0, confidence=0.0)
        assessment = ZombieScorer().assess(sub, pd.DataFrame(), as_of=date(2024, 4, 1))
        assert assessment.zombie_score == 70
        assert assessment.newly_flagged is False
        assert assessment.flag == Unflagged()

    def test_score_just_above_threshold_flagged(self):
        # 32 + 30 + 0 + 8.004 = 70.004, displayed as 70.0 but still above 70
        sub = _make_subscription(average_amount_cents=0, confidence=0.8004)
        as_of = date(2024, 6, 30)
        usage = pd.DataFrame([
            {"merchant": "Netflix.com", "category": "Entertainment",
             "transaction_date": (as_of - timedelta(days=72)).isoformat()},
        ])
        assessment = ZombieScorer().assess(sub, usage, as_of=as_of, now=datetime(2024, 6, 30))
        assert assessment.days_since_last_usage == 72
        assert assessment.zombie_score == 70.0
        assert assessment.newly_flagged is True
        assert assessment.flag == Flagged(at=datetime(2024, 6, 30))

    def test_active_usage_not_flagged(self):
        sub = _make_subscription(merchant_key="spotify", merchant="SPOTIFY")
        usage = pd.DataFrame([
            {"merchant": "SPOTIFY", "category": "Music",
             "transaction_date": (date(2024, 4, 1) - timedelta(days=d)).isoformat()}
            for d in range(1, 10)
        ])
        assessment = ZombieScorer().assess(sub, usage, as_of=date(2024, 4, 1))
        assert assessment.zombie_score < 70
        assert assessment.flag == Unflagged()

    def test_only_confirmed_active_are_scorable(self):
        scorer = ZombieScorer()
        assert scorer.is_scorable(_make_subscription())
        assert not scorer.is_scorable(_make_subscription(is_confirmed=False))
        assert not scorer.is_scorable(_make_subscription(status="cancelled"))

    def test_apply_and_nudge(self):
        scorer = ZombieScorer()
        sub = _make_subscription()
        now = datetime(2024, 4, 1)
        assessment = scorer.assess(sub, pd.DataFrame(), as_of=date(2024, 4, 1), now=now)

        updated = scorer.apply(sub, assessment, now=now)
        assert updated.zombie_score == assessment.zombie_score
        assert updated.zombie_flag.is_flagged
        assert updated.updated_at == now

        nudge = scorer.build_nudge(sub, assessment)
        assert nudge.dedupe_key == "zombie:u1:netflix com"
        assert nudge.nudge_type == "zombie_subscription"
        assert "NETFLIX.COM" in nudge.message
        assert nudge.trigger_data["zombie_score"] == assessment.zombie_score


class TestPriceHikeDetector:
    def test_latest_charge_above_factor_is_hike(self):
        sub = _make_subscription(average_amount_cents=1599, last_charge_amount_cents=1999)
        hike = PriceHikeDetector().check(sub)
        assert hike is not None
        assert hike.previous_amount_cents == 1599
        assert hike.new_amount_cents == 1999
        assert hike.annual_increase == pytest.approx(48.0)

    def test_increase_at_factor_is_not_hike(self):
        detector = PriceHikeDetector()
        assert detector.check(_make_subscription(average_amount_cents=1000, last_charge_amount_cents=1100)) is None
        assert detector.check(_make_subscription(average_amount_cents=1000, last_charge_amount_cents=1101)) is not None

    def test_unconfirmed_or_unknown_last_charge_skipped(self):
        detector = PriceHikeDetector()
        assert detector.check(_make_subscription(is_confirmed=False, last_charge_amount_cents=5000)) is None
        assert detector.check(_make_subscription(status="paused", last_charge_amount_cents=5000)) is None
        assert detector.check(_make_subscription(last_charge_amount_cents=None)) is None

    def test_annual_increase_follows_cadence(self):
        sub = _make_subscription(
            frequency="yearly", average_amount_cents=10000, last_charge_amount_cents=12000
        )
        assert PriceHikeDetector().check(sub).annual_increase == pytest.approx(20.0)

    def test_nudge_keyed_on_new_price(self):
        detector = PriceHikeDetector()
        sub = _make_subscription(average_amount_cents=1599, last_charge_amount_cents=1999)
        nudge = detector.build_nudge(detector.check(sub))
        assert nudge.nudge_type == "subscription_price_hike"
        assert nudge.priority == 1
        assert nudge.dedupe_key == "price_hike:u1:netflix com:1999"
        assert "$15.99 to $19.99" in nudge.message
        assert "$48.00/year" in nudge.message


# =============================================================================
# STORE TESTS
# =============================================================================

@pytest.fixture(params=["memory", "sqlite"])
def stores(request):
    """Yields (subscription_store, nudge_store) for each backend."""
    if request.param == "memory":
        yield InMemorySubscriptionStore(), InMemoryNudgeStore()
    else:
        store = SQLiteStore(":memory:")
        yield store, store
        store.close()


class TestStores:
    def test_upsert_overwrites_without_duplicating(self, stores):
        subs, _ = stores
        subs.upsert_candidates([_make_candidate()])
        subs.upsert_candidates([_make_candidate(average_amount_cents=1799, confidence=0.9)])

        rows = subs.list_subscriptions("u1")
        assert len(rows) == 1
        assert rows[0].average_amount_cents == 1799
        assert rows[0].confidence == pytest.approx(0.9)

    def test_upsert_preserves_confirmation_and_flag(self, stores):
        subs, _ = stores
        subs.upsert_candidates([_make_candidate()])
        flagged_at = datetime(2024, 4, 1, 8, 30)
        sub = subs.get("u1", "netflix com")
        subs.save(replace(sub, is_confirmed=True, zombie_score=88.0, zombie_flag=Flagged(at=flagged_at)))

        subs.upsert_candidates([_make_candidate(average_amount_cents=1899)])
        sub = subs.get("u1", "netflix com")
        assert sub.is_confirmed is True
        assert sub.average_amount_cents == 1899
        assert sub.zombie_flag == Flagged(at=flagged_at)

    def test_save_never_clears_flag(self, stores):
        subs, _ = stores
        flagged_at = datetime(2024, 4, 1)
        subs.save(_make_subscription(zombie_flag=Flagged(at=flagged_at)))
        subs.save(_make_subscription(zombie_flag=Unflagged()))
        assert subs.get("u1", "netflix com").zombie_flag == Flagged(at=flagged_at)

    def test_last_charge_amount_tracked_on_redetection(self, stores):
        subs, _ = stores
        subs.upsert_candidates([_make_candidate(last_charge_amount_cents=1599)])
        subs.upsert_candidates([_make_candidate(last_charge_amount_cents=1999)])
        assert subs.get("u1", "netflix com").last_charge_amount_cents == 1999

    def test_get_unknown_returns_none(self, stores):
        subs, _ = stores
        assert subs.get("nobody", "nothing") is None

    def test_nudge_append_is_deduplicated(self, stores):
        _, nudges = stores
        scorer = ZombieScorer()
        sub = _make_subscription()
        assessment = scorer.assess(sub, pd.DataFrame(), as_of=date(2024, 4, 1))
        nudge = scorer.build_nudge(sub, assessment)

        assert nudges.append(nudge) is True
        assert nudges.append(nudge) is False
        assert len(nudges.list_nudges("u1")) == 1


class TestTransactionStores:
    def test_memory_fetch_by_range(self):
        store = InMemoryTransactionStore(_make_txns(gaps=[30, 30, 30]))
        df = store.fetch("u1", date(2024, 1, 15), date(2024, 3, 1))
        assert len(df) == 2
        assert store.list_user_ids() == ["u1"]
        assert store.fetch("ghost", date(2024, 1, 1), date(2024, 12, 31)).empty

    def test_sqlite_fetch_by_range(self):
        store = SQLiteStore(":memory:")
        assert store.load_transactions(_make_txns(gaps=[30, 30, 30])) == 4
        df = store.fetch("u1", date(2024, 1, 1), date(2024, 3, 1))
        assert len(df) == 3
        assert list(df["amount_cents"]) == [1599, 1599, 1599]
        assert store.list_user_ids() == ["u1"]
        store.close()


# =============================================================================
# PIPELINE INTEGRATION TESTS
# =============================================================================

def _confirm(store, user_id, merchant_key):
    sub = store.get(user_id, merchant_key)
    store.save(replace(sub, is_confirmed=True))


class TestPipeline:
    AS_OF = date(2024, 12, 15)

    def _history(self):
        return pd.concat([
            _make_txns(gaps=[30] * 6, start_date=date(2024, 6, 1)),
            _make_txns(gaps=[7] * 10, merchant="FitClub Weekly", amounts=[1000] * 11,
                       start_date=date(2024, 10, 1), start_txn_id=50),
        ], ignore_index=True)

    def _pipeline(self, subs=None):
        txn_store = InMemoryTransactionStore(self._history())
        subs = subs or InMemorySubscriptionStore()
        nudges = InMemoryNudgeStore()
        return SubscriptionPipeline(txn_store, subs, nudges), subs, nudges

    def test_run_user_upserts_candidates(self):
        pipeline, subs, nudges = self._pipeline()
        result = pipeline.run_user("u1", as_of=self.AS_OF)

        assert result.ok
        assert {c.frequency for c in result.candidates} == {"monthly", "weekly"}
        assert len(subs.list_subscriptions("u1")) == 2
        # Nothing confirmed yet, so nothing scored
        assert result.assessments == []
        assert nudges.list_nudges("u1") == []

    def test_repeated_runs_are_idempotent(self):
        pipeline, subs, _ = self._pipeline()
        first = pipeline.run_user("u1", as_of=self.AS_OF)
        snapshot = subs.list_subscriptions("u1")
        second = pipeline.run_user("u1", as_of=self.AS_OF)

        assert first.candidates == second.candidates
        assert subs.list_subscriptions("u1") == snapshot

    def test_zombie_flagged_and_nudged_exactly_once(self):
        pipeline, subs, nudges = self._pipeline()
        pipeline.run_user("u1", as_of=self.AS_OF)
        _confirm(subs, "u1", "netflix com")

        first = pipeline.run_user("u1", as_of=self.AS_OF, now=datetime(2024, 12, 15, 6, 0))
        assert first.nudges_created == 1
        flagged = subs.get("u1", "netflix com").zombie_flag
        assert flagged == Flagged(at=datetime(2024, 12, 15, 6, 0))

        second = pipeline.run_user("u1", as_of=self.AS_OF + timedelta(days=1))
        assert second.nudges_created == 0
        assert len(nudges.list_nudges("u1")) == 1
        assert subs.get("u1", "netflix com").zombie_flag == flagged

    def test_retry_after_failed_save_does_not_duplicate_nudge(self):
        class FlakySaveStore(InMemorySubscriptionStore):
            fail_next_save = True

            def save(self, subscription):
                if self.fail_next_save and subscription.zombie_flag.is_flagged:
                    self.fail_next_save = False
                    raise RuntimeError("store unavailable")
                super().save(subscription)

        pipeline, subs, nudges = self._pipeline(subs=FlakySaveStore())
        pipeline.run_user("u1", as_of=self.AS_OF)
        _confirm(subs, "u1", "netflix com")

        with pytest.raises(RuntimeError):
            pipeline.run_user("u1", as_of=self.AS_OF)
        pipeline.run_user("u1", as_of=self.AS_OF)

        assert len(nudges.list_nudges("u1")) == 1
        assert subs.get("u1", "netflix com").zombie_flag.is_flagged

    def test_batch_isolates_per_user_failures(self):
        class FailingStore(InMemorySubscriptionStore):
            def upsert_candidates(self, candidates):
                candidates = list(candidates)
                if any(c.user_id == "u2" for c in candidates):
                    raise RuntimeError("store unavailable")
                return super().upsert_candidates(candidates)

        txns = pd.concat([
            _make_txns(gaps=[30, 30, 30], user_id="u1"),
            _make_txns(gaps=[30, 30, 30], user_id="u2", start_txn_id=100),
            _make_txns(gaps=[7, 7, 7], user_id="u3", merchant="Gym", start_txn_id=200),
        ], ignore_index=True)
        subs = FailingStore()
        pipeline = SubscriptionPipeline(InMemoryTransactionStore(txns), subs, InMemoryNudgeStore())

        report = pipeline.run_batch(as_of=date(2024, 4, 15), max_workers=3)

        assert [r.user_id for r in report.results] == ["u1", "u2", "u3"]
        assert [r.user_id for r in report.failed] == ["u2"]
        assert "store unavailable" in report.failed[0].error
        assert len(subs.list_subscriptions("u1")) == 1
        assert len(subs.list_subscriptions("u3")) == 1
        assert subs.list_subscriptions("u2") == []
        assert report.summary["succeeded"] == 2

    def test_sqlite_end_to_end(self):
        store = SQLiteStore(":memory:")
        store.load_transactions(self._history())
        pipeline = SubscriptionPipeline(store, store, store, store, scan_anomalies=True)

        pipeline.run_user("u1", as_of=self.AS_OF)
        _confirm(store, "u1", "netflix com")
        report = pipeline.run_batch(as_of=self.AS_OF)
        pipeline.run_batch(as_of=self.AS_OF)

        assert report.failed == []
        assert len(store.list_subscriptions("u1")) == 2
        assert len(store.list_nudges("u1")) == 1
        sub = store.get("u1", "netflix com")
        assert sub.zombie_flag.is_flagged
        assert sub.zombie_score > 70
        store.close()

    def test_price_hike_nudged_once_per_price_level(self):
        txns = _make_txns(gaps=[30] * 6, amounts=[1599] * 6 + [1999], start_date=date(2024, 6, 1))
        subs = InMemorySubscriptionStore()
        nudges = InMemoryNudgeStore()
        pipeline = SubscriptionPipeline(InMemoryTransactionStore(txns), subs, nudges)

        pipeline.run_user("u1", as_of=self.AS_OF)
        _confirm(subs, "u1", "netflix com")
        first = pipeline.run_user("u1", as_of=self.AS_OF)
        second = pipeline.run_user("u1", as_of=self.AS_OF)

        assert [h.new_amount_cents for h in first.price_hikes] == [1999]
        assert len(second.price_hikes) == 1
        hike_nudges = [n for n in nudges.list_nudges("u1") if n.nudge_type == "subscription_price_hike"]
        assert len(hike_nudges) == 1
        assert first.nudges_created == 2  # zombie flag + price hike
        assert second.nudges_created == 0

    def test_explicit_zero_lookback_respected(self):
        pipeline = SubscriptionPipeline(
            InMemoryTransactionStore(self._history()),
            InMemorySubscriptionStore(),
            InMemoryNudgeStore(),
            lookback_days=0,
        )
        assert pipeline.lookback_days == 0
        assert pipeline.run_user("u1", as_of=self.AS_OF).candidates == []

    def test_anomaly_scan_requires_store(self):
        with pytest.raises(ValueError):
            SubscriptionPipeline(InMemoryTransactionStore(), InMemorySubscriptionStore(),
                                 InMemoryNudgeStore(), scan_anomalies=True)

    def test_candidates_frame(self):
        assert list(candidates_to_frame([]).columns) == CANDIDATE_COLUMNS
        frame = candidates_to_frame([
            _make_candidate(merchant_key="a", confidence=0.6),
            _make_candidate(merchant_key="b", confidence=0.95),
        ])
        assert list(frame["merchant_key"]) == ["b", "a"]
        assert frame.iloc[0]["last_charge_date"] == "2024-03-31"


# =============================================================================
# ANOMALY DETECTOR TESTS
# =============================================================================

class TestAnomalyDetector:
    AS_OF = date(2024, 6, 30)

    def _baseline(self, amounts=None):
        recent_start = self.AS_OF - timedelta(days=30)
        amounts = amounts or [1000 + 10 * i for i in range(20)]
        return [
            {
                "transaction_id": f"b{i}",
                "user_id": "u1",
                "merchant": "Corner Grocer",
                "amount_cents": amount,
                "transaction_date": (recent_start - timedelta(days=3 * (i + 1))).isoformat(),
                "category": "Groceries",
            }
            for i, amount in enumerate(amounts)
        ]

    def _recent(self, txn_id, amount, merchant="Corner Grocer", category="Groceries", days_ago=2):
        return {
            "transaction_id": txn_id,
            "user_id": "u1",
            "merchant": merchant,
            "amount_cents": amount,
            "transaction_date": (self.AS_OF - timedelta(days=days_ago)).isoformat(),
            "category": category,
        }

    def _baseline_with_hours(self, common=310, rare=6, rare_hour=3):
        """316 baseline rows: 6 at the rare hour (share < 2%), the rest at noon."""
        recent_start = self.AS_OF - timedelta(days=30)
        rows = []
        for i in range(common + rare):
            day = recent_start - timedelta(days=1 + i % 80)
            hour = rare_hour if i < rare else 12
            rows.append({
                "transaction_id": f"b{i}",
                "user_id": "u1",
                "merchant": "Corner Grocer",
                "amount_cents": 1000 + 10 * (i % 20),
                "transaction_date": day.isoformat(),
                "category": "Groceries",
                "created_at": f"{day.isoformat()}T{hour:02d}:15:00",
            })
        return rows

    def _recent_at(self, txn_id, hour):
        row = self._recent(txn_id, 1095)
        stamp = (self.AS_OF - timedelta(days=2)).isoformat()
        row["created_at"] = None if hour is None else f"{stamp}T{hour:02d}:40:00"
        return row

    def test_rare_hour_flagged(self):
        rows = self._baseline_with_hours() + [self._recent_at("r1", 3), self._recent_at("r2", None)]
        anomalies = MultiFactorAnomalyDetector().detect(pd.DataFrame(rows), as_of=self.AS_OF)
        assert [a.anomaly_type for a in anomalies] == ["unusual_time"]
        assert anomalies[0].affected_entity_id == "r1"
        assert anomalies[0].severity == "low"
        assert anomalies[0].factors[0].type == "time_deviation"

    def test_common_or_unseen_hour_not_flagged(self):
        # Noon is common; 23:00 never occurs in the baseline, so its count is not above 5
        rows = self._baseline_with_hours() + [self._recent_at("r1", 12), self._recent_at("r2", 23)]
        anomalies = MultiFactorAnomalyDetector().detect(pd.DataFrame(rows), as_of=self.AS_OF)
        assert anomalies == []

    def test_thin_baseline_returns_nothing(self):
        rows = self._baseline()[:5] + [self._recent("r1", 100000)]
        assert MultiFactorAnomalyDetector().detect(pd.DataFrame(rows), as_of=self.AS_OF) == []

    def test_no_recent_activity_returns_nothing(self):
        assert MultiFactorAnomalyDetector().detect(pd.DataFrame(self._baseline()), as_of=self.AS_OF) == []

    def test_amount_spike(self):
        rows = self._baseline() + [self._recent("r1", 100000)]
        anomalies = MultiFactorAnomalyDetector().detect(pd.DataFrame(rows), as_of=self.AS_OF)
        assert [a.anomaly_type for a in anomalies] == ["unusual_amount"]
        assert anomalies[0].severity == "high"
        assert anomalies[0].affected_entity_id == "r1"
        assert anomalies[0].factors[0].type == "amount_deviation"

    def test_flat_baseline_skips_amount_check(self):
        rows = self._baseline(amounts=[1000] * 20) + [self._recent("r1", 100000)]
        anomalies = MultiFactorAnomalyDetector().detect(pd.DataFrame(rows), as_of=self.AS_OF)
        assert all(a.anomaly_type != "unusual_amount" for a in anomalies)

    def test_new_merchant(self):
        rows = self._baseline() + [self._recent("r1", 1100, merchant="Fancy Cafe")]
        anomalies = MultiFactorAnomalyDetector().detect(pd.DataFrame(rows), as_of=self.AS_OF)
        assert [a.anomaly_type for a in anomalies] == ["new_merchant"]
        assert anomalies[0].affected_entity_id == "r1"

    def test_category_shift(self):
        recent = [self._recent(f"r{i}", 1100, category="Dining", days_ago=i + 1) for i in range(5)]
        rows = self._baseline() + recent
        anomalies = MultiFactorAnomalyDetector().detect(pd.DataFrame(rows), as_of=self.AS_OF)
        shifts = [a for a in anomalies if a.anomaly_type == "category_shift"]
        assert len(shifts) == 1
        assert shifts[0].severity == "high"
        assert "Dining" in shifts[0].factors[0].description

    def test_anomalies_persisted_by_pipeline(self):
        rows = self._baseline() + [self._recent("r1", 100000)]
        anomaly_store = InMemoryAnomalyStore()
        pipeline = SubscriptionPipeline(
            InMemoryTransactionStore(pd.DataFrame(rows)),
            InMemorySubscriptionStore(),
            InMemoryNudgeStore(),
            anomaly_store=anomaly_store,
            scan_anomalies=True,
        )
        result = pipeline.run_user("u1", as_of=self.AS_OF)
        assert len(result.anomalies) == 1
        assert len(anomaly_store.list_anomalies("u1")) == 1


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
