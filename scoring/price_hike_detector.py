"""
price_hike_detector.py
------------------------
Subscription price increase detection.

For a confirmed, active subscription, compares the most recent charge with
the stored average charge. A latest charge above increase_factor times the
average (default 1.1, i.e. a 10% jump) is reported as a PriceHike, together
with what the increase costs per year at the subscription's cadence.

Each new price level produces at most one nudge: the dedupe key carries the
new amount, so later charges at the same raised price stay silent while a
second increase is reported again.
"""

import logging
from typing import Optional

from core.models import Nudge, PriceHike, STATUS_ACTIVE, Subscription
from config.config_loader import get_price_hike_config, get_zombie_scoring_config

logger = logging.getLogger(__name__)


class PriceHikeDetector:
    """
    Usage:
        detector = PriceHikeDetector()
        hike = detector.check(subscription)
        if hike is not None:
            nudge_store.append(detector.build_nudge(hike))
    """

    def __init__(self):
        self.config = get_price_hike_config()
        self.increase_factor = self.config["increase_factor"]
        self.nudge_config = self.config["nudge"]
        self.periods_per_year = get_zombie_scoring_config()["periods_per_year"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def check(self, subscription: Subscription) -> Optional[PriceHike]:
        """Returns a PriceHike if the latest charge jumped, else None."""
        if not subscription.is_confirmed or subscription.status != STATUS_ACTIVE:
            return None

        previous = abs(int(subscription.average_amount_cents or 0))
        latest = subscription.last_charge_amount_cents
        if latest is None:
            return None
        latest = abs(int(latest))

        if previous <= 0 or latest <= previous * self.increase_factor:
            return None

        per_year = self.periods_per_year.get(subscription.frequency, self.periods_per_year["monthly"])
        annual_increase = round((latest - previous) / 100.0 * per_year, 2)

        logger.debug(
            f"[{subscription.user_id}] Price hike at '{subscription.merchant}': "
            f"{previous} -> {latest} cents."
        )
        return PriceHike(
            user_id=subscription.user_id,
            merchant_key=subscription.merchant_key,
            merchant=subscription.merchant,
            previous_amount_cents=previous,
            new_amount_cents=latest,
            annual_increase=annual_increase,
        )

    def build_nudge(self, hike: PriceHike) -> Nudge:
        n = self.nudge_config
        message = n["message"].format(
            merchant=hike.merchant,
            old=hike.previous_amount_cents / 100.0,
            new=hike.new_amount_cents / 100.0,
            annual=hike.annual_increase,
        )
        return Nudge(
            user_id=hike.user_id,
            nudge_type=n["nudge_type"],
            agent_type=n["agent_type"],
            message=message,
            priority=n["priority"],
            dedupe_key=f"price_hike:{hike.user_id}:{hike.merchant_key}:{hike.new_amount_cents}",
            trigger_data={
                "merchant": hike.merchant,
                "merchant_key": hike.merchant_key,
                "previous_amount_cents": hike.previous_amount_cents,
                "new_amount_cents": hike.new_amount_cents,
                "annual_increase": hike.annual_increase,
            },
        )
