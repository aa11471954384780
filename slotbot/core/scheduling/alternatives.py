"""
Alternative ranking.

When a customer asks for a time that is not free, the offers shown are the
ones closest to what they asked for. Scoring:

- Same staff member as requested: +1000
- Within 1 hour of preferred time: +500
- Within 2 hours: +300
- Same day: +200
- Time difference penalty: -(minutes_diff / 10)
"""

from datetime import datetime
from typing import Optional

from slotbot.core.scheduling.types import SlotOffer, as_utc


def proximity_score(
    offer: SlotOffer,
    preferred: datetime,
    preferred_staff_id: Optional[str] = None,
) -> float:
    """Score how close ``offer`` is to the customer's preference (higher is closer)."""
    minutes_diff = abs((as_utc(offer.start) - as_utc(preferred)).total_seconds()) / 60
    score = -(minutes_diff / 10)

    if preferred_staff_id and offer.staff_id == preferred_staff_id:
        score += 1000
    if minutes_diff <= 60:
        score += 500
    elif minutes_diff <= 120:
        score += 300
    # Compare calendar days in the offer's own (business-local) zone
    if offer.start.date() == preferred.astimezone(offer.start.tzinfo).date():
        score += 200
    return score


def closest_offers(
    offers: list[SlotOffer],
    preferred: Optional[datetime],
    limit: int,
    preferred_staff_id: Optional[str] = None,
) -> list[SlotOffer]:
    """
    Pick the ``limit`` offers closest to ``preferred``, returned in time order.

    Without a preferred time the first ``limit`` offers are returned as-is.
    Ties in score go to the earlier offer.
    """
    if limit <= 0:
        return []
    if preferred is None or not offers:
        return sorted(offers, key=lambda o: o.sort_key)[:limit]
    if preferred.tzinfo is None:
        # Naive preferences are business-local, like the offers
        preferred = preferred.replace(tzinfo=offers[0].start.tzinfo)

    ranked = sorted(
        offers,
        key=lambda o: (-proximity_score(o, preferred, preferred_staff_id), o.sort_key),
    )
    return sorted(ranked[:limit], key=lambda o: o.sort_key)
