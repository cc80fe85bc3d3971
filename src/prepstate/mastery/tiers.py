"""Mastery tier thresholds and computation.

Thresholds are inclusive lower bounds on decayed XP.
"""

from __future__ import annotations

from enum import Enum


class Tier(str, Enum):
    NOVICE = "novice"
    PRO = "pro"
    GOD = "god"


PRO_THRESHOLD = 1000
GOD_THRESHOLD = 2000

TIER_THRESHOLDS: list[dict] = [
    {"tier": Tier.NOVICE, "title": "Novice", "xp_required": 0},
    {"tier": Tier.PRO, "title": "Pro", "xp_required": PRO_THRESHOLD},
    {"tier": Tier.GOD, "title": "God", "xp_required": GOD_THRESHOLD},
]


def tier_for(xp: int) -> Tier:
    """Tier for a decayed XP value. Negative XP is novice."""
    if xp >= GOD_THRESHOLD:
        return Tier.GOD
    if xp >= PRO_THRESHOLD:
        return Tier.PRO
    return Tier.NOVICE


def compute_tier(xp: int) -> dict:
    """Tier info for an XP value, including distance to the next milestone."""
    current = TIER_THRESHOLDS[0]
    next_tier = TIER_THRESHOLDS[1]

    for i in range(len(TIER_THRESHOLDS) - 1):
        if xp >= TIER_THRESHOLDS[i]["xp_required"]:
            current = TIER_THRESHOLDS[i]
            next_tier = TIER_THRESHOLDS[i + 1]

    # God is a plateau: no next milestone
    if xp >= TIER_THRESHOLDS[-1]["xp_required"]:
        current = TIER_THRESHOLDS[-1]
        next_tier = TIER_THRESHOLDS[-1]

    shown = max(0, xp)
    return {
        "tier": current["tier"],
        "title": current["title"],
        "xp_into_tier": shown - current["xp_required"] if xp >= 0 else 0,
        "xp_to_next": max(0, next_tier["xp_required"] - shown),
        "next_tier": next_tier["tier"],
        "next_title": next_tier["title"],
    }
