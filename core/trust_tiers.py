"""
Trust tier calculator.

Pure functions over an agent's statistics dict:

    {
        "total_jobs": int,
        "rating": float | None,              # average review, 1-5
        "response_time_avg": float | None,   # seconds from payment to acceptance
        "completion_rate": float | None,     # 0-1
        "total_earned": Decimal | float,
        "identity_verified": bool,
        "webhook_verified": bool,
        "security_audited": bool,
    }

Nothing here reads or writes storage; callers always pass the full current
statistics, so recomputing is safe to repeat.
"""
from collections import namedtuple
from enum import Enum


class TrustTier(str, Enum):
    NEW = 'new'
    RISING = 'rising'
    ESTABLISHED = 'established'
    TRUSTED = 'trusted'
    VERIFIED = 'verified'

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, TrustTier):
            return NotImplemented
        return self.rank < other.rank


TIER_ORDER = (
    TrustTier.NEW,
    TrustTier.RISING,
    TrustTier.ESTABLISHED,
    TrustTier.TRUSTED,
    TrustTier.VERIFIED,
)

TierRequirement = namedtuple(
    'TierRequirement',
    ['min_jobs', 'min_rating', 'max_response_time', 'min_completion_rate', 'min_earned'],
)

# max_response_time of None means no bound
TIER_REQUIREMENTS = {
    TrustTier.NEW: TierRequirement(0, 0.0, None, 0.0, 0),
    TrustTier.RISING: TierRequirement(3, 4.0, 86400, 0.70, 10),
    TrustTier.ESTABLISHED: TierRequirement(10, 4.3, 43200, 0.85, 100),
    TrustTier.TRUSTED: TierRequirement(50, 4.5, 14400, 0.90, 1000),
    TrustTier.VERIFIED: TierRequirement(100, 4.7, 3600, 0.95, 5000),
}

# Trust score weights (sum to 100)
SCORE_WEIGHTS = {
    "rating": 30,
    "completion_rate": 25,
    "volume": 20,
    "response_time": 15,
    "verification": 10,
}

VOLUME_CAP_JOBS = 100
RESPONSE_FAST = 3600      # full marks at or under 1 hour
RESPONSE_SLOW = 604800    # zero at or over 1 week


def _metrics(stats: dict) -> dict:
    return {
        "total_jobs": int(stats.get("total_jobs") or 0),
        "rating": float(stats.get("rating") or 0),
        "response_time_avg": (
            float(stats["response_time_avg"]) if stats.get("response_time_avg") is not None else None
        ),
        "completion_rate": float(stats.get("completion_rate") or 0),
        "total_earned": float(stats.get("total_earned") or 0),
    }


def meets_requirements(stats: dict, tier: TrustTier) -> bool:
    m = _metrics(stats)
    req = TIER_REQUIREMENTS[TrustTier(tier)]
    if m["total_jobs"] < req.min_jobs:
        return False
    if m["rating"] < req.min_rating:
        return False
    if m["completion_rate"] < req.min_completion_rate:
        return False
    if m["total_earned"] < req.min_earned:
        return False
    # No measured response time yet is not a violation
    if req.max_response_time is not None and m["response_time_avg"] is not None:
        if m["response_time_avg"] > req.max_response_time:
            return False
    return True


def calculate_tier(stats: dict) -> TrustTier:
    """Highest tier whose requirements are all met. Tiers are cumulative in order."""
    tier = TrustTier.NEW
    for candidate in TIER_ORDER[1:]:
        if not meets_requirements(stats, candidate):
            break
        tier = candidate
    return tier


def _ratio(current: float, required: float) -> float:
    if not required:
        return 1.0
    return min(1.0, max(0.0, current / required))


def calculate_progress(stats: dict, tier: TrustTier = None) -> dict:
    """Progress along the tier ladder, from `tier` (default: the agent's tier).

    `tier_progress` is the mean of the jobs, rating, completion-rate and
    earnings ratios toward the next tier, each capped at 1.0. `progress`
    places that on the whole ladder, (rank + tier_progress) / top rank, so
    it never drops when a promotion moves the target to the following tier.
    Returns {"next_tier", "progress", "tier_progress", "ratios"} in percent.
    """
    tier = TrustTier(tier) if tier is not None else calculate_tier(stats)
    top = len(TIER_ORDER) - 1
    if tier.rank == top:
        return {"next_tier": None, "progress": 100.0, "tier_progress": 100.0, "ratios": {}}

    next_tier = TIER_ORDER[tier.rank + 1]
    req = TIER_REQUIREMENTS[next_tier]
    m = _metrics(stats)
    ratios = {
        "total_jobs": _ratio(m["total_jobs"], req.min_jobs),
        "rating": _ratio(m["rating"], req.min_rating),
        "completion_rate": _ratio(m["completion_rate"], req.min_completion_rate),
        "total_earned": _ratio(m["total_earned"], req.min_earned),
    }
    tier_progress = min(sum(ratios.values()) / len(ratios), 1.0)
    return {
        "next_tier": next_tier.value,
        "progress": round((tier.rank + tier_progress) / top * 100, 2),
        "tier_progress": round(tier_progress * 100, 2),
        "ratios": {k: round(v * 100, 2) for k, v in ratios.items()},
    }


def calculate_score(stats: dict) -> float:
    """Display score 0-100. Not used to pick the tier."""
    m = _metrics(stats)
    rating_part = min(m["rating"], 5.0) / 5.0
    completion_part = min(m["completion_rate"], 1.0)
    volume_part = min(m["total_jobs"], VOLUME_CAP_JOBS) / VOLUME_CAP_JOBS

    rt = m["response_time_avg"]
    if rt is None:
        response_part = 0.0
    elif rt <= RESPONSE_FAST:
        response_part = 1.0
    elif rt >= RESPONSE_SLOW:
        response_part = 0.0
    else:
        response_part = (RESPONSE_SLOW - rt) / (RESPONSE_SLOW - RESPONSE_FAST)

    flags = [bool(stats.get(f)) for f in ("identity_verified", "webhook_verified", "security_audited")]
    verification_part = sum(flags) / len(flags)

    score = (
        SCORE_WEIGHTS["rating"] * rating_part
        + SCORE_WEIGHTS["completion_rate"] * completion_part
        + SCORE_WEIGHTS["volume"] * volume_part
        + SCORE_WEIGHTS["response_time"] * response_part
        + SCORE_WEIGHTS["verification"] * verification_part
    )
    return round(score, 2)


def calculate_trust(stats: dict) -> dict:
    """Tier, score and progress for one agent's statistics."""
    tier = calculate_tier(stats)
    progress = calculate_progress(stats, tier)
    return {
        "tier": tier.value,
        "score": calculate_score(stats),
        "next_tier": progress["next_tier"],
        "progress": progress["progress"],
        "tier_progress": progress["tier_progress"],
        "progress_breakdown": progress["ratios"],
    }
