"""
Subscription tier configuration for the review pipeline

Defines what each tier gets:
- Scheduled portfolio monitoring (SELL advice on open positions)
- On-demand portfolio reviews per day
- Custom price alerts
"""

from typing import Dict, Any

from src.core.enums import UserTier


# ============================================================================
# LIMITS BY TIER
# ============================================================================

TIER_LIMITS: Dict[UserTier, Dict[str, Any]] = {
    # FREE TIER - discovery feed only, a few manual portfolio checks per day
    UserTier.FREE: {
        "portfolio_monitoring": False,   # ❌ Not scanned by scheduled runs
        "on_demand_per_day": 3,          # On-demand portfolio reviews
        "custom_alerts": False,
    },

    # PREMIUM TIER - full monitoring, unlimited on-demand reviews
    UserTier.PREMIUM: {
        "portfolio_monitoring": True,    # ✅ Scanned every scheduled run
        "on_demand_per_day": -1,         # Unlimited (never checked)
        "custom_alerts": True,
    },
}

# On-demand usage window (counters reset at 00:00 UTC)
ON_DEMAND_WINDOW = "day"


def get_tier_limits(tier: UserTier) -> Dict[str, Any]:
    """Get limit table for a tier (unknown tiers fall back to FREE)"""
    return TIER_LIMITS.get(tier, TIER_LIMITS[UserTier.FREE])


def get_on_demand_limit(tier: UserTier) -> int:
    """On-demand reviews per day, -1 means unlimited"""
    return get_tier_limits(tier)["on_demand_per_day"]


def has_portfolio_monitoring(tier: UserTier) -> bool:
    """Check if scheduled runs scan this tier's positions"""
    return get_tier_limits(tier)["portfolio_monitoring"]


def has_custom_alerts(tier: UserTier) -> bool:
    """Check if tier may configure custom alerts"""
    return get_tier_limits(tier)["custom_alerts"]
