"""
Core module - base types, enums and errors for the whole stack.
"""

from src.core.enums import (
    VolatilityLevel,
    MarketRegime,
    ReviewType,
    ReviewStatus,
    ReviewPhase,
    SellReason,
    DiscoveryStrategy,
    CoinUniverse,
    RiskLevel,
    UserTier,
    RequestedWork,
)
from src.core.exceptions import (
    ReviewPipelineError,
    TransientExternalError,
    ValidationError,
    FatalPipelineError,
    LockBusyError,
)

__all__ = [
    "VolatilityLevel",
    "MarketRegime",
    "ReviewType",
    "ReviewStatus",
    "ReviewPhase",
    "SellReason",
    "DiscoveryStrategy",
    "CoinUniverse",
    "RiskLevel",
    "UserTier",
    "RequestedWork",
    "ReviewPipelineError",
    "TransientExternalError",
    "ValidationError",
    "FatalPipelineError",
    "LockBusyError",
]
