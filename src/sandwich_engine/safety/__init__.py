"""Token safety screening."""
from .models import SafetyVerdict, VerdictOutcome
from .token_screener import ScreenerConfig, TokenScreener
from .verdict_cache import RedisVerdictStore, VerdictCache

__all__ = [
    "SafetyVerdict",
    "VerdictOutcome",
    "ScreenerConfig",
    "TokenScreener",
    "RedisVerdictStore",
    "VerdictCache",
]
