# policy.py
"""Tier → priority / retry policy.

Lower priority values are served first. Unknown tiers get the free-tier
priority but a retry budget of 3, which is more generous than free's 2;
that default is intentional and kept as-is.
"""
from dataclasses import dataclass

TIER_PRIORITY = {
    "enterprise": 1,
    "premium": 2,
    "basic": 3,
    "free": 4,
}

TIER_ATTEMPTS = {
    "enterprise": 5,
    "premium": 4,
    "basic": 3,
    "free": 2,
}

DEFAULT_PRIORITY = 4
DEFAULT_ATTEMPTS = 3

BACKOFF_TYPE = "exponential"
BACKOFF_DELAY_MS = 5000


@dataclass(frozen=True)
class RetryPolicy:
    priority: int
    max_attempts: int
    backoff_type: str = BACKOFF_TYPE
    backoff_delay_ms: int = BACKOFF_DELAY_MS


def policy_for_tier(user_tier):
    # backoff is the same for every tier; only priority and attempts vary
    return RetryPolicy(
        priority=TIER_PRIORITY.get(user_tier, DEFAULT_PRIORITY),
        max_attempts=TIER_ATTEMPTS.get(user_tier, DEFAULT_ATTEMPTS),
    )


def retry_delay_ms(backoff_delay_ms, attempts_made, backoff_type=BACKOFF_TYPE):
    """Delay before the next attempt, given attempts already made (>= 1)."""
    if backoff_type == "fixed":
        return backoff_delay_ms
    return backoff_delay_ms * 2 ** (max(attempts_made, 1) - 1)
