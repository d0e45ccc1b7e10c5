"""
Rate limit policies and the decision type handed back to route handlers.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from starlette.requests import Request

from ..config import RateLimitSettings


KeyGenerator = Callable[[Request], str]

POLICY_NAMES = ("global", "api", "auth", "contact")

DEFAULT_MESSAGES = {
    "global": "Too many requests. Please try again later.",
    "api": "API rate limit exceeded. Please try again later.",
    "auth": "Too many authentication attempts. Please try again later.",
    "contact": "Too many contact form submissions. Please try again later.",
}


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable configuration of one named rate limiter."""
    name: str
    window_ms: int
    max_requests: int
    message: str = "Too many requests"
    key_generator: Optional[KeyGenerator] = None

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000


@dataclass(frozen=True)
class SecurityDecision:
    """Outcome of a rate limit check. ``reset_time`` is epoch milliseconds."""
    allowed: bool
    remaining: int
    reset_time: int
    error: Optional[str] = None

    def retry_after_seconds(self, now: int) -> int:
        return max(0, math.ceil((self.reset_time - now) / 1000))


def build_default_policies(settings: RateLimitSettings) -> Dict[str, RateLimitPolicy]:
    """The four named policies with thresholds taken from settings."""
    return {
        name: RateLimitPolicy(
            name=name,
            window_ms=getattr(settings, f"{name}_window_ms"),
            max_requests=getattr(settings, f"{name}_max_requests"),
            message=DEFAULT_MESSAGES[name],
        )
        for name in POLICY_NAMES
    }
