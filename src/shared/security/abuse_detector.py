"""
Abuse detection heuristics.

Rules are evaluated in order against a counter entry whose window is already
open (never on the request that opens the window). The first matching rule
wins. Thresholds sit well above the policy limit so that clients retrying near
the limit are answered with a plain 429 instead of being blocked.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..config import RateLimitSettings
from ..logging_config import get_logger
from .audit_log import SecurityEvent, SecurityEventType, Severity, log_security_event
from .policies import RateLimitPolicy
from .rate_limit_store import RateLimitEntry


class AbuseAction(str, Enum):
    """What to do when a rule matches."""
    BLOCK = "block"
    FLAG = "flag"
    LOG = "log"


# condition(entry, ip, now) -> bool
RuleCondition = Callable[[RateLimitEntry, str, int], bool]


@dataclass
class AbuseRule:
    """Defines an abuse detection rule."""
    name: str
    condition: RuleCondition
    action: AbuseAction
    duration_ms: int
    description: str = ""


@dataclass(frozen=True)
class AbuseVerdict:
    """A rule that fired with a blocking action."""
    rule: str
    action: AbuseAction
    duration_ms: int


class AbuseDetector:
    """Evaluates abuse rules for a single rate limit policy."""

    # Below this much elapsed time a request rate is not meaningful
    MIN_RATE_SAMPLE_MS = 1000

    def __init__(self, policy: RateLimitPolicy, settings: Optional[RateLimitSettings] = None,
                 rules: Optional[List[AbuseRule]] = None):
        self.policy = policy
        self.settings = settings or RateLimitSettings()
        self.logger = get_logger(__name__, 'abuse_detector')
        self.rules = rules if rules is not None else self._create_default_rules()

    def _create_default_rules(self) -> List[AbuseRule]:
        """Create default abuse detection rules."""
        return [
            AbuseRule(
                name="rapid_fire",
                description="Burst far above the policy limit within one window",
                condition=self._is_rapid_fire,
                action=AbuseAction.BLOCK,
                duration_ms=self.settings.rapid_fire_block_ms,
            ),
            AbuseRule(
                name="persistent_limit_hitting",
                description="Sustained request rate well above the policy rate",
                condition=self._is_persistent_limit_hitting,
                action=AbuseAction.BLOCK,
                duration_ms=self.settings.persistent_block_ms,
            ),
        ]

    def _is_rapid_fire(self, entry: RateLimitEntry, ip: str, now: int) -> bool:
        return entry.count > self.policy.max_requests * self.settings.rapid_fire_multiplier

    def _is_persistent_limit_hitting(self, entry: RateLimitEntry, ip: str, now: int) -> bool:
        # The first request over the limit always gets the plain 429
        if entry.count <= self.policy.max_requests:
            return False

        if now - entry.window_start < self.MIN_RATE_SAMPLE_MS:
            return False

        rate = entry.count / entry.elapsed_seconds(now)
        allowed_rate = self.policy.max_requests / self.policy.window_seconds
        return rate > allowed_rate * self.settings.persistent_rate_multiplier

    def evaluate(self, entry: RateLimitEntry, ip: str, now: int) -> Optional[AbuseVerdict]:
        """Return a verdict for the first matching blocking rule, if any."""
        for rule in self.rules:
            if not rule.condition(entry, ip, now):
                continue

            log_security_event(SecurityEvent(
                type=SecurityEventType.SUSPICIOUS_BEHAVIOR,
                timestamp=now,
                ip=ip,
                details={
                    'policy': self.policy.name,
                    'rule': rule.name,
                    'action': rule.action.value,
                    'entry_count': entry.count,
                    'duration_ms': rule.duration_ms,
                },
                severity=Severity.HIGH if rule.action == AbuseAction.BLOCK else Severity.MEDIUM,
            ))

            if rule.action == AbuseAction.BLOCK:
                return AbuseVerdict(rule=rule.name, action=rule.action, duration_ms=rule.duration_ms)
            return None

        return None

    def add_rule(self, rule: AbuseRule):
        """Append a custom rule; it runs after the built-in ones."""
        self.rules.append(rule)
        self.logger.info(f"Added custom abuse rule: {rule.name}", operation="add_rule",
                         policy=self.policy.name)

    def remove_rule(self, rule_name: str):
        """Remove an abuse detection rule."""
        self.rules = [rule for rule in self.rules if rule.name != rule_name]
        self.logger.info(f"Removed abuse rule: {rule_name}", operation="remove_rule",
                         policy=self.policy.name)
