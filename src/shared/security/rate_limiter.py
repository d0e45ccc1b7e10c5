"""
Per-policy rate limiting with abuse escalation.

Each named policy (global, api, auth, contact) gets its own RateLimiter with
its own counters, block list and audit log. ``check_limit`` never raises for
normal traffic; every outcome is a SecurityDecision.
"""

import asyncio
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from starlette.requests import Request

from ..config import RateLimitSettings
from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .abuse_detector import AbuseDetector, AbuseRule
from .audit_log import (
    AuditLog,
    SecurityAuditLogEntry,
    SecurityEvent,
    SecurityEventType,
    Severity,
    log_security_event,
)
from .ip_block_list import BlockEntry, IPBlockList
from .policies import RateLimitPolicy, SecurityDecision
from .rate_limit_store import RateLimitEntry, RateLimitStore


Clock = Callable[[], int]

BLOCKED_IP_MESSAGE = "IP temporarily blocked due to suspicious activity"
SUSPICIOUS_ACTIVITY_MESSAGE = "Suspicious activity detected. IP temporarily blocked."


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def get_client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """
    Get the client IP address, considering proxies.

    Takes the first hop of ``x-forwarded-for``, then ``x-real-ip``, then the
    socket peer. When ``trusted_proxies`` is non-empty the forwarding headers
    are only honoured if the socket peer is one of them.
    """
    client = getattr(request, 'client', None)
    peer = client.host if client and client.host else None

    trusted = set(trusted_proxies)
    if not trusted or (peer is not None and peer in trusted):
        forwarded_for = request.headers.get('x-forwarded-for')
        if forwarded_for:
            first_hop = forwarded_for.split(',')[0].strip()
            if first_hop:
                return first_hop

        real_ip = request.headers.get('x-real-ip')
        if real_ip:
            return real_ip.strip()

    return peer or 'unknown'


class RateLimiter:
    """Fixed-window rate limiter for one named policy."""

    def __init__(self, policy: RateLimitPolicy, settings: Optional[RateLimitSettings] = None,
                 clock: Clock = now_ms, abuse_rules: Optional[List[AbuseRule]] = None):
        self.policy = policy
        self.settings = settings or RateLimitSettings()
        self.clock = clock
        self.logger = get_logger(__name__, 'rate_limiter')
        self.metrics = get_metrics_collector()

        self.store = RateLimitStore()
        self.block_list = IPBlockList()
        self.audit_log = AuditLog(self.settings.audit_log_max_entries)
        self.detector = AbuseDetector(policy, self.settings, abuse_rules)

        # Serializes read-check-increment and sweeps for this policy
        self._lock = threading.Lock()
        self._calls_since_sweep = 0

        self.stats = {
            'requests_processed': 0,
            'requests_allowed': 0,
            'requests_denied': 0,
            'blocked_ip_hits': 0,
            'abuse_escalations': 0,
            'entries_swept': 0,
        }

    def generate_key(self, request: Request) -> str:
        """Counter key for a request: custom generator, else ``ip:path``."""
        if self.policy.key_generator:
            return self.policy.key_generator(request)
        return f"{self.get_client_ip(request)}:{request.url.path}"

    def get_client_ip(self, request: Request) -> str:
        return get_client_ip(request, self.settings.trusted_proxies)

    async def check_limit(self, request: Request) -> SecurityDecision:
        """Check and count a request against this policy."""
        return self.check_limit_sync(request)

    def check_limit_sync(self, request: Request) -> SecurityDecision:
        ip = self.get_client_ip(request)
        key = self.generate_key(request)

        with self._lock:
            now = self.clock()
            self.stats['requests_processed'] += 1
            self._maybe_sweep(now)
            decision = self._decide(request, ip, key, now)

        if decision.allowed:
            self.stats['requests_allowed'] += 1
        else:
            self.stats['requests_denied'] += 1
        return decision

    def _decide(self, request: Request, ip: str, key: str, now: int) -> SecurityDecision:
        # Blocks are checked before any counting
        block = self.block_list.get_block(ip, now)
        if block is not None:
            return self._deny_blocked_ip(request, ip, block, now)

        entry = self.store.get(key)
        if entry is None or entry.is_expired(now, self.policy.window_ms):
            entry = RateLimitEntry(
                count=1,
                window_start=now,
                reset_time=now + self.policy.window_ms,
            )
            self.store.set(key, entry)
            self.metrics.record_decision(self.policy.name, True)
            return SecurityDecision(
                allowed=True,
                remaining=self.policy.max_requests - 1,
                reset_time=entry.reset_time,
            )

        verdict = self.detector.evaluate(entry, ip, now)
        if verdict is not None:
            return self._escalate(request, ip, entry, verdict.rule, verdict.duration_ms, now)

        if entry.count >= self.policy.max_requests:
            # Denied attempts still count as requests seen in this window
            entry.count += 1
            self.store.set(key, entry)
            return self._deny_rate_limited(request, ip, entry, now)

        entry.count += 1
        self.store.set(key, entry)
        self.metrics.record_decision(self.policy.name, True)
        return SecurityDecision(
            allowed=True,
            remaining=max(0, self.policy.max_requests - entry.count),
            reset_time=entry.reset_time,
        )

    def _deny_blocked_ip(self, request: Request, ip: str, block: BlockEntry, now: int) -> SecurityDecision:
        self.stats['blocked_ip_hits'] += 1
        self._audit(request, ip, now, action='blocked_ip',
                    reason=f"IP blocked until {block.unblock_time} ({block.reason or 'abuse'})")
        log_security_event(SecurityEvent(
            type=SecurityEventType.BLOCKED_IP,
            timestamp=now,
            ip=ip,
            details={'policy': self.policy.name, 'reason': 'IP temporarily blocked',
                     'unblock_time': block.unblock_time},
            severity=Severity.HIGH,
        ))
        self.metrics.record_decision(self.policy.name, False, 'blocked_ip')
        return SecurityDecision(
            allowed=False,
            remaining=0,
            reset_time=block.unblock_time,
            error=BLOCKED_IP_MESSAGE,
        )

    def _escalate(self, request: Request, ip: str, entry: RateLimitEntry,
                  rule: str, duration_ms: int, now: int) -> SecurityDecision:
        block = self.block_list.block(ip, duration_ms, now, reason=rule)
        self.stats['abuse_escalations'] += 1
        self._audit(request, ip, now, action='suspicious_activity',
                    reason=f"Abuse rule '{rule}' matched at count {entry.count}")
        self.logger.warning(
            f"Blocking {ip} for {duration_ms}ms",
            operation="ip_block",
            client_ip=ip,
            policy=self.policy.name,
            rule=rule,
            unblock_time=block.unblock_time
        )
        self.metrics.record_ip_block(self.policy.name, rule)
        self.metrics.record_decision(self.policy.name, False, 'suspicious_activity')
        return SecurityDecision(
            allowed=False,
            remaining=0,
            reset_time=block.unblock_time,
            error=SUSPICIOUS_ACTIVITY_MESSAGE,
        )

    def _deny_rate_limited(self, request: Request, ip: str, entry: RateLimitEntry,
                           now: int) -> SecurityDecision:
        self._audit(request, ip, now, action='rate_limit_exceeded',
                    reason=f"Exceeded {self.policy.max_requests} requests in {self.policy.window_ms}ms")
        log_security_event(SecurityEvent(
            type=SecurityEventType.RATE_LIMIT_EXCEEDED,
            timestamp=now,
            ip=ip,
            details={
                'policy': self.policy.name,
                'max_requests': self.policy.max_requests,
                'window_ms': self.policy.window_ms,
                'current_count': entry.count,
            },
            severity=Severity.MEDIUM,
        ))
        self.metrics.record_decision(self.policy.name, False, 'rate_limit_exceeded')
        return SecurityDecision(
            allowed=False,
            remaining=0,
            reset_time=entry.reset_time,
            error=self.policy.message,
        )

    def _audit(self, request: Request, ip: str, now: int, action: str, reason: str):
        self.audit_log.append(SecurityAuditLogEntry(
            timestamp=now,
            ip=ip,
            user_agent=request.headers.get('user-agent') or 'unknown',
            endpoint=request.url.path,
            action=action,
            reason=reason,
            blocked=True,
        ))

    def _maybe_sweep(self, now: int):
        """Opportunistic sweep; caller holds the lock."""
        every = self.settings.sweep_every_n_requests
        if every <= 0:
            return
        self._calls_since_sweep += 1
        if self._calls_since_sweep >= every:
            self._calls_since_sweep = 0
            self._sweep(now)

    def _sweep(self, now: int) -> Dict[str, int]:
        entries = self.store.sweep(now)
        blocks = self.block_list.sweep(now)
        self.stats['entries_swept'] += entries
        return {'entries': entries, 'blocks': blocks}

    def cleanup(self, now: Optional[int] = None) -> Dict[str, int]:
        """Remove expired windows and blocks."""
        with self._lock:
            removed = self._sweep(self.clock() if now is None else now)
        if removed['entries'] or removed['blocks']:
            self.logger.info(
                f"Cleaned up {removed['entries']} expired windows and {removed['blocks']} expired blocks",
                operation="cleanup",
                policy=self.policy.name
            )
        return removed

    def get_audit_logs(self) -> List[SecurityAuditLogEntry]:
        return self.audit_log.entries()

    def clear_audit_logs(self):
        self.audit_log.clear()

    def get_blocked_ips(self) -> Dict[str, BlockEntry]:
        return self.block_list.snapshot()

    def clear_blocked_ips(self) -> int:
        with self._lock:
            return self.block_list.clear()

    def clear_counters(self) -> int:
        with self._lock:
            return self.store.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        return {
            **self.stats,
            'policy': self.policy.name,
            'window_ms': self.policy.window_ms,
            'max_requests': self.policy.max_requests,
            'active_keys': len(self.store),
            'blocked_ips': len(self.block_list),
            'audit_log_entries': len(self.audit_log),
        }


async def start_rate_limiter_cleanup_task(target, interval_seconds: float):
    """
    Periodically call ``target.cleanup()`` until cancelled.

    ``target`` is anything with a synchronous ``cleanup`` method, typically the
    SecurityGateway, which sweeps every policy.
    """
    logger = get_logger(__name__, 'rate_limiter_cleanup')
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            target.cleanup()
        except Exception as e:
            logger.error(f"Error in rate limiter cleanup: {e}", operation="cleanup")
