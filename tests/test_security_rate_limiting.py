"""
Tests for rate limiting and abuse prevention functionality.
"""

import asyncio
import threading

import pytest

from src.shared.config import RateLimitSettings
from src.shared.metrics_collector import get_metrics_collector
from src.shared.security.abuse_detector import AbuseAction, AbuseDetector, AbuseRule
from src.shared.security.audit_log import AuditLog, SecurityAuditLogEntry
from src.shared.security.ip_block_list import IPBlockList
from src.shared.security.policies import RateLimitPolicy, SecurityDecision, build_default_policies
from src.shared.security.rate_limit_store import RateLimitEntry, RateLimitStore
from src.shared.security.rate_limiter import (
    BLOCKED_IP_MESSAGE,
    SUSPICIOUS_ACTIVITY_MESSAGE,
    RateLimiter,
    get_client_ip,
    start_rate_limiter_cleanup_task,
)


AUTH_POLICY = RateLimitPolicy(
    name="auth",
    window_ms=900_000,
    max_requests=5,
    message="Too many authentication attempts. Please try again later.",
)

CONTACT_POLICY = RateLimitPolicy(
    name="contact",
    window_ms=3_600_000,
    max_requests=10,
    message="Too many contact form submissions. Please try again later.",
)


class TestRateLimitStore:
    """Test counter storage."""

    def test_get_set_delete(self):
        store = RateLimitStore()
        entry = RateLimitEntry(count=1, window_start=1000, reset_time=2000)

        assert store.get("a") is None
        store.set("a", entry)
        assert store.get("a") is entry
        assert "a" in store
        assert len(store) == 1

        assert store.delete("a") is True
        assert store.delete("a") is False

    def test_sweep_removes_only_expired(self):
        store = RateLimitStore()
        store.set("old", RateLimitEntry(count=3, window_start=0, reset_time=1000))
        store.set("boundary", RateLimitEntry(count=1, window_start=500, reset_time=1500))
        store.set("fresh", RateLimitEntry(count=1, window_start=1400, reset_time=2400))

        removed = store.sweep(1500)

        assert removed == 1
        assert sorted(store.keys()) == ["boundary", "fresh"]

    def test_entry_expiry(self):
        entry = RateLimitEntry(count=1, window_start=1000, reset_time=2000)

        assert not entry.is_expired(1000, 1000)
        assert not entry.is_expired(1999, 1000)
        assert entry.is_expired(2000, 1000)
        assert entry.elapsed_seconds(1500) == 0.5


class TestIPBlockList:
    """Test the time-bounded denylist."""

    def test_block_and_expire(self):
        blocks = IPBlockList()
        entry = blocks.block("1.2.3.4", 1000, now=5000, reason="rapid_fire")

        assert entry.unblock_time == 6000
        assert blocks.is_blocked("1.2.3.4", 5999)
        assert not blocks.is_blocked("1.2.3.4", 6000)
        # Expired entries are dropped on read
        assert len(blocks) == 0

    def test_reblock_overwrites(self):
        blocks = IPBlockList()
        blocks.block("1.2.3.4", 10_000, now=0)
        blocks.block("1.2.3.4", 1_000, now=100)

        assert blocks.get_unblock_time("1.2.3.4") == 1_100
        assert not blocks.is_blocked("1.2.3.4", 2_000)

    def test_sweep_and_clear(self):
        blocks = IPBlockList()
        blocks.block("10.0.0.1", 100, now=0)
        blocks.block("10.0.0.2", 10_000, now=0)

        assert blocks.sweep(500) == 1
        assert list(blocks.snapshot()) == ["10.0.0.2"]
        assert blocks.clear() == 1
        assert len(blocks) == 0

    def test_unblock(self):
        blocks = IPBlockList()
        blocks.block("10.0.0.1", 100, now=0)

        assert blocks.unblock("10.0.0.1") is True
        assert blocks.unblock("10.0.0.1") is False


class TestAbuseDetector:
    """Test abuse detection heuristics."""

    @pytest.fixture
    def detector(self):
        return AbuseDetector(AUTH_POLICY, RateLimitSettings())

    def test_default_rules(self, detector):
        names = [rule.name for rule in detector.rules]
        assert names == ["rapid_fire", "persistent_limit_hitting"]

    def test_rapid_fire_threshold(self, detector):
        at_threshold = RateLimitEntry(count=25, window_start=0, reset_time=900_000)
        over_threshold = RateLimitEntry(count=26, window_start=0, reset_time=900_000)

        assert detector.evaluate(at_threshold, "1.2.3.4", 0) is None

        verdict = detector.evaluate(over_threshold, "1.2.3.4", 0)
        assert verdict is not None
        assert verdict.rule == "rapid_fire"
        assert verdict.action == AbuseAction.BLOCK
        assert verdict.duration_ms == 15 * 60 * 1000

    def test_persistent_limit_hitting(self, detector):
        # 6 requests in 2 seconds against a 5 per 15 minutes policy
        entry = RateLimitEntry(count=6, window_start=0, reset_time=900_000)

        verdict = detector.evaluate(entry, "1.2.3.4", 2_000)

        assert verdict is not None
        assert verdict.rule == "persistent_limit_hitting"
        assert verdict.duration_ms == 10 * 60 * 1000

    def test_persistent_needs_a_meaningful_sample(self, detector):
        entry = RateLimitEntry(count=6, window_start=0, reset_time=900_000)
        assert detector.evaluate(entry, "1.2.3.4", 500) is None

    def test_persistent_ignores_clients_under_the_limit(self, detector):
        entry = RateLimitEntry(count=4, window_start=0, reset_time=900_000)
        assert detector.evaluate(entry, "1.2.3.4", 2_000) is None

    def test_persistent_ignores_clients_at_the_limit(self, detector):
        entry = RateLimitEntry(count=5, window_start=0, reset_time=900_000)
        assert detector.evaluate(entry, "1.2.3.4", 2_000) is None

    def test_flag_rule_does_not_escalate(self):
        flag_everything = AbuseRule(
            name="flag_all",
            condition=lambda entry, ip, now: True,
            action=AbuseAction.FLAG,
            duration_ms=0,
        )
        detector = AbuseDetector(AUTH_POLICY, rules=[flag_everything])

        entry = RateLimitEntry(count=100, window_start=0, reset_time=900_000)
        assert detector.evaluate(entry, "1.2.3.4", 0) is None

    def test_add_and_remove_rule(self, detector):
        detector.add_rule(AbuseRule(
            name="evil_ip",
            condition=lambda entry, ip, now: ip == "6.6.6.6",
            action=AbuseAction.BLOCK,
            duration_ms=60_000,
        ))
        entry = RateLimitEntry(count=2, window_start=0, reset_time=900_000)

        assert detector.evaluate(entry, "6.6.6.6", 0).rule == "evil_ip"

        detector.remove_rule("evil_ip")
        assert detector.evaluate(entry, "6.6.6.6", 0) is None


class TestClientIP:
    """Test client address resolution."""

    def test_forwarded_for_first_hop(self, make_request):
        request = make_request(headers={"x-forwarded-for": "198.51.100.1, 10.0.0.1", "x-real-ip": "10.9.9.9"})
        assert get_client_ip(request) == "198.51.100.1"

    def test_real_ip_fallback(self, make_request):
        request = make_request(headers={"x-real-ip": "198.51.100.2"})
        assert get_client_ip(request) == "198.51.100.2"

    def test_socket_peer_fallback(self, make_request):
        assert get_client_ip(make_request()) == "203.0.113.7"

    def test_unknown_without_any_source(self, make_request):
        assert get_client_ip(make_request(client=None)) == "unknown"

    def test_untrusted_peer_cannot_spoof(self, make_request):
        request = make_request(headers={"x-forwarded-for": "1.1.1.1"}, client=("203.0.113.7", 1234))
        assert get_client_ip(request, trusted_proxies=["10.0.0.1"]) == "203.0.113.7"

    def test_trusted_proxy_is_honoured(self, make_request):
        request = make_request(headers={"x-forwarded-for": "1.1.1.1"}, client=("10.0.0.1", 1234))
        assert get_client_ip(request, trusted_proxies=["10.0.0.1"]) == "1.1.1.1"


class TestRateLimiter:
    """Test rate limiting functionality."""

    @pytest.fixture
    def rate_limiter(self, clock):
        return RateLimiter(AUTH_POLICY, RateLimitSettings(), clock=clock)

    @pytest.mark.asyncio
    async def test_requests_within_limit_are_allowed(self, rate_limiter, make_request):
        request = make_request("/api/login")

        remaining = []
        for _ in range(AUTH_POLICY.max_requests):
            decision = await rate_limiter.check_limit(request)
            assert decision.allowed is True
            assert decision.error is None
            remaining.append(decision.remaining)

        assert remaining == [4, 3, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_request_over_limit_is_denied(self, rate_limiter, make_request, clock):
        request = make_request("/api/login")
        for _ in range(5):
            await rate_limiter.check_limit(request)

        decision = await rate_limiter.check_limit(request)

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.error == AUTH_POLICY.message
        assert decision.reset_time == clock.now + AUTH_POLICY.window_ms

        logs = rate_limiter.get_audit_logs()
        assert len(logs) == 1
        assert logs[0].action == "rate_limit_exceeded"
        assert logs[0].blocked is True
        assert logs[0].endpoint == "/api/login"
        assert logs[0].user_agent.startswith("Mozilla")

    @pytest.mark.asyncio
    async def test_window_resets_after_reset_time(self, rate_limiter, make_request, clock):
        request = make_request("/api/login")
        for _ in range(6):
            await rate_limiter.check_limit(request)

        clock.advance(AUTH_POLICY.window_ms)
        decision = await rate_limiter.check_limit(request)

        assert decision.allowed is True
        assert decision.remaining == AUTH_POLICY.max_requests - 1
        assert decision.reset_time == clock.now + AUTH_POLICY.window_ms

    @pytest.mark.asyncio
    async def test_keys_are_per_ip_and_path(self, rate_limiter, make_request):
        for _ in range(5):
            await rate_limiter.check_limit(make_request("/api/login"))

        other_path = await rate_limiter.check_limit(make_request("/api/auth/reset"))
        other_ip = await rate_limiter.check_limit(make_request("/api/login", client=("198.51.100.9", 1)))

        assert other_path.allowed is True
        assert other_ip.allowed is True

    @pytest.mark.asyncio
    async def test_custom_key_generator(self, clock, make_request):
        policy = RateLimitPolicy(
            name="api",
            window_ms=60_000,
            max_requests=2,
            key_generator=lambda request: request.headers.get("x-api-key", "anonymous"),
        )
        limiter = RateLimiter(policy, clock=clock)

        await limiter.check_limit(make_request("/a", headers={"x-api-key": "k1"}))
        await limiter.check_limit(make_request("/b", headers={"x-api-key": "k1"}))
        decision = await limiter.check_limit(make_request("/c", headers={"x-api-key": "k1"}))

        assert decision.allowed is False
        assert limiter.store.keys() == ["k1"]

    @pytest.mark.asyncio
    async def test_blocked_ip_is_always_denied(self, rate_limiter, make_request, clock):
        unblock_time = rate_limiter.block_list.block("203.0.113.7", 60_000, clock.now).unblock_time

        decision = await rate_limiter.check_limit(make_request("/api/never-seen"))

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.error == BLOCKED_IP_MESSAGE
        assert decision.reset_time == unblock_time
        # Blocked clients never open a counting window
        assert len(rate_limiter.store) == 0
        assert rate_limiter.get_audit_logs()[-1].action == "blocked_ip"

        clock.advance(60_000)
        decision = await rate_limiter.check_limit(make_request("/api/never-seen"))
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_rapid_fire_block_outlives_window(self, rate_limiter, make_request, clock):
        request = make_request("/api/login")
        start = clock.now

        decisions = [await rate_limiter.check_limit(request) for _ in range(26)]
        assert [d.allowed for d in decisions] == [True] * 5 + [False] * 21
        assert all(d.error == AUTH_POLICY.message for d in decisions[5:])

        clock.advance(30_000)
        escalated = await rate_limiter.check_limit(request)
        assert escalated.allowed is False
        assert escalated.error == SUSPICIOUS_ACTIVITY_MESSAGE
        assert escalated.reset_time == clock.now + RateLimitSettings().rapid_fire_block_ms
        assert rate_limiter.block_list.is_blocked("203.0.113.7", clock.now)

        # The counting window has expired but the block has not
        clock.now = start + AUTH_POLICY.window_ms + 1_000
        decision = await rate_limiter.check_limit(request)
        assert decision.allowed is False
        assert decision.error == BLOCKED_IP_MESSAGE

        clock.now = escalated.reset_time
        decision = await rate_limiter.check_limit(request)
        assert decision.allowed is True
        assert decision.remaining == AUTH_POLICY.max_requests - 1

    @pytest.mark.asyncio
    async def test_contact_form_scenario(self, clock, make_request):
        limiter = RateLimiter(CONTACT_POLICY, clock=clock)
        request = make_request(
            "/api/request-demo",
            method="POST",
            headers={"x-forwarded-for": "1.2.3.4"},
        )

        for _ in range(10):
            decision = await limiter.check_limit(request)
            assert decision.allowed is True
            clock.advance(50)

        decision = await limiter.check_limit(request)
        assert decision.allowed is False
        assert decision.error.startswith("Too many contact form submissions")

        clock.advance(CONTACT_POLICY.window_ms)
        decision = await limiter.check_limit(request)
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_spaced_contact_submissions_get_plain_denial(self, clock, make_request):
        limiter = RateLimiter(CONTACT_POLICY, clock=clock)
        request = make_request("/api/contact", method="POST")

        for _ in range(10):
            assert (await limiter.check_limit(request)).allowed is True
            clock.advance(60_000)

        decision = await limiter.check_limit(request)

        assert decision.allowed is False
        assert decision.error == CONTACT_POLICY.message
        assert len(limiter.block_list) == 0
        assert [entry.action for entry in limiter.get_audit_logs()] == ["rate_limit_exceeded"]

    @pytest.mark.asyncio
    async def test_spaced_login_attempts_get_plain_denial(self, rate_limiter, make_request, clock):
        request = make_request("/api/login")

        for _ in range(5):
            assert (await rate_limiter.check_limit(request)).allowed is True
            clock.advance(30_000)

        decision = await rate_limiter.check_limit(request)

        assert decision.allowed is False
        assert decision.error == AUTH_POLICY.message
        assert not rate_limiter.block_list.is_blocked("203.0.113.7", clock.now)
        assert rate_limiter.get_stats()["abuse_escalations"] == 0

    @pytest.mark.asyncio
    async def test_persistent_hitting_escalates_after_first_denial(self, rate_limiter, make_request, clock):
        request = make_request("/api/login")
        for _ in range(6):
            await rate_limiter.check_limit(request)
            clock.advance(30_000)

        decision = await rate_limiter.check_limit(request)

        assert decision.error == SUSPICIOUS_ACTIVITY_MESSAGE
        assert decision.reset_time == clock.now + RateLimitSettings().persistent_block_ms
        assert rate_limiter.block_list.get_block("203.0.113.7", clock.now).reason == "persistent_limit_hitting"

    @pytest.mark.asyncio
    async def test_audit_log_is_bounded(self, rate_limiter, make_request):
        request = make_request("/api/login")

        for _ in range(10_000):
            await rate_limiter.check_limit(request)

        logs = rate_limiter.get_audit_logs()
        assert len(logs) == 1000
        assert rate_limiter.get_stats()["requests_denied"] == 10_000 - 5

    def test_concurrent_requests_are_not_over_admitted(self, clock, make_request):
        policy = RateLimitPolicy(name="api", window_ms=900_000, max_requests=50)
        limiter = RateLimiter(policy, clock=clock)
        request = make_request("/api/shared")
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(25):
                decision = limiter.check_limit_sync(request)
                if decision.allowed:
                    with lock:
                        allowed.append(decision)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(allowed) == 50
        assert sorted(d.remaining for d in allowed) == list(range(50))

    @pytest.mark.asyncio
    async def test_opportunistic_sweep(self, clock, make_request):
        settings = RateLimitSettings(sweep_every_n_requests=3)
        limiter = RateLimiter(AUTH_POLICY, settings, clock=clock)

        await limiter.check_limit(make_request("/one"))
        await limiter.check_limit(make_request("/two"))
        assert len(limiter.store) == 2

        clock.advance(AUTH_POLICY.window_ms + 1)
        await limiter.check_limit(make_request("/three"))

        assert limiter.store.keys() == ["203.0.113.7:/three"]
        assert limiter.get_stats()["entries_swept"] == 2

    @pytest.mark.asyncio
    async def test_cleanup_and_clear(self, rate_limiter, make_request, clock):
        await rate_limiter.check_limit(make_request("/api/login"))
        rate_limiter.block_list.block("9.9.9.9", 1_000, clock.now)

        assert rate_limiter.cleanup(clock.now) == {"entries": 0, "blocks": 0}
        assert rate_limiter.cleanup(clock.now + AUTH_POLICY.window_ms + 1) == {"entries": 1, "blocks": 1}

        await rate_limiter.check_limit(make_request("/api/login"))
        rate_limiter.block_list.block("9.9.9.9", 1_000, clock.now)
        assert rate_limiter.clear_counters() == 1
        assert rate_limiter.clear_blocked_ips() == 1

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self, rate_limiter, make_request):
        request = make_request("/api/login")
        for _ in range(6):
            await rate_limiter.check_limit(request)

        metrics = get_metrics_collector()
        assert metrics.get_counter("security_requests_allowed_total").get_value(policy="auth") == 5
        assert metrics.get_counter("security_requests_denied_total").get_value(
            policy="auth", reason="rate_limit_exceeded"
        ) == 1


class TestPolicies:
    """Test policy construction and decisions."""

    def test_default_policies(self):
        policies = build_default_policies(RateLimitSettings())

        assert set(policies) == {"global", "api", "auth", "contact"}
        assert (policies["global"].window_ms, policies["global"].max_requests) == (900_000, 100)
        assert (policies["api"].window_ms, policies["api"].max_requests) == (900_000, 50)
        assert (policies["auth"].window_ms, policies["auth"].max_requests) == (900_000, 5)
        assert (policies["contact"].window_ms, policies["contact"].max_requests) == (3_600_000, 10)
        assert policies["api"].message == "API rate limit exceeded. Please try again later."

    def test_retry_after(self):
        decision = SecurityDecision(allowed=False, remaining=0, reset_time=10_500)

        assert decision.retry_after_seconds(9_000) == 2
        assert decision.retry_after_seconds(20_000) == 0


class TestAuditLog:

    def test_oldest_entries_are_evicted(self):
        log = AuditLog(max_entries=3)
        for i in range(5):
            log.append(SecurityAuditLogEntry(
                timestamp=i, ip="1.1.1.1", user_agent="ua", endpoint="/",
                action="rate_limit_exceeded", reason="test", blocked=True,
            ))

        assert [entry.timestamp for entry in log.entries()] == [2, 3, 4]

    def test_to_dict(self):
        entry = SecurityAuditLogEntry(
            timestamp=0, ip="1.1.1.1", user_agent="ua", endpoint="/",
            action="blocked_ip", reason="test", blocked=True,
        )
        data = entry.to_dict()

        assert data["action"] == "blocked_ip"
        assert data["time"].startswith("1970-01-01T00:00:00")


class TestCleanupTask:

    @pytest.mark.asyncio
    async def test_cleanup_task_runs_until_cancelled(self):
        calls = []

        class Target:
            def cleanup(self):
                calls.append(1)
                if len(calls) == 1:
                    raise RuntimeError("transient")

        task = asyncio.create_task(start_rate_limiter_cleanup_task(Target(), 0.01))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # The first failure does not stop the loop
        assert len(calls) >= 2
