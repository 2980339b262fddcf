"""
Rate Limiter

In-process token bucket admission control, consulted before every outbound
call to the remote store.

Features:
- Per-tenant buckets sized by the tenant's plan
- Per-source-IP buckets (anti-abuse)
- A call is admitted only if BOTH buckets can pay for it
- Lazy refill computed at check time (no timers, never blocks)
- Idle buckets pruned to bound memory

STAGE-RL: Rate Limiting
-----------------------
RL.1: Admission granted
RL.2: Throttled
RL.3: Idle buckets pruned
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from tenant_sheets.core.config.constants import (
    IP_RATE_CAPACITY,
    IP_RATE_REFILL_PER_SECOND,
    PLAN_RATE_LIMITS,
    RATE_BUCKET_IDLE_SECONDS,
    RATE_BUCKET_PRUNE_INTERVAL,
    RateScope,
    TenantPlan,
)
from tenant_sheets.core.exceptions import ThrottledError
from tenant_sheets.core.logging import get_logger, log_stage
from tenant_sheets.tenancy.models import TenantConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateDecision:
    """Outcome of an admission check."""

    allowed: bool
    retry_after: float = 0.0
    remaining: float = 0.0
    scope: RateScope | None = None
    key: str | None = None


@dataclass
class RateBucket:
    """
    Token bucket for one scope key.

    Tokens accumulate at ``refill_rate_per_second`` up to ``capacity``.
    Refill is computed from the elapsed time whenever the bucket is touched.
    """

    scope: RateScope
    key: str
    capacity: float
    refill_rate_per_second: float
    tokens: float
    last_refill_at: float
    last_seen_at: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_second)
        self.last_refill_at = now
        self.last_seen_at = now

    def wait_time(self, cost: float) -> float:
        """Seconds until ``cost`` tokens are available (0.0 if they are now)."""
        if self.tokens >= cost:
            return 0.0
        if self.refill_rate_per_second <= 0 or cost > self.capacity:
            return float("inf")
        return (cost - self.tokens) / self.refill_rate_per_second

    def resize(self, capacity: float, refill_rate_per_second: float) -> None:
        self.capacity = capacity
        self.refill_rate_per_second = refill_rate_per_second
        self.tokens = min(self.tokens, capacity)


class TokenBucketRateLimiter:
    """
    Token bucket rate limiter with tenant and IP scopes.

    Every public method is synchronous and performs no I/O; callers in async
    code never yield while the buckets are being mutated.

    Usage:
        limiter = TokenBucketRateLimiter()
        decision = limiter.try_acquire(RateScope.IP, "203.0.113.7")
        limiter.check(tenant_config, client_ip="203.0.113.7")  # raises ThrottledError
    """

    def __init__(
        self,
        plan_limits: dict[TenantPlan, tuple[float, float]] | None = None,
        ip_capacity: float = IP_RATE_CAPACITY,
        ip_refill_per_second: float = IP_RATE_REFILL_PER_SECOND,
        idle_seconds: float = RATE_BUCKET_IDLE_SECONDS,
        prune_interval: float = RATE_BUCKET_PRUNE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._plan_limits = dict(PLAN_RATE_LIMITS)
        if plan_limits:
            self._plan_limits.update(plan_limits)
        self._ip_limits = (ip_capacity, ip_refill_per_second)
        self._idle_seconds = idle_seconds
        self._prune_interval = prune_interval
        self._clock = clock

        self._buckets: dict[tuple[RateScope, str], RateBucket] = {}
        self._last_prune_at = clock()

        self._allowed = dict.fromkeys(RateScope, 0)
        self._throttled = dict.fromkeys(RateScope, 0)
        self._pruned = 0

        logger.info(
            "Token bucket rate limiter initialized",
            stage="RL.0",
            plans={plan.value: limits for plan, limits in self._plan_limits.items()},
            ip_limits=self._ip_limits,
        )

    # =========================================================================
    # Bucket management
    # =========================================================================

    def _limits_for(self, scope: RateScope, plan: TenantPlan | None) -> tuple[float, float]:
        if scope is RateScope.IP:
            return self._ip_limits
        return self._plan_limits[plan or TenantPlan.STARTER]

    def _bucket(self, scope: RateScope, key: str, plan: TenantPlan | None, now: float) -> RateBucket:
        capacity, refill = self._limits_for(scope, plan)
        bucket = self._buckets.get((scope, key))
        if bucket is None:
            bucket = RateBucket(
                scope=scope,
                key=key,
                capacity=capacity,
                refill_rate_per_second=refill,
                tokens=capacity,
                last_refill_at=now,
                last_seen_at=now,
            )
            self._buckets[(scope, key)] = bucket
        elif (bucket.capacity, bucket.refill_rate_per_second) != (capacity, refill):
            # Plan changed on a registry refresh
            bucket.refill(now)
            bucket.resize(capacity, refill)
        bucket.refill(now)
        return bucket

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune_at >= self._prune_interval:
            self.prune(now)

    def prune(self, now: float | None = None) -> int:
        """Drop buckets unseen for longer than the idle period."""
        now = self._clock() if now is None else now
        self._last_prune_at = now
        stale = [k for k, b in self._buckets.items() if now - b.last_seen_at > self._idle_seconds]
        for k in stale:
            del self._buckets[k]
        if stale:
            self._pruned += len(stale)
            log_stage(logger, "RL.3", "Pruned idle rate buckets", level="debug", pruned=len(stale))
        return len(stale)

    # =========================================================================
    # Admission
    # =========================================================================

    def try_acquire(
        self,
        scope: RateScope,
        key: str,
        cost: float = 1.0,
        plan: TenantPlan | None = None,
    ) -> RateDecision:
        """
        Try to take ``cost`` tokens from a single scope's bucket.

        Returns:
            RateDecision: allowed, or throttled with ``retry_after`` seconds
        """
        now = self._clock()
        self._maybe_prune(now)
        bucket = self._bucket(scope, key, plan, now)
        return self._settle([bucket], cost)

    def admit(
        self,
        tenant: TenantConfig,
        client_ip: str | None = None,
        cost: float = 1.0,
    ) -> RateDecision:
        """
        Check the tenant's plan bucket and the caller's IP bucket together.

        Tokens are deducted from both only when both can pay, so a call
        rejected by one scope never drains the other.
        """
        now = self._clock()
        self._maybe_prune(now)
        buckets = [self._bucket(RateScope.TENANT, tenant.tenant_id, tenant.plan, now)]
        if client_ip:
            buckets.append(self._bucket(RateScope.IP, client_ip, None, now))
        return self._settle(buckets, cost)

    def check(
        self,
        tenant: TenantConfig,
        client_ip: str | None = None,
        cost: float = 1.0,
    ) -> RateDecision:
        """
        Like :meth:`admit` but raises on rejection.

        Raises:
            ThrottledError: carrying ``retry_after``
        """
        decision = self.admit(tenant, client_ip, cost)
        if not decision.allowed:
            raise ThrottledError(
                f"Rate limit exceeded for {decision.scope.value} scope",
                retry_after=decision.retry_after,
                tenant_id=tenant.tenant_id,
                details={"scope": decision.scope.value},
            )
        return decision

    def _settle(self, buckets: list[RateBucket], cost: float) -> RateDecision:
        waits = [(b.wait_time(cost), b) for b in buckets]
        denied = [(wait, b) for wait, b in waits if wait > 0]
        if denied:
            retry_after, bucket = max(denied, key=lambda item: item[0])
            self._throttled[bucket.scope] += 1
            log_stage(
                logger,
                "RL.2",
                "Throttled",
                level="warning",
                scope=bucket.scope.value,
                key=bucket.key,
                retry_after=round(retry_after, 3),
            )
            return RateDecision(
                allowed=False,
                retry_after=retry_after,
                remaining=bucket.tokens,
                scope=bucket.scope,
                key=bucket.key,
            )

        for bucket in buckets:
            bucket.tokens -= cost
            self._allowed[bucket.scope] += 1
        primary = buckets[0]
        return RateDecision(
            allowed=True,
            remaining=min(b.tokens for b in buckets),
            scope=primary.scope,
            key=primary.key,
        )

    # =========================================================================
    # Introspection / admin
    # =========================================================================

    def reset(self, scope: RateScope, key: str) -> bool:
        """Forget one bucket; it is recreated full on the next request."""
        return self._buckets.pop((scope, key), None) is not None

    def reset_all(self) -> None:
        self._buckets.clear()

    def stats(self) -> dict[str, Any]:
        buckets_by_scope = dict.fromkeys((s.value for s in RateScope), 0)
        for scope, _ in self._buckets:
            buckets_by_scope[scope.value] += 1
        return {
            "buckets": buckets_by_scope,
            "allowed": {s.value: n for s, n in self._allowed.items()},
            "throttled": {s.value: n for s, n in self._throttled.items()},
            "pruned": self._pruned,
            "plans": {p.value: {"capacity": c, "refill_per_second": r} for p, (c, r) in self._plan_limits.items()},
        }
