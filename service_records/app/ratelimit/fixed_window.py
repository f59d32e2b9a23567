"""
Fixed-window rate limiting for the Records service.

One limiter per policy class, each with its own window length, budget and
counter map. A window opens on an identity's first request and is replaced
once ``now >= window_start + window_length``. Across a window boundary a
caller can therefore issue up to twice the nominal budget.
"""

import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from farm_shared.config import BaseConfig
from farm_shared.logging import get_logger, log_security_event

from ..domain.identity import Identity


POLICIES = ("default", "auth", "api", "upload", "admin")

# Policies that always count by network address, even for signed-in callers
ADDRESS_KEYED_POLICIES = frozenset({"default", "auth"})


@dataclass
class RateWindow:
    """Counter for one identity inside one window."""
    identity: str
    count: int
    window_start: float
    window_length: float

    @property
    def window_end(self) -> float:
        return self.window_start + self.window_length


@dataclass(frozen=True)
class RateDecision:
    """Outcome of an admission check."""
    allowed: bool
    policy: str
    identity: str
    limit: int
    count: int
    retry_after_seconds: float
    reset_in_seconds: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def headers(self) -> Dict[str, str]:
        """Propagate rate limiting metadata via standard headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(max(0, int(round(self.reset_in_seconds)))),
        }


class FixedWindowRateLimiter:
    """In-process fixed-window counter map for one policy class."""

    def __init__(
        self,
        policy: str,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_identities: int = 100_000,
    ):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.policy = policy
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.max_identities = max_identities
        self.logger = get_logger("records.rate_limiter")
        self._windows: "OrderedDict[str, RateWindow]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def admit(self, identity: str) -> RateDecision:
        """Count one request for ``identity`` and decide whether it may proceed."""
        with self._lock:
            now = self.clock()
            window = self._windows.get(identity)

            if window is None or now >= window.window_end:
                window = RateWindow(identity, 1, now, self.window_seconds)
                self._windows[identity] = window
                self._windows.move_to_end(identity)
                self._evict_overflow()
            else:
                window.count += 1
                self._windows.move_to_end(identity)

            reset_in = window.window_end - now
            allowed = window.count <= self.max_requests
            return RateDecision(
                allowed=allowed,
                policy=self.policy,
                identity=identity,
                limit=self.max_requests,
                count=window.count,
                retry_after_seconds=0.0 if allowed else reset_in,
                reset_in_seconds=reset_in,
            )

    def _evict_overflow(self) -> None:
        while len(self._windows) > self.max_identities:
            evicted, _ = self._windows.popitem(last=False)
            self.logger.debug("Evicted rate window", policy=self.policy, identity=evicted)

    def status(self, identity: str) -> Dict[str, Any]:
        """Current window for ``identity`` without counting a request."""
        with self._lock:
            now = self.clock()
            window = self._windows.get(identity)
            if window is None or now >= window.window_end:
                count, reset_in = 0, self.window_seconds
            else:
                count, reset_in = window.count, window.window_end - now
        return {
            "policy": self.policy,
            "identity": identity,
            "current_count": count,
            "limit": self.max_requests,
            "remaining": max(0, self.max_requests - count),
            "reset_in_seconds": reset_in,
        }

    def reset(self, identity: str) -> bool:
        with self._lock:
            removed = self._windows.pop(identity, None) is not None
        if removed:
            self.logger.info("Rate limit reset", policy=self.policy, identity=identity)
        return removed

    def sweep(self, grace_seconds: float = 0.0) -> int:
        """Drop windows that ended more than ``grace_seconds`` ago."""
        with self._lock:
            cutoff = self.clock() - grace_seconds
            stale = [key for key, window in self._windows.items() if window.window_end <= cutoff]
            for key in stale:
                del self._windows[key]
        return len(stale)


class RateLimiterRegistry:
    """Owns one limiter per policy class and the background sweep."""

    def __init__(
        self,
        limiters: Dict[str, FixedWindowRateLimiter],
        *,
        sweep_interval_seconds: float = 60.0,
    ):
        if "default" not in limiters:
            raise ValueError("a 'default' policy is required")
        self.limiters = limiters
        self.sweep_interval_seconds = sweep_interval_seconds
        self.logger = get_logger("records.rate_limiter")
        self.sweep_task: Optional[asyncio.Task] = None
        self.running = False

    @classmethod
    def from_config(
        cls,
        config: BaseConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        policies: Iterable[str] = POLICIES,
    ) -> "RateLimiterRegistry":
        limiters = {}
        for policy in policies:
            settings = config.rate_limit_for(policy)
            limiters[policy] = FixedWindowRateLimiter(
                policy,
                settings.max_requests,
                settings.window_seconds,
                clock=clock,
                max_identities=config.rate_limit_max_identities,
            )
        return cls(limiters, sweep_interval_seconds=config.rate_limit_sweep_interval_seconds)

    def get(self, policy: str) -> FixedWindowRateLimiter:
        limiter = self.limiters.get(policy)
        if limiter is None:
            self.logger.warning("Unknown rate limit policy, using default", policy=policy)
            return self.limiters["default"]
        return limiter

    @staticmethod
    def identity_key(policy: str, identity: Identity) -> str:
        if policy in ADDRESS_KEYED_POLICIES:
            return f"ip:{identity.address}"
        return identity.rate_key

    def check(self, identity: Identity, policies: Iterable[str], *, path: str, method: str) -> RateDecision:
        """Admit against each policy in order; the first denial wins.

        When every policy allows the request, the decision with the fewest
        remaining requests is returned so headers reflect the tightest budget.
        """
        tightest: Optional[RateDecision] = None
        for policy in policies:
            limiter = self.get(policy)
            decision = limiter.admit(self.identity_key(limiter.policy, identity))
            if not decision.allowed:
                log_security_event(
                    "SECURITY_RATE_LIMIT",
                    policy=decision.policy,
                    identity=decision.identity,
                    ip=identity.address,
                    path=path,
                    method=method,
                    retry_after=round(decision.retry_after_seconds, 3),
                )
                return decision
            if tightest is None or decision.remaining < tightest.remaining:
                tightest = decision

        if tightest is None:
            raise ValueError("at least one policy is required")
        return tightest

    def sweep(self) -> int:
        removed = sum(limiter.sweep() for limiter in self.limiters.values())
        if removed:
            self.logger.debug("Swept idle rate windows", removed=removed)
        return removed

    async def start(self):
        """Start the periodic sweep of idle windows."""
        self.running = True
        self.sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Rate limit sweeper started", interval=self.sweep_interval_seconds)

    async def stop(self):
        """Stop the sweeper."""
        self.running = False
        if self.sweep_task:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
            self.sweep_task = None

        self.logger.info("Rate limit sweeper stopped")

    async def _sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in rate limit sweep", error=str(e))

    def stats(self) -> Dict[str, Any]:
        return {
            policy: {
                "limit": limiter.max_requests,
                "window_seconds": limiter.window_seconds,
                "tracked_identities": len(limiter),
            }
            for policy, limiter in self.limiters.items()
        }
