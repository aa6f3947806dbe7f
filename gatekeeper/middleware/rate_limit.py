"""Per-client rate limiting with a soft limit, a burst ceiling and timed blocks."""
import time
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from fastapi import status

from gatekeeper.http import GuardResponse
from gatekeeper.workers import PeriodicWorker

logger = logging.getLogger("gatekeeper.ratelimit")

RATE_LIMIT_ERROR = "Rate limit exceeded. Please try again later."


@dataclass
class ClientLimitState:
    """Tracking entry for one client."""
    last_request_time: float
    request_count: int = 1
    blocked_until: float = 0.0  # 0.0 means not blocked


@dataclass(frozen=True)
class RateLimiterConfig:
    """Rate limiter limits. ``burst_limit`` defaults to 1.5x ``max_requests``."""
    max_requests: int = 60
    window_seconds: int = 60
    burst_limit: Optional[int] = None
    block_minutes: int = 5
    sweep_interval_seconds: float = 300
    idle_multiplier: int = 5

    def __post_init__(self):
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        if self.block_minutes < 0:
            raise ValueError("block_minutes must not be negative")
        if self.burst_limit is None:
            object.__setattr__(self, "burst_limit", self.max_requests + self.max_requests // 2)
        elif self.burst_limit < self.max_requests:
            raise ValueError("burst_limit must be greater than or equal to max_requests")

    @property
    def block_seconds(self) -> int:
        return self.block_minutes * 60

    @property
    def idle_seconds(self) -> int:
        return self.window_seconds * self.idle_multiplier

    @classmethod
    def from_mapping(cls, config: Optional[Mapping[str, Any]]) -> "RateLimiterConfig":
        """Build a config from a rateLimiter section (``maxRequests``, ``windowSeconds``, ...)."""
        if not config:
            logger.warning("No rate limiter configuration provided, using default values.")
            return cls()

        keys = {
            "maxRequests": "max_requests",
            "windowSeconds": "window_seconds",
            "burstLimit": "burst_limit",
            "blockMinutes": "block_minutes",
            "sweepIntervalSeconds": "sweep_interval_seconds",
        }
        values = {
            attr: config[key]
            for key, attr in keys.items()
            if config.get(key) is not None
        }
        return cls(**values)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class RateLimiter:
    """
    In-memory rate limiter keyed by client identifier (usually the remote IP).

    Within a window a client may exceed ``max_requests`` (a soft limit that is
    only logged) up to ``burst_limit``. The request that crosses the burst
    limit blocks the client for ``block_minutes``. A background sweeper drops
    entries that are unblocked and idle for ``idle_multiplier`` windows.

    All access to the client map goes through one lock; logging happens
    after it is released.
    """

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or RateLimiterConfig()
        self.clock = clock
        self._clients: Dict[str, ClientLimitState] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicWorker(
            self.config.sweep_interval_seconds,
            self.sweep,
            name="rate-limit-sweeper",
        )
        logger.info(
            "Rate limiter created",
            extra={'extra_fields': {
                'max_requests': self.config.max_requests,
                'window_seconds': self.config.window_seconds,
                'burst_limit': self.config.burst_limit,
                'block_minutes': self.config.block_minutes,
            }}
        )

    def is_limited(self, client_id: str, request_id: Optional[str] = None) -> Tuple[bool, int]:
        """
        Record a request from ``client_id`` and decide whether to deny it.

        Args:
            client_id: Client identifier (remote address)
            request_id: Request ID attached to the log events, if known

        Returns:
            Tuple of (denied, retry_after_seconds)
        """
        cfg = self.config
        now = self.clock()
        event = None

        with self._lock:
            state = self._clients.get(client_id)

            if state is None:
                self._clients[client_id] = ClientLimitState(last_request_time=now)
                event = "first"
                denied = False

            elif now < state.blocked_until:
                # Counters stay frozen while blocked
                event = "blocked"
                denied = True

            else:
                if now - state.last_request_time > cfg.window_seconds:
                    state.request_count = 1
                    state.last_request_time = now
                else:
                    state.request_count += 1

                if state.request_count > cfg.burst_limit:
                    state.blocked_until = now + cfg.block_seconds
                    event = "burst"
                    denied = True
                elif state.request_count > cfg.max_requests:
                    event = "soft"
                    denied = False
                else:
                    denied = False

            count = self._clients[client_id].request_count
            blocked_until = self._clients[client_id].blocked_until

        self._log_event(event, client_id, count, blocked_until, request_id)

        if denied:
            return True, cfg.block_seconds
        return False, 0

    def check(
        self,
        client_id: str,
        response: GuardResponse,
        request_id: Optional[str] = None
    ) -> bool:
        """
        Apply the rate limit and populate ``response`` with a 429 on denial.

        Returns:
            True if the request may proceed
        """
        denied, retry_after = self.is_limited(client_id, request_id)
        if not denied:
            return True

        response.deny(
            status.HTTP_429_TOO_MANY_REQUESTS,
            RATE_LIMIT_ERROR,
            headers={"Retry-After": str(retry_after)}
        )
        return False

    def reset(self, client_id: str) -> None:
        """Forget a client entirely, clearing any block."""
        with self._lock:
            removed = self._clients.pop(client_id, None) is not None
        logger.info(
            f"Rate limit tracking reset for {client_id}",
            extra={'extra_fields': {'client_ip': client_id, 'was_tracked': removed}}
        )

    def sweep(self) -> int:
        """
        Remove entries that are unblocked and idle for too long.

        Returns:
            Number of entries removed
        """
        now = self.clock()
        idle_seconds = self.config.idle_seconds

        with self._lock:
            stale = [
                client_id
                for client_id, state in self._clients.items()
                if now > state.blocked_until and now - state.last_request_time > idle_seconds
            ]
            for client_id in stale:
                del self._clients[client_id]
            remaining = len(self._clients)

        if stale:
            logger.debug(
                f"Cleaned up {len(stale)} idle client entries",
                extra={'extra_fields': {'removed': len(stale), 'remaining': remaining}}
            )
        return len(stale)

    def get_state(self, client_id: str) -> Optional[ClientLimitState]:
        """Return a copy of the tracking entry for ``client_id``, if any."""
        with self._lock:
            state = self._clients.get(client_id)
            return replace(state) if state is not None else None

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._clients)

    def start(self) -> None:
        """Start the background sweeper."""
        self._sweeper.start()

    def stop(self, timeout: float = 5.0) -> bool:
        """Stop the sweeper and wait until its thread has exited."""
        return self._sweeper.stop(timeout)

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper.is_running

    def __enter__(self) -> "RateLimiter":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _log_event(
        self,
        event: Optional[str],
        client_id: str,
        count: int,
        blocked_until: float,
        request_id: Optional[str] = None
    ) -> None:
        cfg = self.config
        extra = {
            'request_id': request_id,
            'extra_fields': {'client_ip': client_id, 'request_count': count},
        }

        if event == "first":
            logger.debug(f"First request from {client_id}. Tracking started.", extra=extra)
        elif event == "blocked":
            logger.warning(
                f"Rate limit: {client_id} is blocked until {_iso(blocked_until)}",
                extra=extra
            )
        elif event == "burst":
            logger.warning(
                f"Rate limit: {client_id} exceeded burst limit "
                f"({count} > {cfg.burst_limit}). Blocked until {_iso(blocked_until)}",
                extra=extra
            )
        elif event == "soft":
            logger.info(
                f"Rate limit: {client_id} exceeded soft limit "
                f"({count} > {cfg.max_requests}). Burst available up to {cfg.burst_limit}",
                extra=extra
            )
