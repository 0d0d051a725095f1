from datetime import datetime, timedelta, timezone


class RateLimiter:
    """Simple in-memory sliding-window rate limiter, keyed by client address.

    State lives in one process; behind several workers each one counts on
    its own. Clients idle for a whole window are dropped, at most once per
    window.
    """

    def __init__(self, max_requests: int = 100, window_seconds: int = 900):
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_seconds)
        self._timestamps: dict[str, list[datetime]] = {}
        self._last_sweep: datetime | None = None

    def __len__(self) -> int:
        return len(self._timestamps)

    @property
    def window_minutes(self) -> int:
        return max(1, int(self.window.total_seconds() // 60))

    def _sweep(self, now: datetime, cutoff: datetime) -> None:
        if self._last_sweep is not None and now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        stale = [
            client for client, stamps in self._timestamps.items()
            if not stamps or stamps[-1] <= cutoff
        ]
        for client in stale:
            del self._timestamps[client]

    def is_allowed(self, client: str, now: datetime | None = None) -> bool:
        """Return True if the request is within rate limits."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.window
        self._sweep(now, cutoff)

        # Prune expired timestamps
        recent = [ts for ts in self._timestamps.get(client, []) if ts > cutoff]

        if len(recent) >= self.max_requests:
            self._timestamps[client] = recent
            return False

        recent.append(now)
        self._timestamps[client] = recent
        return True
