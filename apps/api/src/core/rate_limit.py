"""
In-memory request rate limiting for the token issuance endpoints.

This is a fixed-window counter keyed by client address, not a sliding window
or token bucket: a client can get up to 2 x limit requests through around a
window boundary (limit at the end of one window, limit at the start of the
next). That burst is accepted for the login surface it protects.

State lives in one process. Each server instance limits independently.
"""
from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ClientWindow:
    """Counter for one client key."""
    request_count: int
    window_start: float
    last_seen: float


class RateGuard:
    """
    Fixed-window request counter per client key.

    Every read-modify-write of the counter map happens under `_lock`,
    including the periodic sweep that drops idle clients.
    """

    def __init__(
        self,
        limit: int = 5,
        window_seconds: float = 60,
        sweep_interval_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._clients: Dict[str, ClientWindow] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def admit(self, client_key: str) -> bool:
        """Count one request for `client_key`; True if it is within the limit."""
        now = self._clock()
        with self._lock:
            entry = self._clients.get(client_key)
            if entry is None:
                entry = ClientWindow(request_count=0, window_start=now, last_seen=now)
                self._clients[client_key] = entry
            elif now - entry.window_start > self.window_seconds:
                entry.request_count = 0
                entry.window_start = now

            entry.request_count += 1
            entry.last_seen = now
            allowed = entry.request_count <= self.limit

        if not allowed:
            logger.warning(f"Rate limit exceeded for client {client_key}")
        return allowed

    def retry_after(self, client_key: str) -> int:
        """Seconds until the current window of `client_key` closes."""
        now = self._clock()
        with self._lock:
            entry = self._clients.get(client_key)
            if entry is None:
                return 0
            remaining = self.window_seconds - (now - entry.window_start)
        return max(1, int(remaining + 0.999))

    def sweep(self) -> int:
        """Remove clients not seen for a whole window. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            idle = [
                key for key, entry in self._clients.items()
                if now - entry.last_seen > self.window_seconds
            ]
            for key in idle:
                del self._clients[key]

        if idle:
            logger.debug(f"Rate guard swept {len(idle)} idle clients")
        return len(idle)

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def start(self) -> None:
        """Start the background sweeper thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="rate-guard-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self) -> None:
        """Stop the background sweeper and wait for it to exit."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval_seconds)
            self._sweeper = None

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            self.sweep()
