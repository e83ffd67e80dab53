"""
Tests for the fixed-window rate guard and its HTTP wiring.
"""
import threading
import time
import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from src.core.deps import client_key
from src.core.errors import ClientKeyUnavailable
from src.core.rate_limit import RateGuard
from src.db.session import get_db

VALID_ID_TOKEN = "valid-id-token"


class FakeMonotonic:
    def __init__(self):
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def ticks() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def guard(ticks) -> RateGuard:
    return RateGuard(limit=5, window_seconds=60, clock=ticks)


class TestAdmit:
    """Tests for RateGuard.admit."""

    def test_sixth_request_in_window_rejected(self, guard):
        """limit=5: five calls pass, the sixth is refused."""
        results = [guard.admit("10.0.0.1") for _ in range(6)]

        assert results == [True, True, True, True, True, False]

    def test_window_elapsed_resets_counter(self, guard, ticks):
        """After the window the client starts from a zero count."""
        for _ in range(6):
            guard.admit("10.0.0.1")

        ticks.t += 61

        assert guard.admit("10.0.0.1") is True
        # Counter really restarted: four more fit, then the limit applies again
        assert [guard.admit("10.0.0.1") for _ in range(5)] == [True, True, True, True, False]

    def test_still_limited_inside_window(self, guard, ticks):
        for _ in range(6):
            guard.admit("10.0.0.1")

        ticks.t += 59

        assert guard.admit("10.0.0.1") is False

    def test_clients_counted_independently(self, guard):
        for _ in range(5):
            guard.admit("10.0.0.1")

        assert guard.admit("10.0.0.1") is False
        assert guard.admit("10.0.0.2") is True

    def test_boundary_burst_up_to_twice_the_limit(self, guard, ticks):
        """Fixed windows allow 2 x limit around a boundary."""
        guard.admit("10.0.0.1")  # opens the window at t=1000
        ticks.t += 59
        end_of_window = [guard.admit("10.0.0.1") for _ in range(4)]
        ticks.t += 2
        start_of_next = [guard.admit("10.0.0.1") for _ in range(5)]

        # Nine requests within two seconds all admitted
        assert all(end_of_window) and all(start_of_next)

    def test_retry_after_reports_rest_of_window(self, guard, ticks):
        guard.admit("10.0.0.1")
        ticks.t += 20

        assert guard.retry_after("10.0.0.1") == 40
        assert guard.retry_after("unknown") == 0

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateGuard(limit=0, window_seconds=60)

    def test_concurrent_admits_never_exceed_limit(self):
        """Counter updates are serialised across threads."""
        guard = RateGuard(limit=500, window_seconds=3600)
        allowed = []
        lock = threading.Lock()

        def worker():
            mine = sum(1 for _ in range(50) if guard.admit("10.0.0.9"))
            with lock:
                allowed.append(mine)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(allowed) == 500


class TestSweep:
    """Tests for reclaiming idle clients."""

    def test_sweep_removes_idle_clients(self, guard, ticks):
        guard.admit("10.0.0.1")
        ticks.t += 30
        guard.admit("10.0.0.2")
        ticks.t += 31

        removed = guard.sweep()

        assert removed == 1
        assert len(guard) == 1

    def test_sweep_keeps_active_clients(self, guard):
        guard.admit("10.0.0.1")

        assert guard.sweep() == 0
        assert len(guard) == 1

    def test_background_sweeper(self, ticks):
        """The sweeper thread reclaims idle entries on its own."""
        guard = RateGuard(limit=5, window_seconds=60, sweep_interval_seconds=0.01, clock=ticks)
        guard.admit("10.0.0.1")
        ticks.t += 120

        guard.start()
        try:
            deadline = time.monotonic() + 2
            while len(guard) and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            guard.stop()

        assert len(guard) == 0


class TestClientKey:
    """Tests for deriving the rate limiting key."""

    def test_uses_peer_host(self):
        request = Request({"type": "http", "headers": [], "client": ("203.0.113.7", 4321)})

        assert client_key(request) == "203.0.113.7"

    def test_missing_peer_fails_closed(self):
        request = Request({"type": "http", "headers": [], "client": None})

        with pytest.raises(ClientKeyUnavailable):
            client_key(request)


class TestRateLimitedEndpoints:
    """Tests for 429 / 500 responses from rate limited routes."""

    def test_exchange_throttled_after_limit(self, client: TestClient):
        for _ in range(5):
            assert client.post("/auth/exchange", json={"idToken": VALID_ID_TOKEN}).status_code == 200

        response = client.post("/auth/exchange", json={"idToken": VALID_ID_TOKEN})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0

    def test_refresh_counts_against_same_client(self, client: TestClient):
        for _ in range(5):
            client.post("/auth/exchange", json={"idToken": "bogus"})

        response = client.post("/auth/refresh")

        assert response.status_code == 429

    def test_logout_not_throttled(self, client: TestClient):
        for _ in range(6):
            client.post("/auth/exchange", json={"idToken": "bogus"})

        client.cookies.clear()
        response = client.post("/auth/logout", headers={"Cookie": "refresh_token=whatever"})

        assert response.status_code == 200

    def test_unknown_client_address_is_server_error(self, app, db):
        """Without a peer address the guard refuses with 500 instead of admitting."""
        def override_get_db():
            yield db

        async def without_client(scope, receive, send):
            if scope["type"] == "http":
                scope = dict(scope, client=None)
            await app(scope, receive, send)

        app.dependency_overrides[get_db] = override_get_db
        try:
            response = TestClient(without_client).post("/auth/exchange", json={"idToken": VALID_ID_TOKEN})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json()["error"] == "internal_server_error"
