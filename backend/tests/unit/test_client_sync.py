"""
Unit tests for the client-side membership helpers.

Tests:
- CountdownTicker refresh, re-derivation on a new expiry and stop at expiry
- ClientStateSync optimistic confirmation and reconciliation polling
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from client import ClientStateSync, CountdownTicker, SubscriptionSnapshot
from core.countdown import EXPIRED_LABEL
from core.errors import AuthError

from conftest import FakeClock

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def view(provisional: bool, status: str = "trialing", end: datetime | None = NOW + timedelta(days=3)) -> dict:
    return {
        "subscribed": status in ("trialing", "active"),
        "tier": "premium" if status in ("trialing", "active") else "none",
        "status": status,
        "subscription_end": end.isoformat().replace("+00:00", "Z") if end else None,
        "provisional": provisional,
        "has_access": status in ("trialing", "active"),
        "trial_started_at": NOW.isoformat(),
        "trial_ended_at": None,
        "countdown": {"remaining_label": "3 days 0 hours", "expiring_soon": False, "expired": False},
    }


class TestCountdownTicker:
    """Tests for the live countdown."""

    def test_interval_is_capped_at_a_minute(self):
        with pytest.raises(ValueError):
            CountdownTicker(NOW, on_tick=lambda c: None, interval=61)
        with pytest.raises(ValueError):
            CountdownTicker(NOW, on_tick=lambda c: None, interval=0)

    def test_tick_derives_from_clock(self):
        clock = FakeClock(NOW)
        ticks = []
        ticker = CountdownTicker(NOW + timedelta(hours=2), on_tick=ticks.append, clock=clock)

        ticker.tick()
        clock.advance(minutes=90)
        ticker.tick()

        assert [t.remaining_label for t in ticks] == ["2 hours 0 minutes", "30 minutes"]
        assert ticker.last is ticks[-1]

    @pytest.mark.asyncio
    async def test_update_end_rederives_immediately(self):
        clock = FakeClock(NOW)
        ticks = []
        ticker = CountdownTicker(NOW + timedelta(days=3), on_tick=ticks.append, interval=60, clock=clock)

        ticker.start()
        await asyncio.sleep(0.01)
        ticker.update_end(NOW + timedelta(hours=5))
        await asyncio.sleep(0.01)

        assert ticks[0].remaining_label == "3 days 0 hours"
        assert ticks[-1].remaining_label == "5 hours 0 minutes"
        assert ticks[-1].expiring_soon is True
        await ticker.stop()

    @pytest.mark.asyncio
    async def test_stops_after_expiry(self):
        clock = FakeClock(NOW)
        ticks = []
        ticker = CountdownTicker(NOW - timedelta(minutes=1), on_tick=ticks.append, interval=0.01, clock=clock)

        ticker.start()
        await asyncio.sleep(0.05)

        assert ticker.running is False
        assert len(ticks) == 1
        assert ticks[0].remaining_label == EXPIRED_LABEL

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self):
        ticker = CountdownTicker(NOW, on_tick=lambda c: None)
        await ticker.stop()
        assert ticker.running is False


class TestClientStateSync:
    """Tests for the post-checkout sync against a mocked API."""

    def _client(self, handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")

    @pytest.mark.asyncio
    async def test_redirect_without_trial_does_nothing(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json=view(False))

        async with self._client(handler) as client:
            sync = ClientStateSync(client, "token")
            assert await sync.on_checkout_return(trial_started=False) is None

        assert calls == []

    @pytest.mark.asyncio
    async def test_canonical_state_replaces_optimistic_one(self):
        reads = iter([view(True), view(False, end=NOW + timedelta(days=3, hours=1))])
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            assert request.headers["Authorization"] == "Bearer token"
            if request.url.path == "/billing/trial/confirm":
                return httpx.Response(200, json=view(True))
            return httpx.Response(200, json=next(reads))

        updates = []
        async with self._client(handler) as client:
            sync = ClientStateSync(
                client, "token", reconcile_delay=0, poll_interval=0.01, confirm_window=1, on_update=updates.append
            )
            optimistic = await sync.on_checkout_return(trial_started=True, session_id="cs_1")
            final = await sync.wait_reconciled()

        assert optimistic.provisional is True
        assert final.provisional is False
        assert final.subscription_end == NOW + timedelta(days=3, hours=1)
        assert sync.snapshot == final
        assert calls[0] == ("POST", "/billing/trial/confirm")
        assert ("POST", "/billing/reconcile") not in calls
        assert len(updates) == 3

    @pytest.mark.asyncio
    async def test_requests_reconcile_when_webhook_never_arrives(self):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            if request.url.path == "/billing/reconcile":
                return httpx.Response(200, json=view(False, status="none", end=None))
            return httpx.Response(200, json=view(True))

        async with self._client(handler) as client:
            sync = ClientStateSync(client, "token", reconcile_delay=0, poll_interval=0.01, confirm_window=0.03)
            await sync.on_checkout_return(trial_started=True)
            final = await sync.wait_reconciled()

        assert calls[-1] == ("POST", "/billing/reconcile")
        assert final.status == "none"
        assert final.has_access is False

    @pytest.mark.asyncio
    async def test_read_failures_are_retried(self):
        responses = iter([httpx.Response(503, json={"error": "busy"}), httpx.Response(200, json=view(False))])

        def handler(request):
            if request.url.path == "/billing/trial/confirm":
                return httpx.Response(200, json=view(True))
            return next(responses)

        async with self._client(handler) as client:
            sync = ClientStateSync(client, "token", reconcile_delay=0, poll_interval=0.01, confirm_window=1)
            await sync.on_checkout_return(trial_started=True)
            final = await sync.wait_reconciled()

        assert final.provisional is False

    @pytest.mark.asyncio
    async def test_unauthenticated_confirm_raises(self):
        def handler(request):
            return httpx.Response(401, json={"error": "Not authenticated"})

        async with self._client(handler) as client:
            sync = ClientStateSync(client, "expired")
            with pytest.raises(AuthError):
                await sync.on_checkout_return(trial_started=True)

    @pytest.mark.asyncio
    async def test_close_cancels_pending_reconcile(self):
        def handler(request):
            return httpx.Response(200, json=view(True))

        async with self._client(handler) as client:
            sync = ClientStateSync(client, "token", reconcile_delay=10)
            await sync.on_checkout_return(trial_started=True)
            await sync.close()

        assert sync._task is None

    def test_snapshot_from_response(self):
        snapshot = SubscriptionSnapshot.from_response(json.loads(json.dumps(view(False))))

        assert snapshot.subscribed is True
        assert snapshot.subscription_end == NOW + timedelta(days=3)
        assert snapshot.remaining_label == "3 days 0 hours"
