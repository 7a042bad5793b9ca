"""
Post-checkout client state sync.

When the member lands back from checkout the client:

1. records an optimistic trial through ``POST /billing/trial/confirm`` so the
   UI unlocks right away;
2. after a short delay, reads the canonical state back from
   ``GET /billing/subscription`` until the server stops reporting the record
   as provisional (canonical state always wins over the local guess);
3. if the webhook has still not confirmed anything when the window closes,
   asks the server to re-pull from the gateway with ``POST /billing/reconcile``.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from core.clock import parse_iso
from core.errors import AuthError, ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Client copy of the server's subscription view."""

    subscribed: bool
    tier: str
    status: str
    subscription_end: datetime | None
    provisional: bool
    has_access: bool
    trial_started_at: datetime | None = None
    trial_ended_at: datetime | None = None
    remaining_label: str | None = None
    expiring_soon: bool = False

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SubscriptionSnapshot":
        countdown = data.get("countdown") or {}
        return cls(
            subscribed=bool(data.get("subscribed")),
            tier=data.get("tier", "none"),
            status=data.get("status", "none"),
            subscription_end=parse_iso(data.get("subscription_end")),
            provisional=bool(data.get("provisional")),
            has_access=bool(data.get("has_access")),
            trial_started_at=parse_iso(data.get("trial_started_at")),
            trial_ended_at=parse_iso(data.get("trial_ended_at")),
            remaining_label=countdown.get("remaining_label"),
            expiring_soon=bool(countdown.get("expiring_soon")),
        )


class ClientStateSync:
    """Drives the optimistic write and the reconciliation read after checkout."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        reconcile_delay: float = 1.0,
        poll_interval: float = 2.0,
        confirm_window: float = 30.0,
        on_update: Callable[[SubscriptionSnapshot], None] | None = None,
    ):
        """
        Args:
            client: HTTP client pointed at the membership API
            access_token: Member's bearer token
            reconcile_delay: Seconds to wait before the first canonical read
            poll_interval: Seconds between canonical reads
            confirm_window: Seconds to wait for a webhook before asking for a re-pull
            on_update: Called with every snapshot the sync adopts
        """
        self._client = client
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self.reconcile_delay = reconcile_delay
        self.poll_interval = poll_interval
        self.confirm_window = confirm_window
        self._on_update = on_update
        self._task: asyncio.Task | None = None
        self.snapshot: SubscriptionSnapshot | None = None

    async def _request(self, method: str, path: str) -> SubscriptionSnapshot:
        try:
            response = await self._client.request(method, path, headers=self._headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            raise AuthError(response.json().get("error", "Not authenticated"))
        if response.status_code >= 400:
            raise ExternalServiceError(f"{method} {path} returned {response.status_code}")
        return SubscriptionSnapshot.from_response(response.json())

    def _adopt(self, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        self.snapshot = snapshot
        if self._on_update is not None:
            self._on_update(snapshot)
        return snapshot

    async def refresh(self) -> SubscriptionSnapshot:
        """Read the canonical state once."""
        return self._adopt(await self._request("GET", "/billing/subscription"))

    async def on_checkout_return(
        self,
        trial_started: bool,
        session_id: str | None = None,
    ) -> SubscriptionSnapshot | None:
        """
        Handle the checkout success redirect.

        Returns the optimistic snapshot, or None when the redirect does not
        describe a started trial.
        """
        if not trial_started and not session_id:
            return None

        snapshot = self._adopt(await self._request("POST", "/billing/trial/confirm"))
        logger.info("Trial confirmation recorded (provisional=%s)", snapshot.provisional)

        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = asyncio.create_task(self._reconcile(), name="membership-reconcile")
        return snapshot

    async def _reconcile(self) -> SubscriptionSnapshot | None:
        loop = asyncio.get_running_loop()
        await asyncio.sleep(self.reconcile_delay)
        deadline = loop.time() + self.confirm_window

        while True:
            try:
                snapshot = await self.refresh()
                if not snapshot.provisional:
                    logger.info("Canonical membership state received: %s", snapshot.status)
                    return snapshot
            except ExternalServiceError as e:
                logger.warning("Membership read failed, will retry: %s", e.message)

            if loop.time() + self.poll_interval > deadline:
                break
            await asyncio.sleep(self.poll_interval)

        logger.info("No webhook confirmation within %.0fs, requesting reconciliation", self.confirm_window)
        try:
            return self._adopt(await self._request("POST", "/billing/reconcile"))
        except ExternalServiceError as e:
            logger.warning("Reconciliation request failed: %s", e.message)
            return self.snapshot

    async def wait_reconciled(self) -> SubscriptionSnapshot | None:
        """Wait for the pending reconciliation, if any, and return its result."""
        if self._task is None:
            return self.snapshot
        return await self._task

    async def close(self) -> None:
        """Cancel any pending reconciliation."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
