"""
Integration tests for the Stripe webhook endpoint.

Tests:
- Status codes for bad signatures, malformed bodies and transient failures
- The trial lifecycle driven end to end through webhook deliveries
- Duplicate deliveries and out-of-order delivery
- Events whose owner cannot be resolved are parked
"""

from datetime import timedelta
from typing import Any

import pytest
from fastapi import status
from httpx import AsyncClient
from sqlalchemy import func, select

from core.clock import parse_iso
from core.errors import ExternalServiceError
from infrastructure.database.models import ProcessedEvent, SubscriptionRecord, UnmatchedBillingEvent

from conftest import encode_event, sign_payload, stripe_event, subscription_object

CUSTOMER_ID = "cus_member"
SUBSCRIPTION_ID = "sub_member"


async def deliver(client: AsyncClient, envelope: Any):
    body, signature = encode_event(envelope)
    return await client.post(
        "/webhook",
        content=body,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


@pytest.fixture
def stripe_customer(gateway, profile):
    """The test member as Stripe knows them."""
    gateway.customers[CUSTOMER_ID] = {"email": profile.email, "user_id": profile.id, "name": profile.name}
    return CUSTOMER_ID


def checkout_completed(profile, clock, event_id="evt_checkout"):
    return stripe_event(
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": CUSTOMER_ID,
            "subscription": SUBSCRIPTION_ID,
            "client_reference_id": profile.id,
            "customer_details": {"email": profile.email},
        },
        clock.now,
        event_id=event_id,
    )


def subscription_updated(clock, status_: str, period_end, event_id=None, at=None):
    return stripe_event(
        "customer.subscription.updated",
        subscription_object(SUBSCRIPTION_ID, CUSTOMER_ID, status_, period_end),
        at or clock.now,
        event_id=event_id,
    )


async def subscription(client: AsyncClient, headers: dict) -> dict:
    response = await client.get("/billing/subscription", headers=headers)
    assert response.status_code == status.HTTP_200_OK
    return response.json()


async def processed_count(session_factory, event_id: str) -> int:
    async with session_factory() as db:
        return await db.scalar(
            select(func.count()).select_from(ProcessedEvent).where(ProcessedEvent.event_id == event_id)
        )


class TestWebhookRejections:
    """Deliveries that must be refused with 400."""

    @pytest.mark.asyncio
    async def test_missing_signature(self, async_client: AsyncClient, clock):
        body, _ = encode_event(stripe_event("invoice.paid", {"id": "in_1"}, clock.now))

        response = await async_client.post("/webhook", content=body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Invalid signature"}

    @pytest.mark.asyncio
    async def test_invalid_signature(self, async_client: AsyncClient, clock):
        body, _ = encode_event(stripe_event("invoice.paid", {"id": "in_1"}, clock.now))

        response = await async_client.post(
            "/webhook",
            content=body,
            headers={"Stripe-Signature": sign_payload(body, secret="whsec_wrong_secret_value")},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Invalid signature"}

    @pytest.mark.asyncio
    async def test_malformed_body(self, async_client: AsyncClient):
        body = b'{"id": "evt_1"}'

        response = await async_client.post("/webhook", content=body, headers={"Stripe-Signature": sign_payload(body)})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Invalid payload"}

    @pytest.mark.asyncio
    async def test_rejected_delivery_is_not_recorded(self, async_client: AsyncClient, session_factory, clock):
        envelope = stripe_event("invoice.paid", {"id": "in_1"}, clock.now, event_id="evt_bad_sig")
        body, _ = encode_event(envelope)

        await async_client.post("/webhook", content=body, headers={"Stripe-Signature": "t=1,v1=deadbeef"})

        assert await processed_count(session_factory, "evt_bad_sig") == 0


class TestTrialLifecycle:
    """The trial lifecycle through real webhook deliveries."""

    @pytest.mark.asyncio
    async def test_checkout_completed_starts_trial(
        self, async_client: AsyncClient, gateway, profile, clock, auth_headers
    ):
        trial_end = clock.now + timedelta(days=3)
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", trial_end)

        response = await deliver(async_client, checkout_completed(profile, clock))

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"received": True, "decision": "applied"}

        view = await subscription(async_client, auth_headers)
        assert view["subscribed"] is True
        assert view["tier"] == "premium"
        assert view["status"] == "trialing"
        assert view["provisional"] is False
        assert parse_iso(view["subscription_end"]) == trial_end
        assert parse_iso(view["trial_started_at"]) == clock.now
        assert view["trial_ended_at"] is None
        assert view["has_access"] is True
        assert view["countdown"]["remaining_label"] == "3 days 0 hours"

    @pytest.mark.asyncio
    async def test_conversion_past_due_and_deletion(
        self, async_client: AsyncClient, gateway, profile, clock, auth_headers, stripe_customer
    ):
        started = clock.now
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", started + timedelta(days=3))
        await deliver(async_client, checkout_completed(profile, clock))

        # Trial converts to a paid subscription
        converted_at = clock.advance(days=3)
        response = await deliver(
            async_client, subscription_updated(clock, "active", converted_at + timedelta(days=30))
        )
        assert response.json()["decision"] == "applied"
        view = await subscription(async_client, auth_headers)
        assert view["status"] == "active"
        assert view["subscribed"] is True
        assert parse_iso(view["trial_started_at"]) == started
        assert parse_iso(view["trial_ended_at"]) == converted_at

        # Renewal payment fails
        clock.advance(days=30)
        await deliver(async_client, subscription_updated(clock, "past_due", clock.now))
        view = await subscription(async_client, auth_headers)
        assert view["subscribed"] is False
        assert view["tier"] == "none"
        assert parse_iso(view["trial_started_at"]) == started
        access = await async_client.get("/membership/access", headers=auth_headers)
        assert access.status_code == status.HTTP_403_FORBIDDEN

        # Subscription is deleted
        clock.advance(days=1)
        response = await deliver(
            async_client,
            stripe_event(
                "customer.subscription.deleted",
                subscription_object(SUBSCRIPTION_ID, CUSTOMER_ID, "canceled", None),
                clock.now,
            ),
        )
        assert response.json()["decision"] == "applied"
        view = await subscription(async_client, auth_headers)
        assert view["status"] == "canceled"
        assert view["subscribed"] is False
        assert view["subscription_end"] is None
        assert parse_iso(view["trial_ended_at"]) == converted_at

    @pytest.mark.asyncio
    async def test_deleting_a_trial_stamps_trial_end(
        self, async_client: AsyncClient, gateway, profile, clock, auth_headers, stripe_customer
    ):
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", clock.now + timedelta(days=3))
        await deliver(async_client, checkout_completed(profile, clock))

        clock.advance(hours=5)
        await deliver(
            async_client,
            stripe_event(
                "customer.subscription.deleted",
                subscription_object(SUBSCRIPTION_ID, CUSTOMER_ID, "canceled", None),
                clock.now,
            ),
        )

        view = await subscription(async_client, auth_headers)
        assert view["subscribed"] is False
        assert view["tier"] == "none"
        assert parse_iso(view["trial_ended_at"]) == clock.now

    @pytest.mark.asyncio
    async def test_invoice_paid_extends_subscription(
        self, async_client: AsyncClient, gateway, profile, clock, auth_headers, stripe_customer
    ):
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", clock.now + timedelta(days=3))
        await deliver(async_client, checkout_completed(profile, clock))

        clock.advance(days=3)
        renewed_end = clock.now + timedelta(days=30)
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "active", renewed_end)
        response = await deliver(
            async_client,
            stripe_event("invoice.paid", {"id": "in_1", "customer": CUSTOMER_ID, "subscription": SUBSCRIPTION_ID}, clock.now),
        )

        assert response.json()["decision"] == "applied"
        view = await subscription(async_client, auth_headers)
        assert view["status"] == "active"
        assert parse_iso(view["subscription_end"]) == renewed_end


class TestDeliverySemantics:
    """Duplicates, ordering, ignored types and transient failures."""

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_acknowledged_once(
        self, async_client: AsyncClient, gateway, profile, clock, session_factory
    ):
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", clock.now + timedelta(days=3))
        envelope = checkout_completed(profile, clock, event_id="evt_once")

        first = await deliver(async_client, envelope)
        second = await deliver(async_client, envelope)

        assert first.status_code == status.HTTP_200_OK
        assert first.json()["decision"] == "applied"
        assert second.status_code == status.HTTP_200_OK
        assert second.json() == {"received": True, "duplicate": True}
        assert await processed_count(session_factory, "evt_once") == 1

    @pytest.mark.asyncio
    async def test_out_of_order_delivery_keeps_latest_state(
        self, async_client: AsyncClient, gateway, profile, clock, auth_headers, stripe_customer
    ):
        trialing_at = clock.now
        active_at = clock.now + timedelta(hours=1)
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", trialing_at + timedelta(days=3))

        late = await deliver(
            async_client,
            subscription_updated(clock, "active", active_at + timedelta(days=30), at=active_at),
        )
        early = await deliver(async_client, checkout_completed(profile, clock))

        assert late.json()["decision"] == "applied"
        assert early.status_code == status.HTTP_200_OK
        assert early.json()["decision"] == "ignored"
        view = await subscription(async_client, auth_headers)
        assert view["status"] == "active"
        assert view["subscribed"] is True
        assert parse_iso(view["trial_started_at"]) == clock.now
        assert parse_iso(view["trial_ended_at"]) == clock.now

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(self, async_client: AsyncClient, clock, session_factory):
        envelope = stripe_event("customer.updated", {"id": CUSTOMER_ID}, clock.now, event_id="evt_other")

        response = await deliver(async_client, envelope)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"received": True, "ignored": True}
        assert await processed_count(session_factory, "evt_other") == 1

    @pytest.mark.asyncio
    async def test_gateway_failure_asks_for_redelivery(
        self, async_client: AsyncClient, gateway, profile, clock, session_factory, auth_headers
    ):
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", clock.now + timedelta(days=3))
        envelope = checkout_completed(profile, clock, event_id="evt_retry")
        gateway.fail_with = ExternalServiceError("Payment gateway unavailable during subscription retrieve")

        failed = await deliver(async_client, envelope)

        assert failed.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert "error" in failed.json()
        assert await processed_count(session_factory, "evt_retry") == 0

        gateway.fail_with = None
        retried = await deliver(async_client, envelope)

        assert retried.status_code == status.HTTP_200_OK
        assert retried.json()["decision"] == "applied"
        assert (await subscription(async_client, auth_headers))["subscribed"] is True


class TestUnmatchedEvents:
    """Events for customers no member can be matched to."""

    @pytest.mark.asyncio
    async def test_unknown_customer_is_parked(self, async_client: AsyncClient, clock, session_factory):
        envelope = stripe_event(
            "customer.subscription.updated",
            subscription_object("sub_stranger", "cus_stranger", "active", clock.now + timedelta(days=30)),
            clock.now,
            event_id="evt_stranger",
        )

        response = await deliver(async_client, envelope)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"received": True, "parked": True}
        async with session_factory() as db:
            parked = (await db.execute(select(UnmatchedBillingEvent))).scalars().all()
            records = (await db.execute(select(SubscriptionRecord))).scalars().all()
        assert [p.event_id for p in parked] == ["evt_stranger"]
        assert parked[0].customer_id == "cus_stranger"
        assert parked[0].resolved_at is None
        assert records == []

        again = await deliver(async_client, envelope)
        assert again.json() == {"received": True, "duplicate": True}

    @pytest.mark.asyncio
    async def test_customer_matched_by_email(
        self, async_client: AsyncClient, gateway, profile, clock, auth_headers
    ):
        gateway.customers["cus_by_email"] = {"email": profile.email.upper(), "user_id": None, "name": None}

        response = await deliver(
            async_client,
            stripe_event(
                "customer.subscription.created",
                subscription_object("sub_by_email", "cus_by_email", "trialing", clock.now + timedelta(days=3)),
                clock.now,
            ),
        )

        assert response.json()["decision"] == "applied"
        view = await subscription(async_client, auth_headers)
        assert view["status"] == "trialing"

    @pytest.mark.asyncio
    async def test_checkout_for_member_linked_elsewhere_is_parked(
        self, async_client: AsyncClient, gateway, profile, clock, db_session
    ):
        profile.external_customer_id = "cus_original"
        await db_session.commit()
        gateway.add_subscription(SUBSCRIPTION_ID, CUSTOMER_ID, "trialing", clock.now + timedelta(days=3))

        response = await deliver(async_client, checkout_completed(profile, clock))

        assert response.json() == {"received": True, "parked": True}

    @pytest.mark.asyncio
    async def test_customer_recorded_on_two_members_uses_latest_record(
        self, async_client: AsyncClient, profile, other_profile, clock, db_session, auth_headers
    ):
        db_session.add_all([
            SubscriptionRecord(
                user_id=other_profile.id, email=other_profile.email, external_customer_id="cus_shared",
                updated_at=clock.now - timedelta(days=1),
            ),
            SubscriptionRecord(
                user_id=profile.id, email=profile.email, external_customer_id="cus_shared",
                updated_at=clock.now - timedelta(hours=1),
            ),
        ])
        await db_session.commit()

        response = await deliver(
            async_client,
            stripe_event(
                "customer.subscription.updated",
                subscription_object("sub_shared", "cus_shared", "active", clock.now + timedelta(days=30)),
                clock.now,
            ),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["decision"] == "applied"
        view = await subscription(async_client, auth_headers)
        assert view["status"] == "active"
        assert view["subscribed"] is True
