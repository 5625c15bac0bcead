"""Tests for the subscription management endpoints with mocked Stripe calls."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.snapshot import SubscriptionSnapshot, ts_to_naive
from app.services.subscription_service import get_subscription_by_stripe_id


def _snapshot(
    sub_id: str = "sub_x",
    price_id: str = "price_test_pro_monthly",
    status: str = "active",
    cancel_at_period_end: bool = False,
) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        id=sub_id,
        customer_id="cus_test_123",
        status=status,
        raw_status=status,
        price_id=price_id,
        item_id="si_test_1",
        current_period_start=ts_to_naive(1700000000),
        current_period_end=ts_to_naive(1702600000),
        cancel_at_period_end=cancel_at_period_end,
    )


class TestCancelEndpoint:
    @pytest.mark.asyncio
    async def test_cancel(self, client: AsyncClient, db_session: AsyncSession, make_subscription):
        await make_subscription(stripe_subscription_id="sub_x")

        with patch(
            "app.billing.reconciliation.update_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(cancel_at_period_end=True),
        ):
            response = await client.post("/api/cancel-subscription", json={"subscriptionId": "sub_x"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["cancelAt"] == "2023-12-15T00:26:40"
        assert body["subscription"]["id"] == "sub_x"
        assert body["subscription"]["cancelAtPeriodEnd"] is True
        assert (await get_subscription_by_stripe_id(db_session, "sub_x")).cancel_at_period_end

    @pytest.mark.asyncio
    async def test_missing_subscription_id(self, client: AsyncClient):
        response = await client.post("/api/cancel-subscription", json={})
        assert response.status_code == 400


class TestReactivateEndpoint:
    @pytest.mark.asyncio
    async def test_not_scheduled(self, client: AsyncClient):
        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(cancel_at_period_end=False),
        ):
            response = await client.post(
                "/api/reactivate-subscription", json={"subscriptionId": "sub_x"}
            )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "Subscription is not scheduled for cancellation"
        assert detail["subscription"]["id"] == "sub_x"

    @pytest.mark.asyncio
    async def test_reactivate(self, client: AsyncClient):
        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(cancel_at_period_end=True),
            ),
            patch(
                "app.billing.reconciliation.update_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(cancel_at_period_end=False),
            ),
        ):
            response = await client.post(
                "/api/reactivate-subscription", json={"subscriptionId": "sub_x"}
            )

        assert response.status_code == 200
        assert response.json()["subscription"]["cancelAtPeriodEnd"] is False


class TestDowngradeEndpoint:
    @pytest.mark.asyncio
    async def test_already_on_plan(self, client: AsyncClient):
        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(price_id="price_test_pro_monthly"),
            ),
            patch(
                "app.billing.reconciliation.update_subscription", new_callable=AsyncMock
            ) as mock_update,
        ):
            response = await client.post(
                "/api/downgrade-subscription",
                json={"subscriptionId": "sub_x", "targetPlan": "pro"},
            )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "Subscription is already on pro plan"
        mock_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_downgrade_to_free(self, client: AsyncClient):
        with patch(
            "app.billing.reconciliation.update_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(cancel_at_period_end=True),
        ):
            response = await client.post(
                "/api/downgrade-subscription",
                json={"subscriptionId": "sub_x", "targetPlan": "free"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "cancel"
        assert body["targetPlan"] == "free"
        assert body["effectiveDate"] == "2023-12-15T00:26:40"


class TestSyncEndpoint:
    @pytest.mark.asyncio
    async def test_free_user_needs_no_sync(self, client: AsyncClient, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, plan="free")

        response = await client.post("/api/sync-subscription", json={"userId": str(user_id)})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["needsSync"] is False

    @pytest.mark.asyncio
    async def test_no_subscription(self, client: AsyncClient):
        response = await client.post("/api/sync-subscription", json={"userId": str(uuid.uuid4())})
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "No subscription found"

    @pytest.mark.asyncio
    async def test_invalid_user_id(self, client: AsyncClient):
        response = await client.post("/api/sync-subscription", json={"userId": "not-a-uuid"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_price_is_server_error(self, client: AsyncClient, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, stripe_subscription_id="sub_x")

        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(price_id="price_legacy"),
        ):
            response = await client.post("/api/sync-subscription", json={"userId": str(user_id)})

        assert response.status_code == 500
        assert response.json()["detail"]["priceId"] == "price_legacy"


class TestCleanupEndpoint:
    @pytest.mark.asyncio
    async def test_cleanup(self, client: AsyncClient, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, plan="free")
        await make_subscription(user_id=user_id, plan="pro", stripe_subscription_id="sub_x")

        response = await client.post("/api/cleanup-subscriptions", json={"userId": str(user_id)})

        assert response.status_code == 200
        body = response.json()
        assert body["keptSubscription"] == "pro"
        assert body["deactivatedCount"] == 1
        assert body["deactivatedPlans"] == ["free"]
