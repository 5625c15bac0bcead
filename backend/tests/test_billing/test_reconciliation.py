"""Tests for manual reconciliation: sync, cleanup, cancel, reactivate, downgrade."""

import uuid
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import (
    InvalidPlanChangeError,
    InvalidSubscriptionError,
    SubscriptionNotFoundError,
    UnknownPriceError,
)
from app.billing.reconciliation import (
    cancel_subscription,
    cleanup_user_subscriptions,
    downgrade_subscription,
    reactivate_subscription,
    sync_user_subscription,
)
from app.billing.snapshot import SubscriptionSnapshot, ts_to_naive
from app.database import utcnow
from app.models.subscription import UserSubscription
from app.services.subscription_service import (
    get_subscription_by_stripe_id,
    list_user_subscriptions,
)


class _StripeObj(SimpleNamespace):
    def __getitem__(self, key: str):
        return getattr(self, key)


def _snapshot(
    sub_id: str = "sub_test_123",
    price_id: str = "price_test_pro_monthly",
    status: str = "active",
    cancel_at_period_end: bool = False,
) -> SubscriptionSnapshot:
    return SubscriptionSnapshot.from_stripe(
        _StripeObj(
            id=sub_id,
            customer="cus_test_123",
            status=status,
            cancel_at_period_end=cancel_at_period_end,
            metadata={},
            items=_StripeObj(
                data=[
                    _StripeObj(
                        id="si_test_1",
                        price=_StripeObj(id=price_id),
                        current_period_start=1700000000,
                        current_period_end=1702600000,
                    )
                ]
            ),
        )
    )


def _missing_resource() -> stripe.InvalidRequestError:
    return stripe.InvalidRequestError(
        "No such subscription: 'sub_gone'", "id", code="resource_missing"
    )


async def _active_rows(db_session: AsyncSession, user_id: uuid.UUID):
    return await list_user_subscriptions(db_session, user_id, statuses=("active", "trialing"))


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


async def _reload(db_session: AsyncSession, subscription_id: uuid.UUID) -> UserSubscription | None:
    return await db_session.get(UserSubscription, subscription_id, populate_existing=True)


class TestSyncUserSubscription:
    @pytest.mark.asyncio
    async def test_no_subscription(self, db_session: AsyncSession):
        with pytest.raises(SubscriptionNotFoundError):
            await sync_user_subscription(db_session, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_free_user_without_stripe_rows(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, plan="free")

        with patch("app.billing.reconciliation.get_subscription", new_callable=AsyncMock) as mock_get:
            result = await sync_user_subscription(db_session, user_id)

        assert result.success is True
        assert result.needs_sync is False
        assert result.current_plan == "free"
        mock_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_string_null_is_treated_as_missing(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, plan="free", stripe_subscription_id="null")

        result = await sync_user_subscription(db_session, user_id)
        assert result.needs_sync is False

    @pytest.mark.asyncio
    async def test_switches_to_active_stripe_record(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        free_row = await make_subscription(user_id=user_id, plan="free")
        paid_row = await make_subscription(
            user_id=user_id,
            status="canceled",
            stripe_subscription_id="sub_paid",
            created_at=utcnow() - timedelta(days=3),
        )

        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(sub_id="sub_paid"),
        ):
            result = await sync_user_subscription(db_session, user_id)

        assert result.needs_sync is True
        assert result.old_plan == "free"
        assert result.new_plan == "pro"
        assert result.requires_page_reload is True

        active = await _active_rows(db_session, user_id)
        assert [row.id for row in active] == [paid_row.id]
        assert (await _reload(db_session, free_row.id)).status == "canceled"

    @pytest.mark.asyncio
    async def test_no_active_stripe_record(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, plan="free")
        await make_subscription(
            user_id=user_id,
            status="canceled",
            stripe_subscription_id="sub_old",
            created_at=utcnow() - timedelta(days=3),
        )

        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(sub_id="sub_old", status="canceled"),
        ):
            result = await sync_user_subscription(db_session, user_id)

        assert result.needs_sync is False
        assert result.current_plan == "free"

    @pytest.mark.asyncio
    async def test_invalid_stripe_id_format(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, stripe_subscription_id="cs_not_a_subscription")

        with pytest.raises(InvalidSubscriptionError) as exc_info:
            await sync_user_subscription(db_session, user_id)
        assert exc_info.value.status_code == 400
        assert exc_info.value.to_detail() == {
            "error": "Invalid Stripe subscription ID format",
            "needsSync": False,
        }

    @pytest.mark.asyncio
    async def test_already_in_sync_writes_nothing(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        row = await make_subscription(user_id=user_id, stripe_subscription_id="sub_test_123")
        updated_at = row.updated_at

        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(),
        ):
            result = await sync_user_subscription(db_session, user_id)

        assert result.needs_sync is False
        assert result.current_plan == "pro"
        assert (await _reload(db_session, row.id)).updated_at == updated_at

    @pytest.mark.asyncio
    async def test_plan_change(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, stripe_subscription_id="sub_test_123")

        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(price_id="price_test_unlimited_yearly", cancel_at_period_end=True),
        ):
            result = await sync_user_subscription(db_session, user_id)

        assert result.needs_sync is True
        assert result.old_plan == "pro"
        assert result.new_plan == "unlimited"
        assert result.changes.plan_changed is True
        assert result.changes.status_changed is False
        assert result.changes.cancel_changed is True

        subscription = await get_subscription_by_stripe_id(db_session, "sub_test_123")
        assert subscription.plan_name == "unlimited"
        assert subscription.cancel_at_period_end is True
        assert subscription.current_period_end == ts_to_naive(1702600000)

    @pytest.mark.asyncio
    async def test_conflicting_active_rows_are_resolved(
        self, db_session: AsyncSession, make_subscription
    ):
        user_id = uuid.uuid4()
        await make_subscription(
            user_id=user_id, plan="free", created_at=utcnow() - timedelta(days=10)
        )
        current = await make_subscription(user_id=user_id, stripe_subscription_id="sub_test_123")

        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(),
        ):
            result = await sync_user_subscription(db_session, user_id)

        assert result.needs_sync is True
        assert [row.id for row in await _active_rows(db_session, user_id)] == [current.id]

    @pytest.mark.asyncio
    async def test_deleted_in_stripe(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, stripe_subscription_id="sub_gone")

        with patch(
            "app.billing.reconciliation.get_subscription",
            new_callable=AsyncMock,
            side_effect=_missing_resource(),
        ):
            result = await sync_user_subscription(db_session, user_id)

        assert result.needs_sync is True
        assert result.current_status == "canceled"
        assert (await get_subscription_by_stripe_id(db_session, "sub_gone")).status == "canceled"

    @pytest.mark.asyncio
    async def test_other_stripe_errors_propagate(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, stripe_subscription_id="sub_test_123")

        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                side_effect=stripe.APIConnectionError("network down"),
            ),
            pytest.raises(stripe.APIConnectionError),
        ):
            await sync_user_subscription(db_session, user_id)

    @pytest.mark.asyncio
    async def test_unknown_price(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, stripe_subscription_id="sub_test_123")

        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(price_id="price_legacy"),
            ),
            pytest.raises(UnknownPriceError),
        ):
            await sync_user_subscription(db_session, user_id)


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------


class TestCleanupUserSubscriptions:
    @pytest.mark.asyncio
    async def test_nothing_to_clean(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        await make_subscription(user_id=user_id, plan="free")

        result = await cleanup_user_subscriptions(db_session, user_id)
        assert result.active_count == 1
        assert result.kept_subscription == "free"
        assert result.deactivated_count == 0

    @pytest.mark.asyncio
    async def test_no_subscriptions(self, db_session: AsyncSession):
        result = await cleanup_user_subscriptions(db_session, uuid.uuid4())
        assert result.active_count == 0
        assert result.kept_subscription is None

    @pytest.mark.asyncio
    async def test_keeps_stripe_linked_highest_plan(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        now = utcnow()
        await make_subscription(user_id=user_id, plan="free", created_at=now)
        await make_subscription(
            user_id=user_id,
            plan="pro",
            stripe_subscription_id="sub_pro",
            created_at=now - timedelta(days=1),
        )
        unlimited = await make_subscription(
            user_id=user_id,
            plan="unlimited",
            stripe_subscription_id="sub_unlimited",
            created_at=now - timedelta(days=2),
        )

        result = await cleanup_user_subscriptions(db_session, user_id)

        assert result.kept_subscription == "unlimited"
        assert result.deactivated_count == 2
        assert sorted(result.deactivated_plans) == ["free", "pro"]
        assert [row.id for row in await _active_rows(db_session, user_id)] == [unlimited.id]

    @pytest.mark.asyncio
    async def test_newest_wins_between_equal_rows(self, db_session: AsyncSession, make_subscription):
        user_id = uuid.uuid4()
        now = utcnow()
        await make_subscription(
            user_id=user_id, stripe_subscription_id="sub_old", created_at=now - timedelta(days=5)
        )
        newest = await make_subscription(user_id=user_id, stripe_subscription_id="sub_new", created_at=now)

        await cleanup_user_subscriptions(db_session, user_id)
        assert [row.id for row in await _active_rows(db_session, user_id)] == [newest.id]


# ---------------------------------------------------------------------------
# cancel / reactivate
# ---------------------------------------------------------------------------


class TestCancelAndReactivate:
    @pytest.mark.asyncio
    async def test_cancel_sets_flag(self, db_session: AsyncSession, make_subscription):
        await make_subscription(stripe_subscription_id="sub_test_123")

        with patch(
            "app.billing.reconciliation.update_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(cancel_at_period_end=True),
        ) as mock_update:
            snapshot = await cancel_subscription(db_session, "sub_test_123")

        mock_update.assert_awaited_once_with("sub_test_123", cancel_at_period_end=True)
        assert snapshot.cancel_at_period_end is True
        subscription = await get_subscription_by_stripe_id(db_session, "sub_test_123")
        assert subscription.cancel_at_period_end is True
        assert subscription.status == "active"

    @pytest.mark.asyncio
    async def test_cancel_without_local_row_still_succeeds(self, db_session: AsyncSession):
        with patch(
            "app.billing.reconciliation.update_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(sub_id="sub_elsewhere", cancel_at_period_end=True),
        ):
            snapshot = await cancel_subscription(db_session, "sub_elsewhere")
        assert snapshot.id == "sub_elsewhere"

    @pytest.mark.asyncio
    async def test_reactivate(self, db_session: AsyncSession, make_subscription):
        await make_subscription(stripe_subscription_id="sub_test_123", cancel_at_period_end=True)

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
            ) as mock_update,
        ):
            await reactivate_subscription(db_session, "sub_test_123")

        mock_update.assert_awaited_once_with("sub_test_123", cancel_at_period_end=False)
        subscription = await get_subscription_by_stripe_id(db_session, "sub_test_123")
        assert subscription.cancel_at_period_end is False

    @pytest.mark.asyncio
    async def test_reactivate_not_scheduled(self, db_session: AsyncSession):
        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(cancel_at_period_end=False),
            ),
            patch("app.billing.reconciliation.update_subscription", new_callable=AsyncMock) as mock_update,
            pytest.raises(InvalidSubscriptionError, match="not scheduled for cancellation"),
        ):
            await reactivate_subscription(db_session, "sub_test_123")
        mock_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_reactivate_inactive(self, db_session: AsyncSession):
        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(status="past_due", cancel_at_period_end=True),
            ),
            patch("app.billing.reconciliation.update_subscription", new_callable=AsyncMock) as mock_update,
            pytest.raises(InvalidSubscriptionError, match="not active"),
        ):
            await reactivate_subscription(db_session, "sub_test_123")
        mock_update.assert_not_called()


# ---------------------------------------------------------------------------
# downgrade
# ---------------------------------------------------------------------------


class TestDowngradeSubscription:
    @pytest.mark.asyncio
    async def test_invalid_target(self, db_session: AsyncSession):
        with pytest.raises(InvalidPlanChangeError, match="Invalid target plan"):
            await downgrade_subscription(db_session, "sub_test_123", "enterprise")

    @pytest.mark.asyncio
    async def test_to_free_cancels_at_period_end(self, db_session: AsyncSession, make_subscription):
        await make_subscription(stripe_subscription_id="sub_test_123")

        with patch(
            "app.billing.reconciliation.update_subscription",
            new_callable=AsyncMock,
            return_value=_snapshot(cancel_at_period_end=True),
        ) as mock_update:
            result = await downgrade_subscription(db_session, "sub_test_123", "free")

        mock_update.assert_awaited_once_with("sub_test_123", cancel_at_period_end=True)
        assert result.action == "cancel"
        assert result.target_plan == "free"
        assert result.effective_date == ts_to_naive(1702600000)
        assert (await get_subscription_by_stripe_id(db_session, "sub_test_123")).cancel_at_period_end

    @pytest.mark.asyncio
    async def test_same_plan_is_rejected_without_stripe_mutation(self, db_session: AsyncSession):
        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(price_id="price_test_pro_monthly"),
            ),
            patch("app.billing.reconciliation.update_subscription", new_callable=AsyncMock) as mock_update,
            pytest.raises(InvalidPlanChangeError) as exc_info,
        ):
            await downgrade_subscription(db_session, "sub_x", "pro")

        assert exc_info.value.message == "Subscription is already on pro plan"
        assert exc_info.value.status_code == 400
        mock_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_upgrade_is_rejected(self, db_session: AsyncSession):
        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(price_id="price_test_pro_monthly"),
            ),
            patch("app.billing.reconciliation.update_subscription", new_callable=AsyncMock) as mock_update,
            pytest.raises(InvalidPlanChangeError, match="upgrade"),
        ):
            await downgrade_subscription(db_session, "sub_x", "unlimited")
        mock_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_swaps_price_keeping_billing_cycle(self, db_session: AsyncSession, make_subscription):
        await make_subscription(plan="unlimited", stripe_subscription_id="sub_test_123")

        with (
            patch(
                "app.billing.reconciliation.get_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(price_id="price_test_unlimited_yearly"),
            ),
            patch(
                "app.billing.reconciliation.update_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(price_id="price_test_pro_yearly"),
            ) as mock_update,
        ):
            result = await downgrade_subscription(db_session, "sub_test_123", "pro")

        mock_update.assert_awaited_once_with(
            "sub_test_123",
            items=[{"id": "si_test_1", "price": "price_test_pro_yearly"}],
            proration_behavior="none",
            billing_cycle_anchor="unchanged",
        )
        assert result.action == "downgrade"
        assert result.target_plan == "pro"

        # The plan itself follows the customer.subscription.updated webhook
        subscription = await get_subscription_by_stripe_id(db_session, "sub_test_123")
        assert subscription.plan_name == "unlimited"

    @pytest.mark.asyncio
    async def test_database_failure_after_stripe_change_still_succeeds(
        self, db_session: AsyncSession
    ):
        from sqlalchemy.exc import OperationalError

        with (
            patch(
                "app.billing.reconciliation.update_subscription",
                new_callable=AsyncMock,
                return_value=_snapshot(cancel_at_period_end=True),
            ),
            patch(
                "app.billing.reconciliation.update_by_stripe_id",
                new_callable=AsyncMock,
                side_effect=OperationalError("UPDATE", {}, Exception("db down")),
            ),
        ):
            result = await downgrade_subscription(db_session, "sub_test_123", "free")

        assert result.success is True
        assert result.action == "cancel"
