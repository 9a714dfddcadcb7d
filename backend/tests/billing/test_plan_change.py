"""Tests for plan change preview and execution."""

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.errors import (
    ConcurrencyConflict,
    GatewayError,
    GatewayTimeout,
    InvalidPlanTransition,
    PlanChangeLimitExceeded,
    PlanChangePending,
    PlanNotFound,
    SubscriptionNotActive,
    SubscriptionNotFound,
)
from app.modules.billing.models import (
    ChangeDirection,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    PlanChange,
    PlanChangeStatus,
    Subscription,
    SubscriptionStatus,
    WalletTransaction,
)
from app.modules.billing.plan_change import PlanChangeService
from app.modules.billing.wallet import WalletService

from conftest import NOW, FakeGateway, create_subscription


async def reload_subscription(session, tenant_id) -> Subscription:
    result = await session.execute(select(Subscription).where(Subscription.tenant_id == tenant_id))
    return result.scalar_one()


async def tenant_invoices(session, tenant_id) -> list[Invoice]:
    result = await session.execute(select(Invoice).where(Invoice.tenant_id == tenant_id))
    return list(result.scalars().all())


async def tenant_changes(session, tenant_id) -> list[PlanChange]:
    result = await session.execute(
        select(PlanChange).where(PlanChange.tenant_id == tenant_id).order_by(PlanChange.created_at)
    )
    return list(result.scalars().all())


class TestPreview:

    @pytest.mark.asyncio
    async def test_preview_prices_upgrade_without_mutation(self, session, gateway, basic_subscription) -> None:
        service = PlanChangeService(session, gateway)

        preview = await service.preview(basic_subscription.tenant_id, "pro", now=NOW)

        assert preview.current_plan.code == "basic"
        assert preview.target_plan.code == "pro"
        assert preview.result.direction == ChangeDirection.UPGRADE
        # IDR is charged in whole units
        assert preview.amount_payable == Decimal("134.00")
        assert preview.result.amount_due == Decimal("133.33")
        assert await tenant_invoices(session, basic_subscription.tenant_id) == []
        assert await tenant_changes(session, basic_subscription.tenant_id) == []
        assert gateway.charged_orders == []

    @pytest.mark.asyncio
    async def test_preview_is_repeatable(self, session, gateway, pro_subscription) -> None:
        service = PlanChangeService(session, gateway)

        first = await service.preview(pro_subscription.tenant_id, "basic", now=NOW)
        second = await service.preview(pro_subscription.tenant_id, "basic", now=NOW)

        assert first.result == second.result
        assert first.result.credit_amount == Decimal("66.67")

    @pytest.mark.asyncio
    async def test_preview_unknown_plan(self, session, gateway, basic_subscription) -> None:
        with pytest.raises(PlanNotFound):
            await PlanChangeService(session, gateway).preview(
                basic_subscription.tenant_id, "platinum", now=NOW
            )

    @pytest.mark.asyncio
    async def test_preview_inactive_plan(self, session, gateway, basic_subscription) -> None:
        with pytest.raises(PlanNotFound):
            await PlanChangeService(session, gateway).preview(
                basic_subscription.tenant_id, "legacy", now=NOW
            )

    @pytest.mark.asyncio
    async def test_preview_same_plan(self, session, gateway, basic_subscription) -> None:
        with pytest.raises(InvalidPlanTransition):
            await PlanChangeService(session, gateway).preview(
                basic_subscription.tenant_id, "basic", now=NOW
            )

    @pytest.mark.asyncio
    async def test_preview_without_subscription(self, session, gateway, plans) -> None:
        with pytest.raises(SubscriptionNotFound):
            await PlanChangeService(session, gateway).preview(uuid.uuid4(), "pro", now=NOW)


class TestPreviewMatchesExecute:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "from_plan,to_plan",
        [
            ("basic", "pro"),
            ("free", "enterprise"),
            ("pro", "basic"),
            ("enterprise", "free"),
        ],
    )
    @pytest.mark.parametrize("elapsed_days", [0, 1, 10, 29, 30, 45])
    async def test_execute_charges_what_preview_quoted(
        self, session, plans, from_plan, to_plan, elapsed_days
    ) -> None:
        subscription = await create_subscription(session, from_plan)
        now = subscription.current_period_start + timedelta(days=elapsed_days)
        service = PlanChangeService(session, FakeGateway())

        preview = await service.preview(subscription.tenant_id, to_plan, now=now)
        outcome = await service.execute(subscription.tenant_id, to_plan, now=now)

        assert outcome.amount_due == preview.amount_payable
        assert outcome.credit_amount == preview.result.credit_amount
        assert outcome.direction == preview.result.direction


class TestUpgrade:

    @pytest.mark.asyncio
    async def test_upgrade_issues_pending_invoice_and_keeps_plan(
        self, session, gateway, basic_subscription
    ) -> None:
        tenant_id = basic_subscription.tenant_id

        outcome = await PlanChangeService(session, gateway).execute(tenant_id, "pro", now=NOW)

        assert outcome.status == PlanChangeStatus.PENDING
        assert outcome.amount_due == Decimal("134.00")
        assert outcome.session_token.startswith("tok-")
        assert outcome.redirect_url is not None

        invoices = await tenant_invoices(session, tenant_id)
        assert len(invoices) == 1
        invoice = invoices[0]
        assert invoice.type == InvoiceType.PLAN_CHANGE.value
        assert invoice.status == InvoiceStatus.PENDING.value
        assert invoice.amount == Decimal("134.00")
        assert invoice.target_plan_code == "pro"
        assert invoice.gateway_session_token == outcome.session_token
        assert invoice.external_id == invoice.invoice_number
        assert gateway.charged_orders == [invoice.invoice_number]

        subscription = await reload_subscription(session, tenant_id)
        assert subscription.plan_code == "basic"
        assert subscription.status == SubscriptionStatus.ACTIVE.value

        changes = await tenant_changes(session, tenant_id)
        assert [c.status for c in changes] == [PlanChangeStatus.PENDING.value]
        assert changes[0].invoice_id == invoice.id

    @pytest.mark.asyncio
    async def test_second_upgrade_blocked_while_invoice_payable(
        self, session, gateway, basic_subscription
    ) -> None:
        tenant_id = basic_subscription.tenant_id
        service = PlanChangeService(session, gateway)
        await service.execute(tenant_id, "pro", now=NOW)

        with pytest.raises(PlanChangePending):
            await service.execute(tenant_id, "enterprise", now=NOW + timedelta(minutes=5))

        assert len(await tenant_invoices(session, tenant_id)) == 1

    @pytest.mark.asyncio
    async def test_stale_pending_invoice_does_not_block(
        self, session, gateway, basic_subscription
    ) -> None:
        tenant_id = basic_subscription.tenant_id
        service = PlanChangeService(session, gateway)
        await service.execute(tenant_id, "pro", now=NOW)

        later = NOW + timedelta(minutes=settings.PLAN_CHANGE_PENDING_TTL_MINUTES + 1)
        outcome = await service.execute(tenant_id, "enterprise", now=later)

        assert outcome.status == PlanChangeStatus.PENDING
        assert len(await tenant_invoices(session, tenant_id)) == 2

    @pytest.mark.asyncio
    async def test_gateway_rejection_fails_invoice_and_change(self, session, basic_subscription) -> None:
        tenant_id = basic_subscription.tenant_id
        gateway = FakeGateway(charge_error=GatewayError("card network down"))

        with pytest.raises(GatewayError):
            await PlanChangeService(session, gateway).execute(tenant_id, "pro", now=NOW)

        invoices = await tenant_invoices(session, tenant_id)
        assert [i.status for i in invoices] == [InvoiceStatus.FAILED.value]
        assert invoices[0].failure_reason == "card network down"
        changes = await tenant_changes(session, tenant_id)
        assert [c.status for c in changes] == [PlanChangeStatus.FAILED.value]
        assert (await reload_subscription(session, tenant_id)).plan_code == "basic"

    @pytest.mark.asyncio
    async def test_gateway_timeout_leaves_invoice_pending_and_unpayable(
        self, session, basic_subscription
    ) -> None:
        tenant_id = basic_subscription.tenant_id
        gateway = FakeGateway(charge_error=GatewayTimeout())
        service = PlanChangeService(session, gateway)

        with pytest.raises(GatewayTimeout):
            await service.execute(tenant_id, "pro", now=NOW)

        invoices = await tenant_invoices(session, tenant_id)
        assert len(invoices) == 1
        assert invoices[0].status == InvoiceStatus.PENDING.value
        assert invoices[0].gateway_session_token is None
        assert not invoices[0].is_payable

        # The unpayable invoice does not block a retry
        gateway.charge_error = None
        outcome = await service.execute(tenant_id, "pro", now=NOW + timedelta(seconds=30))
        assert outcome.status == PlanChangeStatus.PENDING

    @pytest.mark.asyncio
    async def test_slow_gateway_is_bounded_by_timeout(self, session, basic_subscription) -> None:
        tenant_id = basic_subscription.tenant_id
        gateway = FakeGateway()
        fast_settings = settings.model_copy(update={"GATEWAY_TIMEOUT_SECONDS": 0.01})

        async def never_answers(**kwargs):
            await asyncio.sleep(1)

        gateway.create_charge_session = never_answers
        with pytest.raises(GatewayTimeout):
            await PlanChangeService(session, gateway, fast_settings).execute(tenant_id, "pro", now=NOW)

        invoices = await tenant_invoices(session, tenant_id)
        assert [i.status for i in invoices] == [InvoiceStatus.PENDING.value]

    @pytest.mark.asyncio
    async def test_upgrade_after_cycle_end_charges_full_target_price(self, session, gateway, plans) -> None:
        subscription = await create_subscription(session, "basic")
        after_cycle = subscription.current_period_end + timedelta(days=1)

        outcome = await PlanChangeService(session, gateway).execute(
            subscription.tenant_id, "pro", now=after_cycle
        )

        assert outcome.amount_due == Decimal("200.00")
        assert outcome.status == PlanChangeStatus.PENDING

    @pytest.mark.asyncio
    async def test_upgrade_from_free_plan_charges_remaining_target_price(
        self, session, gateway, plans
    ) -> None:
        subscription = await create_subscription(session, "free")

        outcome = await PlanChangeService(session, gateway).execute(
            subscription.tenant_id, "basic", now=NOW
        )

        assert outcome.amount_due == Decimal("100.00")
        assert outcome.status == PlanChangeStatus.PENDING


class TestDowngrade:

    @pytest.mark.asyncio
    async def test_downgrade_applies_and_credits_wallet(self, session, gateway, pro_subscription) -> None:
        tenant_id = pro_subscription.tenant_id
        anchor = pro_subscription.current_period_start

        outcome = await PlanChangeService(session, gateway).execute(tenant_id, "basic", now=NOW)

        assert outcome.status == PlanChangeStatus.APPLIED
        assert outcome.credit_amount == Decimal("66.67")
        assert outcome.invoice_id is None
        assert gateway.charged_orders == []

        subscription = await reload_subscription(session, tenant_id)
        assert subscription.plan_code == "basic"
        assert subscription.current_period_start == anchor

        wallet = WalletService(session)
        transactions, total = await wallet.list_transactions(tenant_id)
        assert total == 1
        assert transactions[0].amount == Decimal("66.67")
        assert transactions[0].reason == "plan_downgrade"
        assert transactions[0].reference_type == "plan_change"
        assert transactions[0].reference_id == str(outcome.plan_change_id)
        assert await wallet.get_balance(tenant_id) == Decimal("66.67")

        changes = await tenant_changes(session, tenant_id)
        assert changes[0].status == PlanChangeStatus.APPLIED.value
        assert changes[0].wallet_transaction_id == transactions[0].id

    @pytest.mark.asyncio
    async def test_zero_credit_downgrade_writes_no_wallet_entry(self, session, gateway, pro_subscription) -> None:
        tenant_id = pro_subscription.tenant_id
        cycle_end = pro_subscription.current_period_end

        outcome = await PlanChangeService(session, gateway).execute(tenant_id, "basic", now=cycle_end)

        assert outcome.credit_amount == Decimal("0.00")
        _, total = await WalletService(session).list_transactions(tenant_id)
        assert total == 0
        assert (await reload_subscription(session, tenant_id)).plan_code == "basic"

    @pytest.mark.asyncio
    async def test_inactive_subscription_rejected(self, session, gateway, pro_subscription) -> None:
        tenant_id = pro_subscription.tenant_id
        pro_subscription.status = SubscriptionStatus.CANCELED.value
        await session.commit()

        with pytest.raises(SubscriptionNotActive):
            await PlanChangeService(session, gateway).execute(tenant_id, "basic", now=NOW)

        assert (await reload_subscription(session, tenant_id)).plan_code == "pro"


class TestChangeLimits:

    @pytest.mark.asyncio
    async def test_cooldown_between_changes(self, session, gateway, plans) -> None:
        subscription = await create_subscription(session, "enterprise")
        tenant_id = subscription.tenant_id
        service = PlanChangeService(session, gateway)
        await service.execute(tenant_id, "pro", now=NOW)

        with pytest.raises(PlanChangeLimitExceeded):
            await service.execute(tenant_id, "basic", now=NOW + timedelta(hours=1))

        assert (await reload_subscription(session, tenant_id)).plan_code == "pro"

    @pytest.mark.asyncio
    async def test_at_most_two_changes_per_cycle(self, session, gateway, plans) -> None:
        subscription = await create_subscription(session, "enterprise")
        tenant_id = subscription.tenant_id
        service = PlanChangeService(session, gateway)
        cooldown = timedelta(hours=settings.PLAN_CHANGE_COOLDOWN_HOURS, minutes=1)

        await service.execute(tenant_id, "pro", now=NOW)
        await service.execute(tenant_id, "basic", now=NOW + cooldown)

        with pytest.raises(PlanChangeLimitExceeded):
            await service.execute(tenant_id, "free", now=NOW + 2 * cooldown)

        changes = await tenant_changes(session, tenant_id)
        assert [c.to_plan_code for c in changes] == ["pro", "basic"]

    @pytest.mark.asyncio
    async def test_failed_attempts_do_not_count(self, session, basic_subscription) -> None:
        tenant_id = basic_subscription.tenant_id
        failing = FakeGateway(charge_error=GatewayError())
        for _ in range(3):
            with pytest.raises(GatewayError):
                await PlanChangeService(session, failing).execute(tenant_id, "pro", now=NOW)

        outcome = await PlanChangeService(session, FakeGateway()).execute(tenant_id, "pro", now=NOW)
        assert outcome.status == PlanChangeStatus.PENDING


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_lost_version_race_is_a_retryable_conflict(self, session, gateway, pro_subscription) -> None:
        tenant_id = pro_subscription.tenant_id
        service = PlanChangeService(session, gateway)

        with patch.object(
            PlanChangeService,
            "_apply_immediately",
            AsyncMock(side_effect=StaleDataError("version mismatch")),
        ):
            with pytest.raises(ConcurrencyConflict) as exc_info:
                await service.execute(tenant_id, "basic", now=NOW)

        assert exc_info.value.retryable
        count = await session.execute(
            select(func.count(WalletTransaction.id)).where(WalletTransaction.tenant_id == tenant_id)
        )
        assert count.scalar() == 0
        assert (await reload_subscription(session, tenant_id)).plan_code == "pro"
