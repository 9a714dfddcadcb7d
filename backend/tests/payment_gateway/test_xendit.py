"""Tests for the Xendit invoice adapter."""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.errors import InvalidWebhookPayload
from app.modules.payment_gateway.gateways.xendit import XenditGateway
from app.modules.payment_gateway.interface import GatewayConfig, GatewayPaymentStatus

CALLBACK_TOKEN = "xnd-callback-token"


def make_gateway(callback_token: str = CALLBACK_TOKEN) -> XenditGateway:
    return XenditGateway(
        GatewayConfig(
            provider="xendit",
            server_key="xnd_development_secret",
            callback_token=callback_token,
            sandbox=False,
            timeout_seconds=5.0,
        )
    )


class TestCallbackToken:

    def test_token_read_from_header_case_insensitively(self) -> None:
        gateway = make_gateway()

        assert gateway.extract_callback_token({}, {"X-Callback-Token": "abc"}) == "abc"
        assert gateway.extract_callback_token({}, {"x-callback-token": "abc"}) == "abc"
        assert gateway.extract_callback_token({}, {"content-type": "application/json"}) is None

    @pytest.mark.asyncio
    async def test_matching_token_is_valid(self) -> None:
        assert await make_gateway().verify_signature({}, CALLBACK_TOKEN) is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, "", "wrong-token", CALLBACK_TOKEN + "x"])
    async def test_other_tokens_are_invalid(self, token) -> None:
        assert await make_gateway().verify_signature({}, token) is False

    @pytest.mark.asyncio
    async def test_unconfigured_token_rejects_everything(self) -> None:
        assert await make_gateway(callback_token="").verify_signature({}, "") is False


class TestParseNotification:

    @pytest.mark.parametrize(
        "status,expected",
        [
            ("PAID", GatewayPaymentStatus.PAID),
            ("SETTLED", GatewayPaymentStatus.PAID),
            ("PENDING", GatewayPaymentStatus.PENDING),
            ("EXPIRED", GatewayPaymentStatus.EXPIRED),
            ("FAILED", GatewayPaymentStatus.FAILED),
            ("paid", GatewayPaymentStatus.PAID),
        ],
    )
    def test_status_mapping(self, status: str, expected: GatewayPaymentStatus) -> None:
        parsed = make_gateway().parse_notification(
            {"external_id": "TOP-1", "status": status, "amount": 50000}
        )

        assert parsed.status == expected

    def test_paid_amount_preferred_over_amount(self) -> None:
        parsed = make_gateway().parse_notification(
            {
                "id": "579c8d61f23fa4ca35e52da4",
                "external_id": "TOP-1",
                "status": "PAID",
                "amount": 50000,
                "paid_amount": 50000.5,
                "payment_method": "EWALLET",
            }
        )

        assert parsed.gross_amount == Decimal("50000.5")
        assert parsed.transaction_id == "579c8d61f23fa4ca35e52da4"
        assert parsed.payment_type == "EWALLET"

    def test_missing_status(self) -> None:
        with pytest.raises(InvalidWebhookPayload):
            make_gateway().parse_notification({"external_id": "TOP-1"})


class TestChargeSession:

    @pytest.mark.asyncio
    async def test_creates_invoice(self) -> None:
        response = MagicMock()
        response.content = b"{}"
        response.json.return_value = {
            "id": "579c8d61f23fa4ca35e52da4",
            "invoice_url": "https://checkout.xendit.co/web/579c8d61f23fa4ca35e52da4",
        }
        tenant_id = uuid.uuid4()

        with patch("app.modules.payment_gateway.interface.httpx.AsyncClient") as mock_cls:
            client = AsyncMock()
            client.request.return_value = response
            mock_cls.return_value.__aenter__.return_value = client

            session = await make_gateway().create_charge_session(
                invoice_id=uuid.uuid4(),
                order_id="TOP-1",
                amount=Decimal("50000.00"),
                currency="idr",
                tenant_id=tenant_id,
            )

        assert session.session_token == "579c8d61f23fa4ca35e52da4"
        assert session.redirect_url.startswith("https://checkout.xendit.co/")
        body = client.request.call_args.kwargs["json"]
        assert body["external_id"] == "TOP-1"
        assert body["currency"] == "IDR"
        assert body["metadata"]["tenant_id"] == str(tenant_id)
        assert client.request.call_args.kwargs["url"] == "https://api.xendit.co/v2/invoices"
