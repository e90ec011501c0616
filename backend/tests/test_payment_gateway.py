"""
Gateway adapter and payment configuration tests (no network: httpx.MockTransport, patched stripe).
"""
import hashlib
import pytest
import httpx
from unittest.mock import MagicMock, patch

from services.payment_gateway import (
    BoldGateway, StripeGateway, GatewayUnavailable, get_payment_gateway,
    build_order_id, parse_order_document_id,
)
from services.payment_config_service import (
    ConfigurationError, build_payment_config, compute_integrity_signature, get_public_app_url,
)

DOC_ID = "0f3c2a9b8d7e4f6a9b1c2d3e4f5a6b7c"


@pytest.fixture
def bold_env(monkeypatch):
    monkeypatch.setenv("BOLD_API_KEY", "bold_api_key")
    monkeypatch.setenv("BOLD_SECRET_KEY", "bold_secret")
    monkeypatch.setenv("BOLD_MERCHANT_ID", "merchant_1")
    monkeypatch.setenv("PUBLIC_APP_URL", "https://app.example.com/")
    monkeypatch.delenv("BOLD_CURRENCY", raising=False)


def _gateway(handler):
    return BoldGateway(transport=httpx.MockTransport(handler))


class TestOrderIds:

    def test_round_trip(self):
        order_id = build_order_id(DOC_ID, 1700000000123)
        assert order_id == f"DOC-{DOC_ID}-1700000000123"
        assert parse_order_document_id(order_id) == DOC_ID

    @pytest.mark.parametrize("bad", [None, "", "DOC-abc", "PAY-abc-1", "DOC--1", "DOC-abc-xyz", "DOC-a-b-1"])
    def test_malformed(self, bad):
        assert parse_order_document_id(bad) is None


class TestPaymentConfig:

    def test_config_contains_signature_and_redirect(self, bold_env):
        config = build_payment_config("DOC-x-1", 50000, "Poder", "ABC123DEF456")
        expected = hashlib.sha256(b"DOC-x-150000COPbold_secret").hexdigest()
        assert config["integritySignature"] == expected
        assert config["amount"] == "50000"
        assert config["currency"] == "COP"
        assert config["redirectionUrl"] == "https://app.example.com/?code=ABC123DEF456&payment=success"
        assert config["renderMode"] == "embedded"
        assert config["description"] == "Pago documento: Poder"

    def test_origin_overrides_public_url(self, bold_env):
        config = build_payment_config("DOC-x-1", 1000, "Poder", "TOKEN", origin="http://localhost:5173")
        assert config["redirectionUrl"].startswith("http://localhost:5173/?code=TOKEN")

    def test_missing_credentials(self, bold_env, monkeypatch):
        monkeypatch.delenv("BOLD_SECRET_KEY")
        with pytest.raises(ConfigurationError):
            build_payment_config("DOC-x-1", 1000, "Poder", "TOKEN")

    @pytest.mark.parametrize("order_id,amount", [("", 1000), ("DOC-x-1", 0), ("DOC-x-1", -5)])
    def test_invalid_parameters(self, bold_env, order_id, amount):
        with pytest.raises(ValueError):
            build_payment_config(order_id, amount, "Poder", "TOKEN")

    def test_public_url_must_be_http(self, monkeypatch):
        monkeypatch.setenv("PUBLIC_APP_URL", "app.example.com")
        with pytest.raises(ConfigurationError):
            get_public_app_url()

    def test_signature_helper(self):
        assert compute_integrity_signature("o", 1, "COP", "s") == hashlib.sha256(b"o1COPs").hexdigest()


class TestBoldGateway:

    @pytest.mark.asyncio
    async def test_lookup_approved(self, bold_env):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"notifications": [{"type": "SALE_APPROVED"}]})

        result = await _gateway(handler).lookup_payment_status("DOC-x-1")
        assert result.approved is True
        assert result.status == "SALE_APPROVED"
        assert seen["auth"] == "x-api-key bold_api_key"
        assert seen["params"] == {"is_external_reference": "true"}

    @pytest.mark.asyncio
    async def test_lookup_voided_sale_not_approved(self, bold_env):
        def handler(request):
            return httpx.Response(200, json={"notifications": [{"type": "VOID_APPROVED"}, {"type": "SALE_APPROVED"}]})

        assert (await _gateway(handler).lookup_payment_status("DOC-x-1")).approved is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(404, json={"message": "not found"}),
        httpx.Response(200, json={"notifications": []}),
        httpx.Response(200, text="<html>oops</html>"),
        httpx.Response(200, json={"notifications": [{"type": "SALE_REJECTED"}]}),
    ])
    async def test_lookup_non_approvals(self, bold_env, response):
        result = await _gateway(lambda request: response).lookup_payment_status("DOC-x-1")
        assert result.approved is False

    @pytest.mark.asyncio
    async def test_lookup_transport_error_is_not_approved(self, bold_env):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert (await _gateway(handler).lookup_payment_status("DOC-x-1")).approved is False

    @pytest.mark.asyncio
    async def test_lookup_without_api_key(self, monkeypatch):
        monkeypatch.delenv("BOLD_API_KEY", raising=False)
        calls = []
        result = await _gateway(lambda r: calls.append(r) or httpx.Response(200)).lookup_payment_status("DOC-x-1")
        assert result.approved is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_checkout_library_unreachable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timeout", request=request)

        with pytest.raises(GatewayUnavailable):
            await _gateway(handler).ensure_checkout_available()

    @pytest.mark.asyncio
    async def test_checkout_library_error_status(self):
        with pytest.raises(GatewayUnavailable):
            await _gateway(lambda r: httpx.Response(503)).ensure_checkout_available()
        await _gateway(lambda r: httpx.Response(200)).ensure_checkout_available()

    @pytest.mark.asyncio
    async def test_create_checkout_uses_backend_config(self, bold_env):
        document = {"id": DOC_ID, "token": "ABC123DEF456", "price": 50000, "document_type": "Poder"}
        config, reference = await BoldGateway().create_checkout("DOC-x-1", document)
        assert reference is None
        assert config["orderId"] == "DOC-x-1"
        assert config["apiKey"] == "bold_api_key"

    def test_parse_redirect(self):
        gateway = BoldGateway()
        approved = gateway.parse_redirect({"bold-order-id": "DOC-x-1", "bold-tx-status": "APPROVED"})
        assert approved.approved and approved.order_id == "DOC-x-1"
        assert not gateway.parse_redirect({"bold-order-id": "DOC-x-1", "bold-tx-status": "rejected"}).approved
        assert not gateway.parse_redirect({"bold-tx-status": "approved"}).approved


class TestStripeGateway:

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        monkeypatch.delenv("STRIPE_API_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            await StripeGateway().ensure_checkout_available()

    @pytest.mark.asyncio
    async def test_create_checkout(self, monkeypatch):
        monkeypatch.setenv("PUBLIC_APP_URL", "https://app.example.com")
        session = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1")
        document = {"id": DOC_ID, "token": "ABC123DEF456", "price": 50000, "document_type": "Poder"}
        with patch("services.payment_gateway.stripe.checkout.Session.create", return_value=session) as create:
            payload, reference = await StripeGateway(api_key="sk_test_x").create_checkout("DOC-x-1", document)
        assert reference == "cs_test_1"
        assert payload["checkout_url"] == session.url
        kwargs = create.call_args.kwargs
        assert kwargs["client_reference_id"] == "DOC-x-1"
        assert kwargs["metadata"]["document_id"] == DOC_ID
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 5000000

    @pytest.mark.asyncio
    async def test_lookup_paid(self):
        with patch("services.payment_gateway.stripe.checkout.Session.retrieve",
                   return_value={"payment_status": "paid"}):
            result = await StripeGateway(api_key="sk_test_x").lookup_payment_status("DOC-x-1", "cs_test_1")
        assert result.approved and result.status == "PAID"

    @pytest.mark.asyncio
    async def test_lookup_without_session_reference(self):
        result = await StripeGateway(api_key="sk_test_x").lookup_payment_status("DOC-x-1")
        assert result.approved is False


class TestGatewaySelection:

    def test_default_is_bold(self, monkeypatch):
        monkeypatch.delenv("PAYMENT_PROVIDER", raising=False)
        assert isinstance(get_payment_gateway(), BoldGateway)

    def test_stripe(self):
        assert isinstance(get_payment_gateway("stripe"), StripeGateway)

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            get_payment_gateway("paypal")
