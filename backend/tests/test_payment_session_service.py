"""
Payment session tests: opening checkout attempts and the free-document fast path.
"""
import pytest

from services.document_workflow import InvalidTransition
from services.payment_gateway import GatewayUnavailable, parse_order_document_id
from services.payment_config_service import ConfigurationError
from services.payment_session_service import PaymentSessionService, PaymentNotRequired
from conftest import FakeGateway, seed_document, stored


class TestOpenSession:

    @pytest.mark.asyncio
    async def test_open_records_session_without_touching_document(self, fake_db):
        doc = seed_document(fake_db, status="in_client_review", price=50000)
        gateway = FakeGateway()
        service = PaymentSessionService(gateway=gateway)

        handle = await service.open(stored(fake_db, doc["id"]))

        assert parse_order_document_id(handle.order_id) == doc["id"]
        assert handle.amount == 50000
        assert gateway.checkouts == 1
        session = fake_db.payment_sessions.docs[0]
        assert session["order_id"] == handle.order_id
        assert session["status"] == "open"
        assert stored(fake_db, doc["id"])["status"] == "in_client_review"
        assert stored(fake_db, doc["id"])["updated_at"] == doc["updated_at"]

    @pytest.mark.asyncio
    async def test_each_attempt_gets_its_own_order(self, fake_db):
        doc = seed_document(fake_db, status="in_client_review")
        service = PaymentSessionService(gateway=FakeGateway())

        first = await service.open(doc)
        second = await service.open(doc)

        assert first.order_id != second.order_id
        assert len(fake_db.payment_sessions.docs) == 2

    @pytest.mark.asyncio
    async def test_free_document_refused(self, fake_db):
        doc = seed_document(fake_db, status="in_client_review", price=0)
        gateway = FakeGateway()
        with pytest.raises(PaymentNotRequired):
            await PaymentSessionService(gateway=gateway).open(doc)
        assert gateway.checkouts == 0
        assert fake_db.payment_sessions.docs == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["requested", "in_lawyer_review", "paid", "downloaded"])
    async def test_requires_client_review(self, fake_db, status):
        doc = seed_document(fake_db, status=status)
        with pytest.raises(InvalidTransition):
            await PaymentSessionService(gateway=FakeGateway()).open(doc)

    @pytest.mark.asyncio
    async def test_gateway_unavailable_leaves_no_trace(self, fake_db):
        doc = seed_document(fake_db, status="in_client_review")
        gateway = FakeGateway(available=False)
        with pytest.raises(GatewayUnavailable):
            await PaymentSessionService(gateway=gateway).open(doc)
        assert gateway.checkouts == 0
        assert fake_db.payment_sessions.docs == []
        assert stored(fake_db, doc["id"])["status"] == "in_client_review"

    @pytest.mark.asyncio
    async def test_configuration_error_propagates(self, fake_db):
        doc = seed_document(fake_db, status="in_client_review")
        gateway = FakeGateway()

        async def broken_checkout(order_id, document, origin=None):
            raise ConfigurationError("missing credentials")

        gateway.create_checkout = broken_checkout
        with pytest.raises(ConfigurationError):
            await PaymentSessionService(gateway=gateway).open(doc)
        assert fake_db.payment_sessions.docs == []


class TestFreeDocument:

    @pytest.mark.asyncio
    async def test_requested_free_document_goes_straight_to_paid(self, fake_db):
        doc = seed_document(fake_db, status="requested", price=0)
        gateway = FakeGateway()
        result = await PaymentSessionService(gateway=gateway).settle_free_document(doc)
        assert result["status"] == "paid"
        assert result["payment_channel"] == "free"
        assert gateway.checkouts == 0 and gateway.lookups == 0
        assert fake_db.payment_sessions.docs == []

    @pytest.mark.asyncio
    async def test_reviewed_free_document_can_be_settled(self, fake_db):
        doc = seed_document(fake_db, status="in_client_review", price=0)
        result = await PaymentSessionService(gateway=FakeGateway()).settle_free_document(doc)
        assert result["status"] == "paid"

    @pytest.mark.asyncio
    async def test_second_settlement_is_a_no_op(self, fake_db):
        doc = seed_document(fake_db, status="requested", price=0)
        service = PaymentSessionService(gateway=FakeGateway())
        await service.settle_free_document(doc)
        updated_at = stored(fake_db, doc["id"])["updated_at"]

        # Stale snapshot still says "requested"
        again = await service.settle_free_document(doc)

        assert again["status"] == "paid"
        assert stored(fake_db, doc["id"])["updated_at"] == updated_at

    @pytest.mark.asyncio
    async def test_priced_document_rejected(self, fake_db):
        doc = seed_document(fake_db, status="requested", price=1000)
        with pytest.raises(InvalidTransition):
            await PaymentSessionService(gateway=FakeGateway()).settle_free_document(doc)
        assert stored(fake_db, doc["id"])["status"] == "requested"

    @pytest.mark.asyncio
    async def test_free_document_under_lawyer_review_rejected(self, fake_db):
        doc = seed_document(fake_db, status="in_lawyer_review", price=0)
        with pytest.raises(InvalidTransition):
            await PaymentSessionService(gateway=FakeGateway()).settle_free_document(doc)
        assert stored(fake_db, doc["id"])["status"] == "in_lawyer_review"
