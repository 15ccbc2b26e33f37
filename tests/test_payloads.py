"""
Unit Tests for boundary payload parsing
"""
from datetime import datetime, timedelta

import pytest

from ledger_system.utils.time_machine import timeMachine
from payment_system.payloads import (
    PayloadError, parseCheckoutContext, parseOrderPaid, parsePartnerJoined
)


def checkout_context(**overrides):
    context = {
        "orderId": "ord-1",
        "orderNumber": "LY-0001",
        "amount": 15000,
        "userId": "auth-1",
        "referralCode": "abc234",
        "delivery": {
            "recipientName": "Mei Ling",
            "phone": "+60123456789",
            "addressLine1": "12 Jalan Bukit",
            "city": "Kuala Lumpur",
            "state": "WP",
            "postcode": "50450"
        },
        "selections": [{"key": "original", "quantity": 2}],
        "createdAt": timeMachine.now.isoformat()
    }
    context.update(overrides)
    return context


class TestCheckoutContext:

    def test_valid_context(self):
        request = parseCheckoutContext(checkout_context())

        assert request.orderId == "ord-1"
        assert request.amount == 15000
        assert request.delivery.city == "Kuala Lumpur"
        assert request.delivery.addressLine2 is None
        assert request.selections == [{"key": "original", "quantity": 2}]

    def test_major_unit_total_converted(self):
        context = checkout_context(total="150.50")
        del context["amount"]

        assert parseCheckoutContext(context).amount == 15050

    def test_fractional_cents_rejected(self):
        context = checkout_context(total="1.005")
        del context["amount"]

        with pytest.raises(PayloadError):
            parseCheckoutContext(context)

    def test_expired_context_rejected(self):
        stale = timeMachine.now - timedelta(days=2)

        with pytest.raises(PayloadError, match="expired"):
            parseCheckoutContext(checkout_context(createdAt=stale.isoformat()))

    def test_epoch_timestamp_accepted(self):
        createdAt = (timeMachine.now - datetime(1970, 1, 1)).total_seconds()

        assert parseCheckoutContext(checkout_context(createdAt=createdAt)).orderId == "ord-1"

    @pytest.mark.parametrize("overrides", [
        {"amount": "100"},
        {"amount": -5},
        {"amount": True},
        {"orderId": ""},
        {"selections": [{"key": "original", "quantity": 0}]},
        {"selections": "original"},
        {"delivery": {"recipientName": "No Address"}},
        {"selectedAddressId": "3"},
    ])
    def test_invalid_fields_rejected(self, overrides):
        with pytest.raises(PayloadError):
            parseCheckoutContext(checkout_context(**overrides))

    def test_payload_error_is_value_error(self):
        with pytest.raises(ValueError):
            parseCheckoutContext("not an object")


class TestOrderPaid:

    def test_event_with_checkout(self):
        context = checkout_context()
        del context["orderId"]
        del context["amount"]

        event = parseOrderPaid({
            "orderId": "ord-1",
            "amount": 15000,
            "paymentReference": "pi_123",
            "paidAt": "2025-01-01T08:00:00+08:00",
            "checkout": context
        })

        assert event.paidAt == datetime(2025, 1, 1, 0, 0, 0)
        assert event.orderNumber == "ord-1"
        assert event.checkout.orderId == "ord-1"
        assert event.checkout.amount == 15000
        assert event.checkout.userId == "auth-1"

    def test_event_without_checkout(self):
        event = parseOrderPaid({"orderId": "ord-1", "orderNumber": "LY-1", "amount": 500})

        assert event.checkout is None
        assert event.paymentReference is None


class TestPartnerJoined:

    def test_valid(self):
        event = parsePartnerJoined({"memberId": 5, "tier": "phase2", "paymentReference": "pi_9"})

        assert event.memberId == 5
        assert event.tier == "phase2"

    def test_unknown_tier(self):
        with pytest.raises(PayloadError):
            parsePartnerJoined({"memberId": 5, "tier": "platinum"})
