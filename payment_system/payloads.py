# payment_system/payloads.py
"""
Validated payloads crossing the HTTP boundary.
Everything past this module works with typed records and integer cents.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ledger_system.config.rates import Tier
from ledger_system.utils.money import toMinorUnits
from ledger_system.utils.time_machine import timeMachine
import config


class PayloadError(ValueError):
    """Malformed or expired boundary payload."""


@dataclass
class DeliveryInfo:
    recipientName: str
    phone: str
    addressLine1: str
    city: str
    state: str
    postcode: str
    addressLine2: Optional[str] = None

    def toDict(self) -> Dict[str, Any]:
        return {
            "recipientName": self.recipientName,
            "phone": self.phone,
            "addressLine1": self.addressLine1,
            "addressLine2": self.addressLine2,
            "city": self.city,
            "state": self.state,
            "postcode": self.postcode
        }


@dataclass
class OrderCompletionRequest:
    orderId: str
    orderNumber: str
    amount: int  # cents
    userId: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    selectedAddressId: Optional[int] = None
    referralCode: Optional[str] = None
    delivery: Optional[DeliveryInfo] = None
    selections: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class OrderPaidEvent:
    orderId: str
    orderNumber: str
    amount: int  # cents
    paymentReference: Optional[str] = None
    paidAt: Optional[datetime] = None
    checkout: Optional[OrderCompletionRequest] = None


@dataclass
class PartnerJoinedEvent:
    memberId: int
    tier: str
    referralCode: Optional[str] = None
    paymentReference: Optional[str] = None


def _requireString(data: Dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PayloadError(f"Field '{key}' is required")
    return value.strip()


def _optionalString(data: Dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadError(f"Field '{key}' must be a string")
    return value.strip() or None


def _parseAmount(data: Dict) -> int:
    """'amount' is integer cents; 'total' is a major-unit amount such as "100.00"."""
    if "amount" in data:
        amount = data["amount"]
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise PayloadError("Field 'amount' must be integer minor units")
    elif "total" in data:
        try:
            amount = toMinorUnits(data["total"])
        except ValueError as e:
            raise PayloadError(str(e))
    else:
        raise PayloadError("Field 'amount' is required")

    if amount <= 0:
        raise PayloadError("Order amount must be positive")
    return amount


def _parseTimestamp(value: Any, key: str) -> datetime:
    """Epoch seconds or ISO 8601; returned as naive UTC."""
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except (ValueError, TypeError, OverflowError, OSError):
        raise PayloadError(f"Field '{key}' is not a valid timestamp")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parseDelivery(data: Optional[Dict]) -> Optional[DeliveryInfo]:
    if not data:
        return None
    if not isinstance(data, dict):
        raise PayloadError("Field 'delivery' must be an object")

    return DeliveryInfo(
        recipientName=_requireString(data, "recipientName"),
        phone=_requireString(data, "phone"),
        addressLine1=_requireString(data, "addressLine1"),
        addressLine2=_optionalString(data, "addressLine2"),
        city=_requireString(data, "city"),
        state=_requireString(data, "state"),
        postcode=_requireString(data, "postcode")
    )


def parseSelections(data: Any) -> List[Dict[str, Any]]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise PayloadError("Field 'selections' must be a list")

    selections = []
    for item in data:
        if not isinstance(item, dict):
            raise PayloadError("Each selection must be an object")
        key = _requireString(item, "key")
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise PayloadError(f"Selection '{key}' needs a positive integer quantity")

        selection = {"key": key, "quantity": quantity}
        sku = _optionalString(item, "sku")
        if sku:
            selection["sku"] = sku
        selections.append(selection)

    return selections


def parseCheckoutContext(data: Dict) -> OrderCompletionRequest:
    """
    Checkout context stored by the storefront before redirecting to payment.
    A context older than CHECKOUT_CONTEXT_MAX_AGE is rejected.
    """
    if not isinstance(data, dict):
        raise PayloadError("Checkout context must be an object")

    if data.get("createdAt") is not None:
        createdAt = _parseTimestamp(data["createdAt"], "createdAt")
        age = (timeMachine.now - createdAt).total_seconds()
        if age > config.CHECKOUT_CONTEXT_MAX_AGE:
            raise PayloadError("Checkout context expired")

    selectedAddressId = data.get("selectedAddressId")
    if selectedAddressId is not None and (
            not isinstance(selectedAddressId, int) or isinstance(selectedAddressId, bool)):
        raise PayloadError("Field 'selectedAddressId' must be an integer")

    return OrderCompletionRequest(
        orderId=_requireString(data, "orderId"),
        orderNumber=_optionalString(data, "orderNumber") or _requireString(data, "orderId"),
        amount=_parseAmount(data),
        userId=_optionalString(data, "userId"),
        name=_optionalString(data, "name"),
        phone=_optionalString(data, "phone"),
        email=_optionalString(data, "email"),
        selectedAddressId=selectedAddressId,
        referralCode=_optionalString(data, "referralCode"),
        delivery=parseDelivery(data.get("delivery")),
        selections=parseSelections(data.get("selections"))
    )


def parseOrderPaid(data: Dict) -> OrderPaidEvent:
    if not isinstance(data, dict):
        raise PayloadError("Event data must be an object")

    checkout = None
    if data.get("checkout") is not None:
        context = dict(data["checkout"]) if isinstance(data["checkout"], dict) else data["checkout"]
        if isinstance(context, dict):
            context.setdefault("orderId", data.get("orderId"))
            context.setdefault("orderNumber", data.get("orderNumber"))
            if "amount" not in context and "total" not in context:
                context["amount"] = data.get("amount")
        checkout = parseCheckoutContext(context)

    paidAt = None
    if data.get("paidAt") is not None:
        paidAt = _parseTimestamp(data["paidAt"], "paidAt")

    orderId = _requireString(data, "orderId")
    return OrderPaidEvent(
        orderId=orderId,
        orderNumber=_optionalString(data, "orderNumber") or orderId,
        amount=_parseAmount(data),
        paymentReference=_optionalString(data, "paymentReference"),
        paidAt=paidAt,
        checkout=checkout
    )


def parsePartnerJoined(data: Dict) -> PartnerJoinedEvent:
    if not isinstance(data, dict):
        raise PayloadError("Event data must be an object")

    memberId = data.get("memberId")
    if not isinstance(memberId, int) or isinstance(memberId, bool):
        raise PayloadError("Field 'memberId' must be an integer")

    tier = _requireString(data, "tier")
    try:
        Tier(tier)
    except ValueError:
        raise PayloadError(f"Unknown tier: {tier}")

    return PartnerJoinedEvent(
        memberId=memberId,
        tier=tier,
        referralCode=_optionalString(data, "referralCode"),
        paymentReference=_optionalString(data, "paymentReference")
    )
