# ledger_system/services/order_service.py
"""
Order payment transition and cancellation.
"""
from typing import List, Dict, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models import Order, OrderItem
from ledger_system.config.rates import EntryType, SELECTION_SKU_MAP
from ledger_system.events.event_bus import eventBus, LedgerEvents
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.bonus_pool_service import BonusPoolService
from ledger_system.services.inventory_service import InventoryService
from ledger_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

# Statuses an order can still be cancelled from
CANCELLABLE_STATUSES = ("pending", "confirmed", "processing")


class OrderService:
    """Service for order status transitions."""

    def __init__(self, session: Session):
        self.session = session
        self.balanceService = BalanceService(session)
        self.bonusPoolService = BonusPoolService(session)
        self.inventoryService = InventoryService(session)

    async def ensureOrder(
            self,
            orderId: str,
            orderNumber: str,
            amount: int,
            selections: Optional[List[Dict]] = None
    ) -> Order:
        """
        Return the order, creating a pending one from event data if it is unknown.
        Selections are persisted as line items when the order has none yet.
        """
        order = self.session.get(Order, orderId)
        if order:
            if selections and not order.items:
                self._addItems(order, selections)
                self.session.flush()
            return order

        order = Order(
            orderID=orderId,
            orderNumber=orderNumber,
            totalAmount=amount,
            status="pending",
            paymentStatus="unpaid"
        )
        try:
            with self.session.begin_nested():
                self.session.add(order)
                self._addItems(order, selections or [])
        except IntegrityError:
            # Created concurrently by another delivery of the same event
            order = self.session.get(Order, orderId)
            if order:
                return order
            raise

        logger.info(f"Order {orderId} ({orderNumber}) recorded from payment event")
        return order

    @staticmethod
    def _addItems(order: Order, selections: List[Dict]):
        for selection in selections:
            order.items.append(OrderItem(
                selectionKey=selection["key"],
                sku=selection.get("sku") or SELECTION_SKU_MAP.get(selection["key"]),
                quantity=selection["quantity"]
            ))

    @staticmethod
    def itemsAsSelections(order: Order) -> List[Dict]:
        """Persisted line items in the shape inventory deduction expects."""
        return [
            {"key": item.selectionKey, "sku": item.sku, "quantity": item.quantity}
            for item in order.items
        ]

    async def markOrderPaid(self, event) -> Dict:
        """
        Move a pending order to confirmed/paid exactly once.
        Repeated or concurrent deliveries of the same event find no pending
        row to update and report transitioned=False.
        """
        selections = event.checkout.selections if event.checkout else None
        await self.ensureOrder(event.orderId, event.orderNumber, event.amount, selections)

        updated = self.session.query(Order).filter(
            Order.orderID == event.orderId,
            Order.status == "pending"
        ).update({
            Order.status: "confirmed",
            Order.paymentStatus: "paid",
            Order.paymentReference: event.paymentReference,
            Order.paidAt: event.paidAt or timeMachine.now
        }, synchronize_session=False)

        self.session.commit()

        if updated:
            logger.info(f"Order {event.orderId} marked paid (payment {event.paymentReference})")
            await eventBus.emit(LedgerEvents.ORDER_PAID, {
                "orderId": event.orderId,
                "amount": event.amount,
                "paymentReference": event.paymentReference
            })
        else:
            logger.info(f"Order {event.orderId} was not pending, payment event ignored")

        return {
            "success": True,
            "orderId": event.orderId,
            "transitioned": bool(updated)
        }

    async def cancelOrder(self, orderId: str, reason: str) -> Dict:
        """
        Cancel an order and unwind what its completion wrote.
        Stock comes back, an open-cycle contribution is withdrawn and
        commissions get offsetting refund entries. Bills stay as issued.
        """
        order = self.session.get(Order, orderId)
        if not order:
            return {"success": False, "error": "Order not found"}

        if order.status == "cancelled":
            return {"success": True, "alreadyCancelled": True, "orderId": orderId}

        try:
            updated = self.session.query(Order).filter(
                Order.orderID == orderId,
                Order.status.in_(CANCELLABLE_STATUSES)
            ).update({
                Order.status: "cancelled",
                Order.cancelledAt: timeMachine.now,
                Order.notes: reason
            }, synchronize_session=False)

            if not updated:
                self.session.rollback()
                self.session.refresh(order)
                if order.status == "cancelled":
                    return {"success": True, "alreadyCancelled": True, "orderId": orderId}
                return {"success": False, "error": f"Order in status {order.status} cannot be cancelled"}

            inventory = await self.inventoryService.restoreForOrder(orderId)
            contribution = await self.bonusPoolService.reverseContribution(orderId)
            reversals = await self.balanceService.reverseEntries(
                orderId,
                EntryType.COMMISSION,
                description=f"Commission reversed: order {orderId} cancelled"
            )

            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.error(f"Error cancelling order {orderId}: {e}", exc_info=True)
            raise

        logger.info(
            f"Order {orderId} cancelled ({reason}): restored={len(inventory['restored'])} items, "
            f"contribution reversed={contribution['reversed']}, commission reversals={len(reversals)}"
        )

        await eventBus.emit(LedgerEvents.ORDER_CANCELLED, {
            "orderId": orderId,
            "reason": reason
        })

        return {
            "success": True,
            "orderId": orderId,
            "inventoryRestored": inventory["restored"],
            "contributionReversed": contribution["reversed"],
            "commissionReversals": [entry.entryID for entry in reversals]
        }
