# ledger_system/services/inventory_service.py
"""
Inventory deduction for paid orders and restoration for cancelled ones.
"""
from collections import OrderedDict
from typing import List, Dict
from sqlalchemy import case
from sqlalchemy.orm import Session
import logging

from models import InventoryItem, InventoryMovement, utcNow
from ledger_system.config.rates import SELECTION_SKU_MAP

logger = logging.getLogger(__name__)


class InventoryService:
    """Service for stock movements caused by orders."""

    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _groupBySku(selections: List[Dict]) -> "OrderedDict[str, int]":
        """Sum requested quantities per SKU; unknown selection keys are dropped."""
        grouped = OrderedDict()
        for selection in selections:
            sku = selection.get("sku") or SELECTION_SKU_MAP.get(selection["key"])
            if not sku:
                logger.warning(f"No SKU mapped for selection {selection['key']!r}")
                continue
            grouped[sku] = grouped.get(sku, 0) + int(selection["quantity"])
        return grouped

    async def deductForOrder(self, orderId: str, selections: List[Dict]) -> Dict:
        """
        Deduct stock for an order's selections.
        SKUs that already have a sale movement for this order are skipped,
        so a retried step only deducts what is still missing.
        """
        deducted = []
        skipped = []

        for sku, quantity in self._groupBySku(selections).items():
            if quantity <= 0:
                continue

            item = self.session.query(InventoryItem).filter_by(sku=sku).first()
            if not item:
                logger.warning(f"Inventory not found for SKU: {sku}")
                skipped.append({"sku": sku, "reason": "not_found"})
                continue

            alreadyDeducted = self.session.query(InventoryMovement.movementID).filter_by(
                inventoryID=item.inventoryID,
                orderID=orderId,
                type="sale"
            ).first()
            if alreadyDeducted:
                skipped.append({"sku": sku, "reason": "already_deducted"})
                continue

            # Store-side decrement clamped at zero
            self.session.query(InventoryItem).filter_by(
                inventoryID=item.inventoryID
            ).update({
                InventoryItem.quantity: case(
                    (InventoryItem.quantity >= quantity, InventoryItem.quantity - quantity),
                    else_=0
                ),
                InventoryItem.updatedAt: utcNow()
            }, synchronize_session=False)

            self.session.add(InventoryMovement(
                inventoryID=item.inventoryID,
                orderID=orderId,
                quantityChange=-quantity,
                type="sale",
                notes=f"Order deduction for {sku}"
            ))
            deducted.append({"sku": sku, "quantity": quantity})

        self.session.flush()

        logger.info(f"Inventory for order {orderId}: deducted={deducted}, skipped={skipped}")
        return {
            "success": True,
            "deducted": deducted,
            "skipped": skipped
        }

    async def restoreForOrder(self, orderId: str) -> Dict:
        """Put back every sale movement of an order that has not been restored yet."""
        sales = self.session.query(InventoryMovement).filter_by(
            orderID=orderId,
            type="sale"
        ).all()

        restored = []
        for sale in sales:
            alreadyRestored = self.session.query(InventoryMovement.movementID).filter_by(
                inventoryID=sale.inventoryID,
                orderID=orderId,
                type="restore"
            ).first()
            if alreadyRestored:
                continue

            quantity = -sale.quantityChange
            self.session.query(InventoryItem).filter_by(
                inventoryID=sale.inventoryID
            ).update({
                InventoryItem.quantity: InventoryItem.quantity + quantity,
                InventoryItem.updatedAt: utcNow()
            }, synchronize_session=False)

            self.session.add(InventoryMovement(
                inventoryID=sale.inventoryID,
                orderID=orderId,
                quantityChange=quantity,
                type="restore",
                notes="Order cancelled"
            ))
            restored.append({"inventoryId": sale.inventoryID, "quantity": quantity})

        self.session.flush()

        logger.info(f"Inventory restored for order {orderId}: {restored}")
        return {
            "success": True,
            "restored": restored
        }
