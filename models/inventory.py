# models/inventory.py
from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class InventoryItem(Base, AuditMixin):
    __tablename__ = 'inventory'

    inventoryID = Column(Integer, primary_key=True, autoincrement=True)
    sku = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, default=0)
    minStock = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<InventoryItem(sku={self.sku}, quantity={self.quantity})>"


class InventoryMovement(Base, AuditMixin):
    __tablename__ = 'inventory_movements'

    movementID = Column(Integer, primary_key=True, autoincrement=True)
    inventoryID = Column(Integer, ForeignKey('inventory.inventoryID'), nullable=False)
    orderID = Column(String(64), nullable=True, index=True)

    quantityChange = Column(Integer, nullable=False)  # negative for sales
    type = Column(String, nullable=False)  # sale, restore
    notes = Column(String, nullable=True)

    inventory = relationship('InventoryItem', backref='movements')

    # One sale and one restore per order and SKU
    __table_args__ = (
        UniqueConstraint('inventoryID', 'orderID', 'type', name='uq_inventory_movement_order'),
    )
