# models/order.py
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Order(Base, AuditMixin):
    __tablename__ = 'orders'

    # Идентификатор приходит из витрины
    orderID = Column(String(64), primary_key=True)
    orderNumber = Column(String(64), unique=True, nullable=False)

    totalAmount = Column(BigInteger, nullable=False)  # cents
    status = Column(String, default="pending", index=True)  # pending, confirmed, processing, shipped, delivered, cancelled
    paymentStatus = Column(String, default="unpaid")  # unpaid, paid, refunded
    paymentReference = Column(String, nullable=True, index=True)
    paidAt = Column(DateTime, nullable=True)
    cancelledAt = Column(DateTime, nullable=True)
    notes = Column(String, nullable=True)

    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=True, index=True)

    member = relationship('Member', backref='orders')
    items = relationship('OrderItem', back_populates='order', order_by='OrderItem.itemID')

    def __repr__(self):
        return f"<Order(orderID={self.orderID}, number={self.orderNumber}, status={self.status})>"


class OrderItem(Base):
    __tablename__ = 'order_items'

    itemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(String(64), ForeignKey('orders.orderID'), nullable=False, index=True)

    selectionKey = Column(String, nullable=False)  # flavor key chosen at checkout
    sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unitPrice = Column(BigInteger, nullable=True)  # cents

    order = relationship('Order', back_populates='items')
