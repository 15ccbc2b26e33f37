# models/completion_step.py
from sqlalchemy import Column, Integer, String, Text, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin


class OrderCompletionStep(Base, AuditMixin):
    __tablename__ = 'order_completion_steps'

    stepID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(String(64), ForeignKey('orders.orderID'), nullable=False, index=True)

    step = Column(String(32), nullable=False)  # member, address, link_member, bill, inventory, bonus_pool, referral
    status = Column(String(16), nullable=False)  # done, failed, skipped
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint('orderID', 'step', name='uq_order_completion_step'),
    )

    def __repr__(self):
        return f"<OrderCompletionStep(order={self.orderID}, step={self.step}, status={self.status})>"
