# models/bill.py
"""
Bill model - financial record derived 1:1 from a paid order.
Its existence marks the order-completion pipeline as started.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, UniqueConstraint
from models.base import Base, AuditMixin


class Bill(Base, AuditMixin):
    __tablename__ = 'bills'

    billID = Column(Integer, primary_key=True, autoincrement=True)
    billNumber = Column(String(32), unique=True, nullable=False)  # INVyyyymmddXXXX

    type = Column(String, default="income")
    category = Column(String, default="sales")
    amount = Column(BigInteger, nullable=False)  # cents
    description = Column(String, nullable=True)
    status = Column(String, default="paid")
    paidDate = Column(DateTime, nullable=True)

    referenceType = Column(String, nullable=False, default="order")
    referenceID = Column(String(64), nullable=False)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=True)

    __table_args__ = (
        UniqueConstraint('referenceType', 'referenceID', name='uq_bills_reference'),
    )

    def __repr__(self):
        return f"<Bill(billNumber={self.billNumber}, ref={self.referenceID}, amount={self.amount})>"
