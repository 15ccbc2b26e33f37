# models/settlement/pool_contribution.py
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, utcNow


class PoolContribution(Base):
    __tablename__ = 'pool_contributions'

    contributionID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=utcNow)

    cycleID = Column(Integer, ForeignKey('bonus_pool_cycles.cycleID'), nullable=False, index=True)
    orderID = Column(String(64), unique=True, nullable=False)  # one contribution per order

    saleAmount = Column(BigInteger, nullable=False)  # cents
    amount = Column(BigInteger, nullable=False)  # cents added to the pool
    reversedAt = Column(DateTime, nullable=True)

    cycle = relationship('BonusPoolCycle', backref='contributions')

    def __repr__(self):
        return f"<PoolContribution(order={self.orderID}, cycle={self.cycleID}, amount={self.amount})>"
