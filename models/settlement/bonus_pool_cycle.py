# models/settlement/bonus_pool_cycle.py
"""
BonusPoolCycle model - fixed-length accounting period of the dividend pool.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DECIMAL, DateTime
from models.base import Base, utcNow


class BonusPoolCycle(Base):
    __tablename__ = 'bonus_pool_cycles'

    cycleID = Column(Integer, primary_key=True, autoincrement=True)
    cycleNumber = Column(Integer, unique=True, nullable=False)
    createdAt = Column(DateTime, default=utcNow)

    # Period
    startAt = Column(DateTime, nullable=False)
    endAt = Column(DateTime, nullable=False, index=True)

    # Status
    status = Column(String(16), default='open', index=True)  # open, settling, settled

    # Accumulation (cents)
    contributionRate = Column(DECIMAL(5, 4), nullable=False)  # 0.3000 = 30%
    totalSales = Column(BigInteger, default=0, nullable=False)
    poolAmount = Column(BigInteger, default=0, nullable=False)
    carriedInAmount = Column(BigInteger, default=0, nullable=False)

    # Settlement
    totalTokens = Column(Integer, nullable=True)
    perTokenValue = Column(DECIMAL(20, 8), nullable=True)  # cents per token, rounded down
    distributedAmount = Column(BigInteger, nullable=True)
    unallocatedAmount = Column(BigInteger, nullable=True)  # rounding dust or undistributable pool
    payoutCount = Column(Integer, nullable=True)
    settledAt = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<BonusPoolCycle(number={self.cycleNumber}, pool={self.poolAmount}, status={self.status})>"
