# models/ledger_entry.py
"""
LedgerEntry model - append-only record of every balance-affecting event.
Rows are never updated or deleted; corrections are offsetting entries.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, utcNow


class LedgerEntry(Base):
    __tablename__ = 'ledger_entries'

    entryID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=utcNow, nullable=False)

    ownerID = Column(Integer, ForeignKey('members.memberID'), nullable=False)
    account = Column(String(16), nullable=False)  # points, tokens, cash
    entryType = Column(String(32), nullable=False)  # earn, spend, refund, bonus_pool_payout, commission, ...
    amount = Column(BigInteger, nullable=False)  # signed; cents for cash, units otherwise
    description = Column(String, nullable=True)

    # Origin
    orderID = Column(String(64), nullable=True, index=True)
    cycleID = Column(Integer, ForeignKey('bonus_pool_cycles.cycleID'), nullable=True, index=True)
    referenceType = Column(String(32), nullable=True)
    referenceID = Column(String(64), nullable=True)

    owner = relationship('Member', backref='ledger_entries')

    __table_args__ = (
        Index('ix_ledger_entries_owner_account', 'ownerID', 'account'),
    )

    def __repr__(self):
        return f"<LedgerEntry(entryID={self.entryID}, owner={self.ownerID}, {self.account} {self.amount:+d})>"


class BalanceCache(Base):
    __tablename__ = 'balance_cache'

    ownerID = Column(Integer, ForeignKey('members.memberID'), primary_key=True)
    account = Column(String(16), primary_key=True)
    amount = Column(BigInteger, nullable=False, default=0)
    updatedAt = Column(DateTime, default=utcNow, onupdate=utcNow)

    def __repr__(self):
        return f"<BalanceCache(owner={self.ownerID}, {self.account}={self.amount})>"
