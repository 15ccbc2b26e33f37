# models/partner.py
"""
Partner model - member who bought a participation tier.
Token holdings live in the member's "tokens" ledger account.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Partner(Base, AuditMixin):
    __tablename__ = 'partners'

    partnerID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), unique=True, nullable=False)

    tier = Column(String, nullable=False)  # phase1, phase2, phase3
    status = Column(String, default="active", index=True)  # active, suspended
    referrerMemberID = Column(Integer, ForeignKey('members.memberID'), nullable=True)

    # Tier payment
    paymentAmount = Column(BigInteger, nullable=False)  # cents
    paymentReference = Column(String, unique=True, nullable=True)
    paymentDate = Column(DateTime, nullable=True)

    member = relationship('Member', foreign_keys=[memberID], backref='partner')
    referrerMember = relationship('Member', foreign_keys=[referrerMemberID])

    def __repr__(self):
        return f"<Partner(partnerID={self.partnerID}, member={self.memberID}, tier={self.tier})>"
