# models/member.py
"""
Member model - storefront customer, optionally referred by another member.
"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Member(Base, AuditMixin):
    __tablename__ = 'members'

    memberID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(String(64), unique=True, nullable=True, index=True)  # external auth identity

    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    role = Column(String, default="member")  # member, partner

    referralCode = Column(String(16), unique=True, nullable=False, index=True)
    referrerID = Column(Integer, ForeignKey('members.memberID'), nullable=True)  # set once

    referrer = relationship('Member', remote_side=[memberID], backref='referrals')
    addresses = relationship('MemberAddress', back_populates='member', order_by='MemberAddress.addressID')

    def __repr__(self):
        return f"<Member(memberID={self.memberID}, code={self.referralCode}, referrer={self.referrerID})>"


class MemberAddress(Base, AuditMixin):
    __tablename__ = 'member_addresses'

    addressID = Column(Integer, primary_key=True, autoincrement=True)
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)

    recipientName = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    addressLine1 = Column(String, nullable=False)
    addressLine2 = Column(String, nullable=True)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postcode = Column(String, nullable=False)
    isDefault = Column(Boolean, default=False)

    member = relationship('Member', back_populates='addresses')

    def __repr__(self):
        return f"<MemberAddress(addressID={self.addressID}, member={self.memberID}, default={self.isDefault})>"
