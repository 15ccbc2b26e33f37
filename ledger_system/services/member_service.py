# ledger_system/services/member_service.py
"""
Member records: resolve-or-create, referrer attachment, delivery addresses.
"""
import secrets
from typing import Dict, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models import Member, MemberAddress
from ledger_system.config.rates import REFERRAL_CODE_ALPHABET, REFERRAL_CODE_LENGTH

logger = logging.getLogger(__name__)


def generateReferralCode(length: int = REFERRAL_CODE_LENGTH) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


class MemberService:
    """Service for member records linked to an authenticated identity."""

    def __init__(self, session: Session):
        self.session = session

    async def getOrCreateMember(
            self,
            userId: str,
            name: str,
            phone: Optional[str] = None,
            email: Optional[str] = None
    ) -> Tuple[Member, bool]:
        """Return (member, created) for an external user id."""
        member = self.session.query(Member).filter_by(userID=userId).first()
        if member:
            return member, False

        for _ in range(5):
            member = Member(
                userID=userId,
                name=name,
                phone=phone,
                email=email,
                role="member",
                referralCode=generateReferralCode()
            )
            try:
                with self.session.begin_nested():
                    self.session.add(member)
                break
            except IntegrityError:
                # Either the referral code collided or the user was created concurrently
                existing = self.session.query(Member).filter_by(userID=userId).first()
                if existing:
                    return existing, False
        else:
            raise RuntimeError(f"Could not allocate a referral code for user {userId}")

        logger.info(f"Created member {member.memberID} for user {userId}")
        return member, True

    async def findByReferralCode(self, code: Optional[str]) -> Optional[Member]:
        if not code:
            return None
        return self.session.query(Member).filter_by(
            referralCode=code.strip().upper()
        ).first()

    async def attachReferrer(self, member: Member, referralCode: Optional[str]) -> bool:
        """
        First-write-wins: a member that already has a referrer keeps it.
        Returns True only when this call set the referrer.
        """
        if member.referrerID is not None:
            logger.info(f"Member {member.memberID} already referred by {member.referrerID}, code ignored")
            return False

        referrer = await self.findByReferralCode(referralCode)
        if not referrer:
            logger.warning(f"Referral code {referralCode!r} not found, member {member.memberID} left unreferred")
            return False

        if referrer.memberID == member.memberID:
            logger.warning(f"Member {member.memberID} presented own referral code, ignored")
            return False

        # Conditional update so a concurrent attach cannot overwrite the first one
        updated = self.session.query(Member).filter(
            Member.memberID == member.memberID,
            Member.referrerID.is_(None)
        ).update({Member.referrerID: referrer.memberID}, synchronize_session=False)

        self.session.refresh(member)

        if updated:
            logger.info(f"Member {member.memberID} referred by {referrer.memberID}")
        return bool(updated)

    async def saveAddress(self, memberId: int, address: Dict, isDefault: bool = True) -> MemberAddress:
        """Save a delivery address; an identical existing address is reused."""
        existing = self.session.query(MemberAddress).filter_by(
            memberID=memberId,
            recipientName=address["recipientName"],
            phone=address["phone"],
            addressLine1=address["addressLine1"],
            city=address["city"],
            state=address["state"],
            postcode=address["postcode"]
        ).first()

        if existing:
            return existing

        hasAddresses = self.session.query(MemberAddress.addressID).filter_by(
            memberID=memberId
        ).first() is not None

        if isDefault:
            self.session.query(MemberAddress).filter_by(
                memberID=memberId,
                isDefault=True
            ).update({MemberAddress.isDefault: False}, synchronize_session=False)

        saved = MemberAddress(
            memberID=memberId,
            recipientName=address["recipientName"],
            phone=address["phone"],
            addressLine1=address["addressLine1"],
            addressLine2=address.get("addressLine2"),
            city=address["city"],
            state=address["state"],
            postcode=address["postcode"],
            isDefault=isDefault or not hasAddresses
        )
        self.session.add(saved)
        self.session.flush()

        logger.info(f"Saved address {saved.addressID} for member {memberId}")
        return saved

    async def getReferralChain(self, memberId: int, maxDepth: int) -> list:
        """
        Referrer ids above a member, nearest first.
        A chain leading back to the member itself ends with that member's id
        so the caller can see the anomaly; any other loop is cut with a warning.
        """
        chain = []
        visited = {memberId}
        currentId = memberId

        for _ in range(maxDepth):
            referrerId = self.session.query(Member.referrerID).filter_by(
                memberID=currentId
            ).scalar()

            if referrerId is None:
                break
            if referrerId == memberId:
                chain.append(referrerId)
                break
            if referrerId in visited:
                logger.warning(f"Referral loop above member {memberId} at {referrerId}")
                break

            chain.append(referrerId)
            visited.add(referrerId)
            currentId = referrerId

        return chain
