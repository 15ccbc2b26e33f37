# ledger_system/services/partner_service.py
"""
Partner enrollment and token holdings.
"""
from typing import List, Dict, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models import Member, Partner, LedgerEntry
from ledger_system.config.rates import Tier, PARTNER_TIERS, Account, EntryType
from ledger_system.events.event_bus import eventBus, LedgerEvents
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.member_service import MemberService
from ledger_system.services.referral_service import ReferralService
from ledger_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class PartnerService:
    """Service for partner tiers and participation tokens."""

    def __init__(self, session: Session):
        self.session = session
        self.balanceService = BalanceService(session)
        self.memberService = MemberService(session)
        self.referralService = ReferralService(session)

    async def enrollPartner(
            self,
            memberId: int,
            tier: str,
            referralCode: Optional[str] = None,
            paymentReference: Optional[str] = None
    ) -> Dict:
        """
        Create the partner record after a tier payment.
        Grants the tier's tokens and points and pays referral bonuses.
        Repeated calls for the same payment or member change nothing.
        """
        try:
            tierEnum = Tier(tier)
        except ValueError:
            logger.error(f"Unknown partner tier {tier!r} for member {memberId}")
            return {"success": False, "error": f"Unknown tier: {tier}"}

        tierConfig = PARTNER_TIERS[tierEnum]

        if paymentReference:
            existing = self.session.query(Partner).filter_by(paymentReference=paymentReference).first()
            if existing:
                logger.info(f"Payment {paymentReference} already enrolled partner {existing.partnerID}")
                return {"success": True, "alreadyEnrolled": True, "partnerId": existing.partnerID}

        member = self.session.get(Member, memberId)
        if not member:
            logger.error(f"Member {memberId} not found for partner enrollment")
            return {"success": False, "error": "Member not found"}

        existing = self.session.query(Partner).filter_by(memberID=memberId).first()
        if existing:
            logger.info(f"Member {memberId} is already partner {existing.partnerID}")
            return {"success": True, "alreadyEnrolled": True, "partnerId": existing.partnerID}

        referrerMemberId = await self._resolvePartnerReferrer(member, referralCode)

        try:
            partner = Partner(
                memberID=memberId,
                tier=tierEnum.value,
                status="active",
                referrerMemberID=referrerMemberId,
                paymentAmount=tierConfig["price"],
                paymentReference=paymentReference,
                paymentDate=timeMachine.now
            )
            self.session.add(partner)
            self.session.flush()

            await self.balanceService.recordEntry(
                ownerId=memberId,
                account=Account.TOKENS,
                entryType=EntryType.TIER_GRANT,
                amount=tierConfig["initialTokens"],
                description=f"Initial {tierEnum.value} package tokens",
                referenceType="partner",
                referenceId=str(partner.partnerID)
            )
            await self.balanceService.recordEntry(
                ownerId=memberId,
                account=Account.POINTS,
                entryType=EntryType.TIER_GRANT,
                amount=tierConfig["initialPoints"],
                description=f"Initial {tierEnum.value} package bonus",
                referenceType="partner",
                referenceId=str(partner.partnerID)
            )

            bonuses = []
            if referrerMemberId:
                bonuses = await self.referralService.processPartnerReferralBonus(
                    referrerMemberId, memberId, partner.partnerID, tierConfig["price"]
                )

            member.role = "partner"
            self.session.commit()

        except IntegrityError:
            self.session.rollback()
            existing = self.session.query(Partner).filter_by(memberID=memberId).first()
            if existing:
                logger.info(f"Member {memberId} enrolled concurrently as partner {existing.partnerID}")
                return {"success": True, "alreadyEnrolled": True, "partnerId": existing.partnerID}
            raise

        logger.info(
            f"Member {memberId} enrolled as {tierEnum.value} partner {partner.partnerID}, "
            f"referrer={referrerMemberId}"
        )

        await eventBus.emit(LedgerEvents.PARTNER_ENROLLED, {
            "partnerId": partner.partnerID,
            "memberId": memberId,
            "tier": tierEnum.value
        })

        return {
            "success": True,
            "partnerId": partner.partnerID,
            "tier": tierEnum.value,
            "tokens": tierConfig["initialTokens"],
            "points": tierConfig["initialPoints"],
            "referrerMemberId": referrerMemberId,
            "referralBonuses": bonuses
        }

    async def _resolvePartnerReferrer(self, member: Member, referralCode: Optional[str]) -> Optional[int]:
        """The code's owner, else the member's own referrer, if that is an active partner."""
        candidate = await self.memberService.findByReferralCode(referralCode)
        candidateId = candidate.memberID if candidate else member.referrerID

        if candidateId is None or candidateId == member.memberID:
            return None

        isPartner = self.session.query(Partner.partnerID).filter_by(
            memberID=candidateId,
            status="active"
        ).first()
        return candidateId if isPartner else None

    async def adjustTokens(self, memberId: int, delta: int, adminId: int, reason: str) -> Dict:
        """Explicit admin change of a partner's token count."""
        if not isinstance(delta, int) or delta == 0:
            return {"success": False, "error": "Token delta must be a non-zero integer"}

        partner = self.session.query(Partner).filter_by(memberID=memberId).first()
        if not partner:
            return {"success": False, "error": "Partner not found"}

        current = await self.balanceService.getBalance(memberId, Account.TOKENS, fresh=True)
        if current + delta < 0:
            return {"success": False, "error": f"Partner holds only {current} tokens"}

        entry = await self.balanceService.recordEntry(
            ownerId=memberId,
            account=Account.TOKENS,
            entryType=EntryType.TOKEN_ADJUSTMENT,
            amount=delta,
            description=f"Admin adjustment: {reason}",
            referenceType="admin",
            referenceId=str(adminId)
        )
        self.session.commit()

        logger.info(f"Admin {adminId} adjusted tokens of member {memberId} by {delta:+d}: {reason}")

        await eventBus.emit(LedgerEvents.TOKENS_ADJUSTED, {
            "memberId": memberId,
            "delta": delta,
            "adminId": adminId
        })

        return {
            "success": True,
            "entryId": entry.entryID,
            "tokens": current + delta
        }

    async def getTokenHolders(self) -> List[Dict]:
        """Active partners with a positive token balance, read from the ledger."""
        tokenSum = func.sum(LedgerEntry.amount)

        rows = self.session.query(
            Partner.memberID,
            tokenSum
        ).join(
            LedgerEntry, LedgerEntry.ownerID == Partner.memberID
        ).filter(
            Partner.status == "active",
            LedgerEntry.account == Account.TOKENS
        ).group_by(
            Partner.memberID
        ).having(
            tokenSum > 0
        ).order_by(
            Partner.memberID
        ).all()

        return [{"memberId": memberId, "tokens": int(tokens)} for memberId, tokens in rows]
