# ledger_system/services/referral_service.py
"""
Referral commission service.
Credits the referral chain of a paying member through ledger entries.
"""
from typing import List, Dict, Optional
from sqlalchemy.orm import Session
import logging

from models import LedgerEntry, Partner
from ledger_system.config.rates import (
    EntryType, Account, REFERRAL_COMMISSION_RATES, REFERRAL_COMMISSION_ACCOUNT,
    PARTNER_REFERRAL_DIRECT_RATE, PARTNER_REFERRAL_INDIRECT_RATE
)
from ledger_system.events.event_bus import eventBus, LedgerEvents
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.member_service import MemberService
from ledger_system.utils.money import applyRate, formatMinor

logger = logging.getLogger(__name__)


class ReferralService:
    """Service for referral commissions and partner referral bonuses."""

    def __init__(self, session: Session):
        self.session = session
        self.balanceService = BalanceService(session)
        self.memberService = MemberService(session)

    async def processOrderCommission(self, orderId: str, memberId: int, orderAmount: int) -> Dict:
        """
        Credit the payer's referral chain for a paid order.
        One level per configured rate, nearest referrer first. A level
        already credited for this order is skipped. Does not commit.
        """
        results = {
            "success": True,
            "orderId": orderId,
            "commissions": [],
            "skipped": [],
            "totalDistributed": 0
        }

        if orderAmount <= 0:
            return results

        chain = await self.memberService.getReferralChain(memberId, len(REFERRAL_COMMISSION_RATES))

        for level, (referrerId, rate) in enumerate(zip(chain, REFERRAL_COMMISSION_RATES), start=1):
            if referrerId == memberId:
                logger.warning(
                    f"Self-referral anomaly: member {memberId} is its own level {level} referrer, "
                    f"no commission for order {orderId}"
                )
                results["skipped"].append({"level": level, "memberId": referrerId, "reason": "self_referral"})
                continue

            alreadyCredited = self.session.query(LedgerEntry.entryID).filter(
                LedgerEntry.orderID == orderId,
                LedgerEntry.ownerID == referrerId,
                LedgerEntry.entryType == EntryType.COMMISSION,
                LedgerEntry.referenceType == "referral_level",
                LedgerEntry.referenceID == str(level)
            ).first()

            if alreadyCredited:
                results["skipped"].append({"level": level, "memberId": referrerId, "reason": "already_credited"})
                continue

            amount = applyRate(orderAmount, rate)
            if amount <= 0:
                continue

            entry = await self.balanceService.recordEntry(
                ownerId=referrerId,
                account=REFERRAL_COMMISSION_ACCOUNT,
                entryType=EntryType.COMMISSION,
                amount=amount,
                description=f"Level {level} referral commission ({rate * 100}%) for order {orderId}",
                orderId=orderId,
                referenceType="referral_level",
                referenceId=str(level)
            )

            commission = {
                "level": level,
                "memberId": referrerId,
                "rate": rate,
                "amount": amount,
                "entryId": entry.entryID
            }
            results["commissions"].append(commission)
            results["totalDistributed"] += amount

            logger.info(
                f"Referral commission {formatMinor(amount)} to member {referrerId} "
                f"(level {level}) for order {orderId}"
            )

            await eventBus.emit(LedgerEvents.COMMISSION_PAID, {
                "orderId": orderId,
                "payerId": memberId,
                **commission
            })

        return results

    async def processPartnerReferralBonus(
            self,
            referrerMemberId: int,
            newPartnerMemberId: int,
            partnerId: int,
            paymentAmount: int
    ) -> List[Dict]:
        """Direct and indirect bonus on a partner tier purchase. Does not commit."""
        bonuses = []

        if referrerMemberId == newPartnerMemberId:
            logger.warning(f"Partner {partnerId} referred by itself, no referral bonus")
            return bonuses

        directAmount = applyRate(paymentAmount, PARTNER_REFERRAL_DIRECT_RATE)
        if directAmount > 0:
            await self.balanceService.recordEntry(
                ownerId=referrerMemberId,
                account=Account.CASH,
                entryType=EntryType.REFERRAL_BONUS,
                amount=directAmount,
                description="Direct partner referral bonus",
                referenceType="partner",
                referenceId=str(partnerId)
            )
            bonuses.append({"memberId": referrerMemberId, "level": 1, "amount": directAmount})

        indirectMemberId = self._partnerReferrerOf(referrerMemberId)
        if indirectMemberId and indirectMemberId not in (referrerMemberId, newPartnerMemberId):
            indirectAmount = applyRate(paymentAmount, PARTNER_REFERRAL_INDIRECT_RATE)
            if indirectAmount > 0:
                await self.balanceService.recordEntry(
                    ownerId=indirectMemberId,
                    account=Account.CASH,
                    entryType=EntryType.REFERRAL_BONUS,
                    amount=indirectAmount,
                    description="Indirect partner referral bonus",
                    referenceType="partner",
                    referenceId=str(partnerId)
                )
                bonuses.append({"memberId": indirectMemberId, "level": 2, "amount": indirectAmount})

        logger.info(f"Partner referral bonuses for partner {partnerId}: {bonuses}")
        return bonuses

    def _partnerReferrerOf(self, memberId: int) -> Optional[int]:
        return self.session.query(Partner.referrerMemberID).filter_by(
            memberID=memberId,
            status="active"
        ).scalar()
