# ledger_system/services/bonus_pool_service.py
"""
Bonus pool management: per-order contributions and cycle settlement.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import List, Dict, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models import BonusPoolCycle, PoolContribution, LedgerEntry
from ledger_system.config.rates import (
    Account, EntryType, BONUS_POOL_CONTRIBUTION_RATE, BONUS_POOL_CYCLE_DAYS, PER_TOKEN_VALUE_PLACES
)
from ledger_system.events.event_bus import eventBus, LedgerEvents
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.partner_service import PartnerService
from ledger_system.utils.money import applyRate, proRataShare, formatMinor
from ledger_system.utils.time_machine import timeMachine
import config

logger = logging.getLogger(__name__)

# Contribution retries when settlement rotates the cycle mid-update
MAX_CONTRIBUTION_ATTEMPTS = 3
# Upper bound for catching up elapsed cycles in one run
MAX_CYCLES_PER_RUN = 100


class BonusPoolService:
    """Service for the shared dividend pool."""

    def __init__(self, session: Session):
        self.session = session
        self.balanceService = BalanceService(session)
        self.partnerService = PartnerService(session)

    def _findOpenCycle(self) -> Optional[BonusPoolCycle]:
        return self.session.query(BonusPoolCycle).filter_by(
            status="open"
        ).order_by(BonusPoolCycle.cycleNumber).first()

    async def getCurrentCycle(self) -> BonusPoolCycle:
        """Cycle currently receiving contributions; the first one opens on demand."""
        cycle = self._findOpenCycle()
        if cycle:
            return cycle

        return await self._openCycle(startAt=timeMachine.now)

    async def _openCycle(self, startAt: datetime, carriedIn: int = 0) -> BonusPoolCycle:
        lastNumber = self.session.query(func.max(BonusPoolCycle.cycleNumber)).scalar() or 0

        cycle = BonusPoolCycle(
            cycleNumber=lastNumber + 1,
            startAt=startAt,
            endAt=startAt + timedelta(days=BONUS_POOL_CYCLE_DAYS),
            status="open",
            contributionRate=BONUS_POOL_CONTRIBUTION_RATE,
            totalSales=0,
            poolAmount=carriedIn,
            carriedInAmount=carriedIn
        )

        try:
            with self.session.begin_nested():
                self.session.add(cycle)
        except IntegrityError:
            # Another worker opened this cycle number first
            existing = self._findOpenCycle()
            if existing:
                return existing
            raise

        logger.info(
            f"Bonus pool cycle {cycle.cycleNumber} opened: "
            f"{cycle.startAt} - {cycle.endAt}, carried in {carriedIn}"
        )
        await eventBus.emit(LedgerEvents.CYCLE_OPENED, {
            "cycleId": cycle.cycleID,
            "cycleNumber": cycle.cycleNumber
        })
        return cycle

    async def contribute(self, orderAmount: int, orderId: Optional[str] = None) -> Dict:
        """
        Add orderAmount x contributionRate to the open cycle.
        The increment runs store-side so concurrent orders never lose updates.
        Does not commit; the caller owns the transaction.
        """
        if orderAmount <= 0:
            return {"success": False, "error": "Order amount must be positive"}

        if orderId:
            existing = self.session.query(PoolContribution).filter_by(orderID=orderId).first()
            if existing:
                logger.info(f"Order {orderId} already contributed {existing.amount} to cycle {existing.cycleID}")
                return {
                    "success": True,
                    "alreadyContributed": True,
                    "cycleId": existing.cycleID,
                    "contribution": existing.amount
                }

        for attempt in range(MAX_CONTRIBUTION_ATTEMPTS):
            cycle = await self.getCurrentCycle()
            contribution = applyRate(orderAmount, Decimal(str(cycle.contributionRate)))

            updated = self.session.query(BonusPoolCycle).filter(
                BonusPoolCycle.cycleID == cycle.cycleID,
                BonusPoolCycle.status == "open"
            ).update({
                BonusPoolCycle.poolAmount: BonusPoolCycle.poolAmount + contribution,
                BonusPoolCycle.totalSales: BonusPoolCycle.totalSales + orderAmount
            }, synchronize_session=False)

            self.session.expire(cycle)

            if updated:
                break

            logger.warning(f"Cycle {cycle.cycleID} closed during contribution, retrying (attempt {attempt + 1})")
        else:
            raise RuntimeError("No open bonus pool cycle accepted the contribution")

        if orderId:
            self.session.add(PoolContribution(
                cycleID=cycle.cycleID,
                orderID=orderId,
                saleAmount=orderAmount,
                amount=contribution
            ))
            self.session.flush()

        logger.info(
            f"Bonus pool cycle {cycle.cycleNumber}: +{formatMinor(contribution)} "
            f"from sale {formatMinor(orderAmount)} (order {orderId})"
        )

        await eventBus.emit(LedgerEvents.POOL_CONTRIBUTED, {
            "cycleId": cycle.cycleID,
            "orderId": orderId,
            "saleAmount": orderAmount,
            "contribution": contribution
        })

        return {
            "success": True,
            "cycleId": cycle.cycleID,
            "cycleNumber": cycle.cycleNumber,
            "contribution": contribution
        }

    async def reverseContribution(self, orderId: str) -> Dict:
        """Take a cancelled order's contribution back out of a still-open cycle."""
        contribution = self.session.query(PoolContribution).filter_by(orderID=orderId).first()
        if not contribution:
            return {"success": True, "reversed": False, "reason": "no_contribution"}

        if contribution.reversedAt:
            return {"success": True, "reversed": False, "reason": "already_reversed"}

        updated = self.session.query(BonusPoolCycle).filter(
            BonusPoolCycle.cycleID == contribution.cycleID,
            BonusPoolCycle.status == "open"
        ).update({
            BonusPoolCycle.poolAmount: BonusPoolCycle.poolAmount - contribution.amount,
            BonusPoolCycle.totalSales: BonusPoolCycle.totalSales - contribution.saleAmount
        }, synchronize_session=False)

        if not updated:
            logger.warning(
                f"Contribution of order {orderId} belongs to settled cycle {contribution.cycleID}, "
                f"left in place"
            )
            return {"success": True, "reversed": False, "reason": "cycle_settled"}

        contribution.reversedAt = timeMachine.now
        self.session.flush()

        logger.info(f"Reversed contribution {contribution.amount} of order {orderId}")
        return {"success": True, "reversed": True, "amount": contribution.amount}

    async def settle(self, cycleId: int) -> Dict:
        """
        Distribute a cycle's pool pro-rata across outstanding tokens.

        The cycle is claimed with a conditional open -> settling update that
        also requires its end to have passed, so an early, second or
        concurrent call is a no-op. Claim, payout entries,
        closing figures and the next cycle are committed together; any
        storage error rolls all of it back and propagates.
        """
        claimed = self.session.query(BonusPoolCycle).filter(
            BonusPoolCycle.cycleID == cycleId,
            BonusPoolCycle.status == "open",
            BonusPoolCycle.endAt <= timeMachine.now
        ).update({BonusPoolCycle.status: "settling"}, synchronize_session=False)

        if not claimed:
            cycle = self.session.get(BonusPoolCycle, cycleId, populate_existing=True)
            if not cycle:
                logger.error(f"Bonus pool cycle {cycleId} not found")
                return {"success": False, "error": "Cycle not found"}

            if cycle.status == "open":
                logger.info(f"Bonus pool cycle {cycle.cycleNumber} runs until {cycle.endAt}, not settling yet")
                return {
                    "success": True,
                    "settled": False,
                    "reason": "not_due",
                    "cycleId": cycle.cycleID,
                    "endAt": cycle.endAt.isoformat()
                }

            logger.info(f"Bonus pool cycle {cycle.cycleNumber} already {cycle.status}, skipping")
            return {
                "success": True,
                "alreadySettled": True,
                "cycleId": cycle.cycleID,
                "status": cycle.status
            }

        try:
            cycle = self.session.get(BonusPoolCycle, cycleId)
            self.session.refresh(cycle)

            poolAmount = int(cycle.poolAmount or 0)
            holders = await self.partnerService.getTokenHolders()
            totalTokens = sum(holder["tokens"] for holder in holders)

            payouts = []
            distributed = 0

            if totalTokens == 0:
                logger.warning(
                    f"Bonus pool cycle {cycle.cycleNumber} has no outstanding tokens, "
                    f"pool {formatMinor(poolAmount)} left unallocated"
                )
                perTokenValue = Decimal("0")
            else:
                perTokenValue = (Decimal(poolAmount) / Decimal(totalTokens)).quantize(
                    PER_TOKEN_VALUE_PLACES, rounding=ROUND_DOWN
                )

                for holder in holders:
                    payout = proRataShare(poolAmount, holder["tokens"], totalTokens)
                    if payout <= 0:
                        continue

                    await self.balanceService.recordEntry(
                        ownerId=holder["memberId"],
                        account=Account.CASH,
                        entryType=EntryType.BONUS_POOL_PAYOUT,
                        amount=payout,
                        description=(
                            f"Cycle {cycle.cycleNumber} bonus pool payout "
                            f"({holder['tokens']} of {totalTokens} tokens)"
                        ),
                        cycleId=cycle.cycleID,
                        referenceType="bonus_pool_cycle",
                        referenceId=str(cycle.cycleID)
                    )

                    distributed += payout
                    payouts.append({
                        "memberId": holder["memberId"],
                        "tokens": holder["tokens"],
                        "amount": payout
                    })

            unallocated = poolAmount - distributed

            cycle.status = "settled"
            cycle.totalTokens = totalTokens
            cycle.perTokenValue = perTokenValue
            cycle.distributedAmount = distributed
            cycle.unallocatedAmount = unallocated
            cycle.payoutCount = len(payouts)
            cycle.settledAt = timeMachine.now

            carriedIn = unallocated if config.BONUS_POOL_CARRY_UNALLOCATED else 0
            nextCycle = await self._openCycle(startAt=cycle.endAt, carriedIn=carriedIn)

            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.error(f"Settlement of bonus pool cycle {cycleId} failed: {e}", exc_info=True)
            raise

        logger.info(
            f"Bonus pool cycle {cycle.cycleNumber} settled: pool={formatMinor(poolAmount)}, "
            f"tokens={totalTokens}, perToken={perTokenValue}, distributed={formatMinor(distributed)}, "
            f"unallocated={formatMinor(unallocated)}, payouts={len(payouts)}"
        )

        await eventBus.emit(LedgerEvents.CYCLE_SETTLED, {
            "cycleId": cycle.cycleID,
            "cycleNumber": cycle.cycleNumber,
            "poolAmount": poolAmount,
            "distributed": distributed,
            "unallocated": unallocated
        })

        return {
            "success": True,
            "cycleId": cycle.cycleID,
            "cycleNumber": cycle.cycleNumber,
            "poolAmount": poolAmount,
            "totalTokens": totalTokens,
            "perTokenValue": perTokenValue,
            "distributed": distributed,
            "unallocated": unallocated,
            "payouts": payouts,
            "nextCycleId": nextCycle.cycleID
        }

    async def settleDueCycles(self) -> Dict:
        """Settle the open cycle while its end has passed; safe to call at any time."""
        settled = []

        for _ in range(MAX_CYCLES_PER_RUN):
            cycle = self._findOpenCycle()
            if not cycle or cycle.endAt > timeMachine.now:
                break

            result = await self.settle(cycle.cycleID)
            if result.get("settled") is False:
                break
            if not result.get("alreadySettled"):
                settled.append(result)

        return {
            "success": True,
            "settled": settled
        }

    async def getPoolStatus(self) -> Dict:
        cycle = self._findOpenCycle()
        if not cycle:
            return {"open": None}

        return {"open": self._cycleToDict(cycle)}

    async def getCycleHistory(self, limit: int = 6) -> List[Dict]:
        """Most recent cycles first."""
        cycles = self.session.query(BonusPoolCycle).order_by(
            BonusPoolCycle.cycleNumber.desc()
        ).limit(limit).all()

        return [self._cycleToDict(cycle) for cycle in cycles]

    async def getCyclePayouts(self, cycleId: int) -> List[Dict]:
        entries = self.session.query(LedgerEntry).filter(
            LedgerEntry.cycleID == cycleId,
            LedgerEntry.entryType == EntryType.BONUS_POOL_PAYOUT
        ).order_by(LedgerEntry.entryID).all()

        return [
            {
                "entryId": entry.entryID,
                "memberId": entry.ownerID,
                "amount": entry.amount,
                "createdAt": entry.createdAt.isoformat() if entry.createdAt else None
            }
            for entry in entries
        ]

    @staticmethod
    def _cycleToDict(cycle: BonusPoolCycle) -> Dict:
        return {
            "cycleId": cycle.cycleID,
            "cycleNumber": cycle.cycleNumber,
            "status": cycle.status,
            "startAt": cycle.startAt.isoformat() if cycle.startAt else None,
            "endAt": cycle.endAt.isoformat() if cycle.endAt else None,
            "contributionRate": str(cycle.contributionRate),
            "totalSales": cycle.totalSales,
            "poolAmount": cycle.poolAmount,
            "carriedInAmount": cycle.carriedInAmount,
            "totalTokens": cycle.totalTokens,
            "perTokenValue": str(cycle.perTokenValue) if cycle.perTokenValue is not None else None,
            "distributedAmount": cycle.distributedAmount,
            "unallocatedAmount": cycle.unallocatedAmount,
            "payoutCount": cycle.payoutCount,
            "settledAt": cycle.settledAt.isoformat() if cycle.settledAt else None
        }
