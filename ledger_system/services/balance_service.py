# ledger_system/services/balance_service.py
"""
Points/token/cash balance store.
Balances are derived from ledger entries; the cache table is a read
optimisation updated in the same transaction as every entry insert.
"""
from typing import List, Dict, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models import LedgerEntry, BalanceCache, utcNow
from ledger_system.config.rates import Account, EntryType

logger = logging.getLogger(__name__)


class BalanceService:
    """The only sanctioned way to change a balance."""

    def __init__(self, session: Session):
        self.session = session

    async def recordEntry(
            self,
            ownerId: int,
            account: str,
            entryType: str,
            amount: int,
            description: str,
            orderId: Optional[str] = None,
            cycleId: Optional[int] = None,
            referenceType: Optional[str] = None,
            referenceId: Optional[str] = None
    ) -> LedgerEntry:
        """
        Append a ledger entry and bring the cached balance along.
        Does not commit: the caller owns the transaction so that an entry
        and the writes it belongs to land together or not at all.
        """
        if account not in Account.ALL:
            raise ValueError(f"Unknown account: {account}")
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValueError(f"Ledger amounts are integer minor units, got {amount!r}")
        if amount == 0:
            raise ValueError("Ledger entry amount must be non-zero")

        entry = LedgerEntry(
            ownerID=ownerId,
            account=account,
            entryType=entryType,
            amount=amount,
            description=description,
            orderID=orderId,
            cycleID=cycleId,
            referenceType=referenceType,
            referenceID=referenceId
        )
        self.session.add(entry)
        self.session.flush()

        self._applyToCache(ownerId, account, amount)

        logger.info(
            f"Ledger entry {entry.entryID}: owner={ownerId} {account} "
            f"{amount:+d} ({entryType})"
        )
        return entry

    def _applyToCache(self, ownerId: int, account: str, amount: int):
        updated = self.session.query(BalanceCache).filter_by(
            ownerID=ownerId,
            account=account
        ).update(
            {BalanceCache.amount: BalanceCache.amount + amount, BalanceCache.updatedAt: utcNow()},
            synchronize_session=False
        )

        if updated:
            return

        # First cached balance for this account: build it from the ledger,
        # which already includes the flushed entry
        total = self._sumEntries(ownerId, account)
        try:
            with self.session.begin_nested():
                self.session.add(BalanceCache(ownerID=ownerId, account=account, amount=total))
        except IntegrityError:
            # A concurrent writer created the row from its own snapshot
            self.session.query(BalanceCache).filter_by(
                ownerID=ownerId,
                account=account
            ).update(
                {BalanceCache.amount: BalanceCache.amount + amount, BalanceCache.updatedAt: utcNow()},
                synchronize_session=False
            )

    def _sumEntries(self, ownerId: int, account: str) -> int:
        total = self.session.query(
            func.coalesce(func.sum(LedgerEntry.amount), 0)
        ).filter(
            LedgerEntry.ownerID == ownerId,
            LedgerEntry.account == account
        ).scalar()
        return int(total)

    async def getBalance(self, ownerId: int, account: str, fresh: bool = False) -> int:
        """Current balance; fresh=True bypasses the cache and sums the ledger."""
        if fresh:
            return self._sumEntries(ownerId, account)

        cached = self.session.query(BalanceCache.amount).filter_by(
            ownerID=ownerId,
            account=account
        ).scalar()

        if cached is None:
            return self._sumEntries(ownerId, account)
        return int(cached)

    async def getBalances(self, ownerId: int) -> Dict[str, int]:
        return {account: await self.getBalance(ownerId, account) for account in Account.ALL}

    async def getEntries(
            self,
            ownerId: int,
            account: Optional[str] = None,
            limit: int = 50
    ) -> List[LedgerEntry]:
        query = self.session.query(LedgerEntry).filter(LedgerEntry.ownerID == ownerId)
        if account:
            query = query.filter(LedgerEntry.account == account)

        return query.order_by(LedgerEntry.entryID.desc()).limit(limit).all()

    async def reverseEntries(
            self,
            orderId: str,
            entryType: str,
            description: str
    ) -> List[LedgerEntry]:
        """
        Offset every entry of a type written for an order.
        Entries already offset are skipped, so a repeated call adds nothing.
        """
        originals = self.session.query(LedgerEntry).filter(
            LedgerEntry.orderID == orderId,
            LedgerEntry.entryType == entryType
        ).order_by(LedgerEntry.entryID).all()

        reversals = []
        for original in originals:
            alreadyReversed = self.session.query(LedgerEntry.entryID).filter(
                LedgerEntry.entryType == EntryType.REFUND,
                LedgerEntry.referenceType == "ledger_entry",
                LedgerEntry.referenceID == str(original.entryID)
            ).first()

            if alreadyReversed:
                continue

            reversal = await self.recordEntry(
                ownerId=original.ownerID,
                account=original.account,
                entryType=EntryType.REFUND,
                amount=-original.amount,
                description=description,
                orderId=orderId,
                cycleId=original.cycleID,
                referenceType="ledger_entry",
                referenceId=str(original.entryID)
            )
            reversals.append(reversal)

        return reversals

    async def reconcile(self, ownerId: Optional[int] = None) -> Dict:
        """Rebuild cached balances from the ledger and report any drift."""
        query = self.session.query(
            LedgerEntry.ownerID,
            LedgerEntry.account,
            func.sum(LedgerEntry.amount)
        ).group_by(LedgerEntry.ownerID, LedgerEntry.account)
        if ownerId is not None:
            query = query.filter(LedgerEntry.ownerID == ownerId)

        drifts = []
        checked = 0
        for rowOwner, account, total in query.all():
            checked += 1
            total = int(total or 0)
            cache = self.session.query(BalanceCache).filter_by(
                ownerID=rowOwner,
                account=account
            ).first()

            if cache is None:
                self.session.add(BalanceCache(ownerID=rowOwner, account=account, amount=total))
                continue

            if int(cache.amount) != total:
                logger.warning(
                    f"Balance cache drift for owner {rowOwner} {account}: "
                    f"cached={cache.amount}, ledger={total}"
                )
                drifts.append({
                    "ownerId": rowOwner,
                    "account": account,
                    "cached": int(cache.amount),
                    "ledger": total
                })
                cache.amount = total

        self.session.commit()

        return {
            "success": True,
            "checked": checked,
            "drifts": drifts
        }
