"""
Unit Tests for the balance store

Tests cover:
1. Entry recording and cached balances
2. Input validation
3. Offsetting reversals
4. Cache reconciliation
"""
import asyncio

import pytest

from models import LedgerEntry, BalanceCache
from ledger_system.config.rates import Account, EntryType
from ledger_system.services.balance_service import BalanceService


class TestRecordEntry:

    def test_cached_balance_matches_entry_sum(self, session, make_member):
        """Cache and ledger sum agree after mixed credits and debits."""
        member = make_member("Alice")
        service = BalanceService(session)

        async def scenario():
            await service.recordEntry(member.memberID, Account.POINTS, EntryType.EARN, 500, "Purchase reward")
            await service.recordEntry(member.memberID, Account.POINTS, EntryType.EARN, 250, "Purchase reward")
            await service.recordEntry(member.memberID, Account.POINTS, EntryType.SPEND, -300, "Redeemed")
            session.commit()
            return (
                await service.getBalance(member.memberID, Account.POINTS),
                await service.getBalance(member.memberID, Account.POINTS, fresh=True)
            )

        cached, fresh = asyncio.run(scenario())

        assert cached == 450
        assert fresh == 450
        assert session.query(LedgerEntry).count() == 3

    def test_accounts_are_independent(self, session, make_member):
        member = make_member("Bob")
        service = BalanceService(session)

        async def scenario():
            await service.recordEntry(member.memberID, Account.CASH, EntryType.COMMISSION, 1000, "Commission")
            await service.recordEntry(member.memberID, Account.TOKENS, EntryType.TIER_GRANT, 2, "Grant")
            session.commit()
            return await service.getBalances(member.memberID)

        balances = asyncio.run(scenario())

        assert balances == {Account.POINTS: 0, Account.TOKENS: 2, Account.CASH: 1000}

    def test_rolled_back_entry_leaves_no_trace(self, session, make_member):
        """Entry and cache land together or not at all."""
        member = make_member("Carol")
        service = BalanceService(session)

        async def scenario():
            await service.recordEntry(member.memberID, Account.CASH, EntryType.EARN, 700, "Kept")
            session.commit()
            await service.recordEntry(member.memberID, Account.CASH, EntryType.EARN, 300, "Discarded")
            session.rollback()
            return await service.getBalance(member.memberID, Account.CASH)

        assert asyncio.run(scenario()) == 700
        assert session.query(LedgerEntry).count() == 1

    @pytest.mark.parametrize("account,amount", [
        ("wallet", 100),
        (Account.CASH, 0),
        (Account.CASH, 12.5),
        (Account.CASH, True),
    ])
    def test_invalid_entries_rejected(self, session, make_member, account, amount):
        member = make_member("Dave")
        service = BalanceService(session)

        with pytest.raises(ValueError):
            asyncio.run(service.recordEntry(member.memberID, account, EntryType.EARN, amount, "Bad"))


class TestReverseEntries:

    def test_reversal_offsets_once(self, session, make_member):
        """A repeated reversal writes nothing new."""
        member = make_member("Erin")
        service = BalanceService(session)

        async def scenario():
            await service.recordEntry(
                member.memberID, Account.CASH, EntryType.COMMISSION, 1000, "Commission", orderId="ord-1"
            )
            session.commit()
            first = await service.reverseEntries("ord-1", EntryType.COMMISSION, "Order cancelled")
            session.commit()
            second = await service.reverseEntries("ord-1", EntryType.COMMISSION, "Order cancelled")
            session.commit()
            return first, second, await service.getBalance(member.memberID, Account.CASH)

        first, second, balance = asyncio.run(scenario())

        assert len(first) == 1
        assert first[0].amount == -1000
        assert first[0].entryType == EntryType.REFUND
        assert second == []
        assert balance == 0


class TestReconcile:

    def test_drift_is_reported_and_repaired(self, session, make_member):
        member = make_member("Frank")
        service = BalanceService(session)

        asyncio.run(service.recordEntry(member.memberID, Account.POINTS, EntryType.EARN, 900, "Reward"))
        session.commit()

        cache = session.query(BalanceCache).filter_by(ownerID=member.memberID, account=Account.POINTS).one()
        cache.amount = 1
        session.commit()

        result = asyncio.run(service.reconcile())

        assert result["success"]
        assert result["drifts"] == [{
            "ownerId": member.memberID,
            "account": Account.POINTS,
            "cached": 1,
            "ledger": 900
        }]
        assert asyncio.run(service.getBalance(member.memberID, Account.POINTS)) == 900

    def test_missing_cache_row_is_rebuilt(self, session, make_member):
        member = make_member("Grace")
        service = BalanceService(session)

        asyncio.run(service.recordEntry(member.memberID, Account.CASH, EntryType.EARN, 42, "Reward"))
        session.commit()
        session.query(BalanceCache).delete()
        session.commit()

        result = asyncio.run(service.reconcile(ownerId=member.memberID))

        assert result["drifts"] == []
        assert session.query(BalanceCache).filter_by(ownerID=member.memberID).one().amount == 42
