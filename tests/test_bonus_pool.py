"""
Unit Tests for the bonus pool

Tests cover:
1. Contributions into the open cycle
2. Pro-rata settlement and rounding dust
3. Double and empty settlement
4. Cycle rotation and catch-up
5. Contribution reversal
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import config
from models import BonusPoolCycle, LedgerEntry, PoolContribution
from ledger_system.config.rates import Account, EntryType
from ledger_system.events.event_bus import eventBus, LedgerEvents
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.bonus_pool_service import BonusPoolService
from ledger_system.utils.time_machine import timeMachine

START = datetime(2025, 1, 1)


def contribute_orders(session, service, amounts):
    async def scenario():
        for index, amount in enumerate(amounts, start=1):
            await service.contribute(amount, orderId=f"order-{index}")
        session.commit()

    asyncio.run(scenario())


def due_cycle(service):
    """Open cycle with virtual time moved to its end."""
    cycle = asyncio.run(service.getCurrentCycle())
    timeMachine.setTime(cycle.endAt)
    return cycle


class TestContribute:

    def test_first_contribution_opens_cycle(self, session):
        service = BonusPoolService(session)

        result = asyncio.run(service.contribute(10000, orderId="order-1"))
        session.commit()

        cycle = session.get(BonusPoolCycle, result["cycleId"])
        assert result["contribution"] == 3000
        assert cycle.cycleNumber == 1
        assert cycle.startAt == START
        assert cycle.endAt == START + timedelta(days=10)
        assert cycle.poolAmount == 3000
        assert cycle.totalSales == 10000

    def test_contribution_rounds_down(self, session):
        service = BonusPoolService(session)

        result = asyncio.run(service.contribute(333))
        session.commit()

        assert result["contribution"] == 99

    def test_same_order_contributes_once(self, session):
        service = BonusPoolService(session)

        async def scenario():
            first = await service.contribute(10000, orderId="order-1")
            second = await service.contribute(10000, orderId="order-1")
            session.commit()
            return first, second

        first, second = asyncio.run(scenario())

        assert second["alreadyContributed"]
        assert session.get(BonusPoolCycle, first["cycleId"]).poolAmount == 3000
        assert session.query(PoolContribution).count() == 1

    def test_non_positive_amount_rejected(self, session):
        result = asyncio.run(BonusPoolService(session).contribute(0))

        assert not result["success"]


class TestSettle:

    def test_settlement_scenario_with_dust(self, session, make_partner):
        """RM100 + RM200 + RM50 at 30% over tokens 1, 1, 2, 4."""
        holders = [
            make_partner("p1", tokens=1),
            make_partner("p2", tokens=1),
            make_partner("p3", tokens=2),
            make_partner("p4", tokens=4),
        ]
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000, 20000, 5000])

        cycle = due_cycle(service)
        assert cycle.poolAmount == 10500

        result = asyncio.run(service.settle(cycle.cycleID))

        assert result["success"]
        assert result["totalTokens"] == 8
        assert [payout["amount"] for payout in result["payouts"]] == [1312, 1312, 2625, 5250]
        assert result["distributed"] == 10499
        assert result["unallocated"] == 1
        assert result["perTokenValue"] == Decimal("1312.5")

        balances = BalanceService(session)
        paid = [asyncio.run(balances.getBalance(member.memberID, Account.CASH)) for member in holders]
        assert paid == [1312, 1312, 2625, 5250]

        settled = session.get(BonusPoolCycle, cycle.cycleID)
        assert settled.status == "settled"
        assert settled.distributedAmount + settled.unallocatedAmount == settled.poolAmount
        assert settled.payoutCount == 4

    def test_payouts_reference_cycle(self, session, make_partner):
        make_partner("p1")
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = due_cycle(service)

        asyncio.run(service.settle(cycle.cycleID))

        entry = session.query(LedgerEntry).filter_by(entryType=EntryType.BONUS_POOL_PAYOUT).one()
        assert entry.cycleID == cycle.cycleID
        assert entry.account == Account.CASH
        assert asyncio.run(service.getCyclePayouts(cycle.cycleID))[0]["amount"] == 3000

    def test_second_settlement_is_noop(self, session, make_partner):
        make_partner("p1")
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = due_cycle(service)

        first = asyncio.run(service.settle(cycle.cycleID))
        second = asyncio.run(service.settle(cycle.cycleID))

        assert not first.get("alreadySettled")
        assert second["alreadySettled"]
        assert session.query(LedgerEntry).filter_by(entryType=EntryType.BONUS_POOL_PAYOUT).count() == 1
        assert session.query(BonusPoolCycle).count() == 2

    def test_zero_tokens_leaves_pool_unallocated(self, session):
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = due_cycle(service)

        result = asyncio.run(service.settle(cycle.cycleID))

        assert result["success"]
        assert result["payouts"] == []
        assert result["distributed"] == 0
        assert result["unallocated"] == 3000
        assert session.query(LedgerEntry).count() == 0

    def test_next_cycle_starts_at_previous_end(self, session, make_partner):
        make_partner("p1")
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = due_cycle(service)

        result = asyncio.run(service.settle(cycle.cycleID))

        nextCycle = session.get(BonusPoolCycle, result["nextCycleId"])
        assert nextCycle.cycleNumber == 2
        assert nextCycle.status == "open"
        assert nextCycle.startAt == cycle.endAt
        assert nextCycle.endAt == cycle.endAt + timedelta(days=10)
        assert nextCycle.poolAmount == 0

    def test_unallocated_carried_when_enabled(self, session, monkeypatch):
        monkeypatch.setattr(config, "BONUS_POOL_CARRY_UNALLOCATED", True)
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = due_cycle(service)

        result = asyncio.run(service.settle(cycle.cycleID))

        nextCycle = session.get(BonusPoolCycle, result["nextCycleId"])
        assert nextCycle.poolAmount == 3000
        assert nextCycle.carriedInAmount == 3000

    def test_settled_event_emitted(self, session):
        received = []
        eventBus.subscribe(LedgerEvents.CYCLE_SETTLED, received.append)
        service = BonusPoolService(session)
        cycle = due_cycle(service)
        session.commit()

        asyncio.run(service.settle(cycle.cycleID))

        assert len(received) == 1
        assert received[0]["cycleId"] == cycle.cycleID

    def test_cycle_before_its_end_is_not_settled(self, session, make_partner):
        make_partner("p1")
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = asyncio.run(service.getCurrentCycle())
        timeMachine.setTime(cycle.endAt - timedelta(seconds=1))

        result = asyncio.run(service.settle(cycle.cycleID))

        assert result["success"]
        assert result["settled"] is False
        assert result["reason"] == "not_due"
        assert session.query(LedgerEntry).filter_by(entryType=EntryType.BONUS_POOL_PAYOUT).count() == 0
        assert session.query(BonusPoolCycle).count() == 1
        reloaded = session.get(BonusPoolCycle, cycle.cycleID)
        assert reloaded.status == "open"
        assert reloaded.poolAmount == 3000

    def test_unknown_cycle(self, session):
        result = asyncio.run(BonusPoolService(session).settle(999))

        assert not result["success"]

    def test_failed_settlement_rolls_back(self, session, make_partner, monkeypatch):
        make_partner("p1")
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = due_cycle(service)
        cycleId = cycle.cycleID

        async def broken(*args, **kwargs):
            raise RuntimeError("storage unavailable")

        monkeypatch.setattr(service.balanceService, "recordEntry", broken)

        with pytest.raises(RuntimeError):
            asyncio.run(service.settle(cycleId))

        reloaded = session.get(BonusPoolCycle, cycleId)
        assert reloaded.status == "open"
        assert session.query(BonusPoolCycle).count() == 1
        assert session.query(LedgerEntry).filter_by(entryType=EntryType.BONUS_POOL_PAYOUT).count() == 0


class TestSettleDueCycles:

    def test_unexpired_cycle_is_left_open(self, session):
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])

        result = asyncio.run(service.settleDueCycles())

        assert result["settled"] == []
        assert asyncio.run(service.getCurrentCycle()).cycleNumber == 1

    def test_catches_up_elapsed_cycles(self, session):
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])

        timeMachine.advanceTime(days=25)
        result = asyncio.run(service.settleDueCycles())

        assert [settled["cycleNumber"] for settled in result["settled"]] == [1, 2]
        current = asyncio.run(service.getCurrentCycle())
        assert current.cycleNumber == 3
        assert current.startAt == START + timedelta(days=20)

    def test_contribution_after_rotation_goes_to_new_cycle(self, session):
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        timeMachine.advanceTime(days=10)
        asyncio.run(service.settleDueCycles())

        result = asyncio.run(service.contribute(20000, orderId="order-late"))
        session.commit()

        assert result["cycleNumber"] == 2
        history = asyncio.run(service.getCycleHistory())
        assert [cycle["poolAmount"] for cycle in history] == [6000, 3000]


class TestReverseContribution:

    def test_open_cycle_contribution_is_withdrawn(self, session):
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000, 20000])

        result = asyncio.run(service.reverseContribution("order-2"))
        session.commit()

        assert result["reversed"]
        cycle = asyncio.run(service.getCurrentCycle())
        assert cycle.poolAmount == 3000
        assert cycle.totalSales == 10000

        again = asyncio.run(service.reverseContribution("order-2"))
        assert again["reason"] == "already_reversed"

    def test_settled_cycle_is_untouched(self, session):
        service = BonusPoolService(session)
        contribute_orders(session, service, [10000])
        cycle = due_cycle(service)
        asyncio.run(service.settle(cycle.cycleID))

        result = asyncio.run(service.reverseContribution("order-1"))

        assert not result["reversed"]
        assert result["reason"] == "cycle_settled"
        assert session.get(BonusPoolCycle, cycle.cycleID).poolAmount == 3000
