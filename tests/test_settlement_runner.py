"""
Tests for the scheduled settlement pass and CSV reports
"""
import asyncio
import csv
import io

from models import BonusPoolCycle
from ledger_system.services.bonus_pool_service import BonusPoolService
from ledger_system.utils.time_machine import timeMachine
from settlement_runner import SettlementRunner
from csv_reports import generate_csv_report


def read_report(output):
    text = output.read().decode("utf-8-sig")
    return list(csv.reader(io.StringIO(text), delimiter=";"))


class TestSettlementRunner:

    def test_unexpired_cycle_left_open(self, session_factory, session):
        asyncio.run(BonusPoolService(session).contribute(10000, orderId="ord-1"))
        session.commit()
        session.close()

        result = asyncio.run(SettlementRunner(check_interval=1, session_factory=session_factory).process_due_cycles())

        assert result["settled"] == []
        assert session.query(BonusPoolCycle).one().status == "open"

    def test_due_cycle_settled(self, session_factory, session, make_partner):
        make_partner("Holder")
        asyncio.run(BonusPoolService(session).contribute(10000, orderId="ord-1"))
        session.commit()
        session.close()
        timeMachine.advanceTime(days=10)

        runner = SettlementRunner(check_interval=1, session_factory=session_factory)
        first = asyncio.run(runner.process_due_cycles())
        second = asyncio.run(runner.process_due_cycles())

        assert [cycle["distributed"] for cycle in first["settled"]] == [3000]
        assert second["settled"] == []
        statuses = [cycle.status for cycle in session.query(BonusPoolCycle).order_by(BonusPoolCycle.cycleNumber)]
        assert statuses == ["settled", "open"]

    def test_stop_ends_loop(self, session_factory):
        runner = SettlementRunner(check_interval=0.01, session_factory=session_factory)

        async def scenario():
            task = asyncio.create_task(runner.run())
            await asyncio.sleep(0.05)
            await runner.stop()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(scenario())


class TestCsvReports:

    def test_ledger_entries_for_owner(self, session, make_partner):
        partner = make_partner("Holder")

        rows = read_report(generate_csv_report(session, "ledger_entries", {"ownerId": str(partner.memberID)}))

        assert len(rows) == 3
        assert {row[4] for row in rows[1:]} == {"tokens", "points"}

    def test_cycle_payouts_requires_cycle(self, session):
        assert generate_csv_report(session, "cycle_payouts", {}) is None

    def test_unknown_report(self, session):
        assert generate_csv_report(session, "nope") is None
