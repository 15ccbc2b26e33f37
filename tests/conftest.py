"""
Shared fixtures: a throwaway SQLite database per test, reset singletons
and small factories for members and partners.
"""
import asyncio
from datetime import datetime

import pytest

from init import get_session, init_tables
from models import Member, InventoryItem
from ledger_system.events.event_bus import eventBus
from ledger_system.services.member_service import generateReferralCode
from ledger_system.services.partner_service import PartnerService
from ledger_system.utils.time_machine import timeMachine

START = datetime(2025, 1, 1, 0, 0, 0)


@pytest.fixture
def session_factory(tmp_path):
    factory, engine = get_session(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_tables(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_singletons():
    eventBus.clear()
    timeMachine.setTime(START)
    yield
    eventBus.clear()
    timeMachine.resetToRealTime()


@pytest.fixture
def make_member(session):
    def factory(name: str, referrer: Member = None, userId: str = None) -> Member:
        member = Member(
            userID=userId,
            name=name,
            referralCode=generateReferralCode(),
            referrerID=referrer.memberID if referrer else None
        )
        session.add(member)
        session.commit()
        return member

    return factory


@pytest.fixture
def make_partner(session, make_member):
    """Member enrolled as a phase1 partner holding the given number of tokens."""
    def factory(name: str, tokens: int = 1, referrer: Member = None) -> Member:
        member = make_member(name, referrer=referrer)
        service = PartnerService(session)
        result = asyncio.run(service.enrollPartner(member.memberID, "phase1", paymentReference=f"pay-{name}"))
        assert result["success"]
        if tokens != 1:
            adjusted = asyncio.run(service.adjustTokens(member.memberID, tokens - 1, adminId=1, reason="setup"))
            assert adjusted["success"]
        return member

    return factory


@pytest.fixture
def stock(session):
    def factory(sku: str, quantity: int) -> InventoryItem:
        item = InventoryItem(sku=sku, name=sku, quantity=quantity)
        session.add(item)
        session.commit()
        return item

    return factory
