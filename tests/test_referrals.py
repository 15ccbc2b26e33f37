"""
Unit Tests for referrals, commissions and partner enrollment

Tests cover:
1. First-write-wins referrer attachment
2. Order commission along the referral chain
3. Self-referral and loop handling
4. Partner enrollment, referral bonuses and token adjustment
"""
import asyncio
from decimal import Decimal

from models import LedgerEntry, Member, Partner
from ledger_system.config.rates import Account, EntryType
from ledger_system.events.event_bus import eventBus, LedgerEvents
from ledger_system.services import referral_service
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.member_service import MemberService
from ledger_system.services.partner_service import PartnerService
from ledger_system.services.referral_service import ReferralService


def cash(session, member):
    return asyncio.run(BalanceService(session).getBalance(member.memberID, Account.CASH))


class TestAttachReferrer:

    def test_first_write_wins(self, session, make_member):
        first = make_member("First")
        second = make_member("Second")
        newcomer = make_member("Newcomer")
        service = MemberService(session)

        attached = asyncio.run(service.attachReferrer(newcomer, first.referralCode))
        session.commit()
        replaced = asyncio.run(service.attachReferrer(newcomer, second.referralCode))
        session.commit()

        assert attached is True
        assert replaced is False
        assert session.get(Member, newcomer.memberID).referrerID == first.memberID

    def test_code_lookup_ignores_case(self, session, make_member):
        referrer = make_member("Referrer")
        newcomer = make_member("Newcomer")

        attached = asyncio.run(MemberService(session).attachReferrer(newcomer, f" {referrer.referralCode.lower()} "))

        assert attached is True
        assert newcomer.referrerID == referrer.memberID

    def test_unknown_code_ignored(self, session, make_member):
        newcomer = make_member("Newcomer")

        attached = asyncio.run(MemberService(session).attachReferrer(newcomer, "ZZZZZZ0"))

        assert attached is False
        assert newcomer.referrerID is None

    def test_own_code_ignored(self, session, make_member):
        member = make_member("Solo")

        attached = asyncio.run(MemberService(session).attachReferrer(member, member.referralCode))

        assert attached is False
        assert member.referrerID is None


class TestOrderCommission:

    def test_direct_referrer_gets_ten_percent(self, session, make_member):
        referrer = make_member("Referrer")
        buyer = make_member("Buyer", referrer=referrer)
        received = []
        eventBus.subscribe(LedgerEvents.COMMISSION_PAID, received.append)

        result = asyncio.run(ReferralService(session).processOrderCommission("ord-1", buyer.memberID, 10050))
        session.commit()

        assert result["totalDistributed"] == 1005
        assert cash(session, referrer) == 1005
        entry = session.query(LedgerEntry).filter_by(entryType=EntryType.COMMISSION).one()
        assert entry.orderID == "ord-1"
        assert entry.ownerID == referrer.memberID
        assert received[0]["amount"] == 1005

    def test_unreferred_buyer_pays_nothing(self, session, make_member):
        buyer = make_member("Buyer")

        result = asyncio.run(ReferralService(session).processOrderCommission("ord-1", buyer.memberID, 10000))

        assert result["commissions"] == []
        assert session.query(LedgerEntry).count() == 0

    def test_repeat_does_not_double_credit(self, session, make_member):
        referrer = make_member("Referrer")
        buyer = make_member("Buyer", referrer=referrer)
        service = ReferralService(session)

        asyncio.run(service.processOrderCommission("ord-1", buyer.memberID, 10000))
        session.commit()
        again = asyncio.run(service.processOrderCommission("ord-1", buyer.memberID, 10000))
        session.commit()

        assert again["skipped"][0]["reason"] == "already_credited"
        assert cash(session, referrer) == 1000

    def test_self_referral_loop_gets_no_credit(self, session, make_member):
        """A chain that leads back to the payer never credits the payer."""
        buyer = make_member("Buyer")
        other = make_member("Other", referrer=buyer)
        buyer.referrerID = other.memberID
        session.commit()

        asyncio.run(ReferralService(session).processOrderCommission("ord-1", buyer.memberID, 10000))
        session.commit()

        assert cash(session, buyer) == 0

    def test_payer_as_own_referrer_is_skipped(self, session, make_member):
        buyer = make_member("Buyer")
        buyer.referrerID = buyer.memberID
        session.commit()

        result = asyncio.run(ReferralService(session).processOrderCommission("ord-1", buyer.memberID, 10000))

        assert result["skipped"] == [{"level": 1, "memberId": buyer.memberID, "reason": "self_referral"}]
        assert session.query(LedgerEntry).count() == 0

    def test_multi_level_rates(self, session, make_member, monkeypatch):
        monkeypatch.setattr(referral_service, "REFERRAL_COMMISSION_RATES", [Decimal("0.10"), Decimal("0.05")])
        top = make_member("Top")
        middle = make_member("Middle", referrer=top)
        buyer = make_member("Buyer", referrer=middle)

        result = asyncio.run(ReferralService(session).processOrderCommission("ord-1", buyer.memberID, 10000))
        session.commit()

        assert [(c["level"], c["memberId"], c["amount"]) for c in result["commissions"]] == [
            (1, middle.memberID, 1000),
            (2, top.memberID, 500),
        ]


class TestPartnerEnrollment:

    def test_tier_grants_tokens_and_points(self, session, make_member):
        member = make_member("Partner")
        service = PartnerService(session)

        result = asyncio.run(service.enrollPartner(member.memberID, "phase2", paymentReference="pay-1"))

        assert result["success"]
        balances = asyncio.run(BalanceService(session).getBalances(member.memberID))
        assert balances[Account.TOKENS] == 1
        assert balances[Account.POINTS] == 2600
        assert session.get(Member, member.memberID).role == "partner"

    def test_enrollment_is_idempotent(self, session, make_member):
        member = make_member("Partner")
        service = PartnerService(session)

        asyncio.run(service.enrollPartner(member.memberID, "phase1", paymentReference="pay-1"))
        again = asyncio.run(service.enrollPartner(member.memberID, "phase1", paymentReference="pay-1"))

        assert again["alreadyEnrolled"]
        assert session.query(Partner).count() == 1
        assert asyncio.run(BalanceService(session).getBalance(member.memberID, Account.TOKENS)) == 1

    def test_unknown_tier_rejected(self, session, make_member):
        member = make_member("Partner")

        result = asyncio.run(PartnerService(session).enrollPartner(member.memberID, "gold"))

        assert not result["success"]

    def test_referral_bonuses_direct_and_indirect(self, session, make_member, make_partner):
        grand = make_partner("Grand")
        parent = make_partner("Parent", referrer=grand)
        newcomer = make_member("Newcomer")
        grandCashBefore = cash(session, grand)

        result = asyncio.run(PartnerService(session).enrollPartner(
            newcomer.memberID, "phase3", referralCode=parent.referralCode, paymentReference="pay-new"
        ))

        assert result["referrerMemberId"] == parent.memberID
        assert cash(session, parent) == 15000
        assert cash(session, grand) - grandCashBefore == 7500

    def test_non_partner_code_pays_no_bonus(self, session, make_member):
        plain = make_member("Plain")
        newcomer = make_member("Newcomer")

        result = asyncio.run(PartnerService(session).enrollPartner(
            newcomer.memberID, "phase1", referralCode=plain.referralCode
        ))

        assert result["referrerMemberId"] is None
        assert cash(session, plain) == 0


class TestTokenAdjustment:

    def test_adjustment_changes_holdings(self, session, make_partner):
        partner = make_partner("Holder")
        service = PartnerService(session)

        result = asyncio.run(service.adjustTokens(partner.memberID, 2, adminId=7, reason="bonus tokens"))

        assert result["success"]
        assert result["tokens"] == 3
        assert asyncio.run(service.getTokenHolders()) == [{"memberId": partner.memberID, "tokens": 3}]

    def test_cannot_go_negative(self, session, make_partner):
        partner = make_partner("Holder")

        result = asyncio.run(PartnerService(session).adjustTokens(partner.memberID, -2, adminId=7, reason="oops"))

        assert not result["success"]
        assert asyncio.run(BalanceService(session).getBalance(partner.memberID, Account.TOKENS)) == 1

    def test_zero_token_partner_is_not_a_holder(self, session, make_partner):
        keeper = make_partner("Keeper")
        leaver = make_partner("Leaver")
        service = PartnerService(session)

        asyncio.run(service.adjustTokens(leaver.memberID, -1, adminId=7, reason="withdrawn"))

        assert asyncio.run(service.getTokenHolders()) == [{"memberId": keeper.memberID, "tokens": 1}]
