# ledger_system/__init__.py
"""
Ledger System - order settlement, bonus pool, referral commissions and balances.
"""

# Services
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.member_service import MemberService
from ledger_system.services.inventory_service import InventoryService
from ledger_system.services.referral_service import ReferralService
from ledger_system.services.partner_service import PartnerService
from ledger_system.services.bonus_pool_service import BonusPoolService
from ledger_system.services.order_service import OrderService
from ledger_system.services.order_completion_service import OrderCompletionService

# Configuration
from ledger_system.config.rates import Tier, PARTNER_TIERS, Account, EntryType

# Utilities
from ledger_system.utils.time_machine import timeMachine

# Events
from ledger_system.events.event_bus import eventBus, LedgerEvents

__all__ = [
    # Services
    'BalanceService',
    'MemberService',
    'InventoryService',
    'ReferralService',
    'PartnerService',
    'BonusPoolService',
    'OrderService',
    'OrderCompletionService',

    # Config
    'Tier',
    'PARTNER_TIERS',
    'Account',
    'EntryType',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'LedgerEvents',
]
