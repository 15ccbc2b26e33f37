# models/__init__.py
"""
Database models for the settlement service.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin, utcNow

# Core models
from models.member import Member, MemberAddress
from models.partner import Partner
from models.order import Order, OrderItem
from models.bill import Bill
from models.inventory import InventoryItem, InventoryMovement
from models.ledger_entry import LedgerEntry, BalanceCache
from models.completion_step import OrderCompletionStep

# Settlement models
from models.settlement.bonus_pool_cycle import BonusPoolCycle
from models.settlement.pool_contribution import PoolContribution

__all__ = [
    # Base
    'Base',
    'AuditMixin',
    'utcNow',

    # Core
    'Member',
    'MemberAddress',
    'Partner',
    'Order',
    'OrderItem',
    'Bill',
    'InventoryItem',
    'InventoryMovement',
    'LedgerEntry',
    'BalanceCache',
    'OrderCompletionStep',

    # Settlement
    'BonusPoolCycle',
    'PoolContribution',
]
