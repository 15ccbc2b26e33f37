# models/settlement/__init__.py
"""
Bonus pool settlement models.
"""

from models.settlement.bonus_pool_cycle import BonusPoolCycle
from models.settlement.pool_contribution import PoolContribution

__all__ = [
    'BonusPoolCycle',
    'PoolContribution',
]
