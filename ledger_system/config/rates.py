# ledger_system/config/rates.py
"""
Partner tiers, pool and commission rates.
"""
from enum import Enum
from decimal import Decimal


class Tier(Enum):
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    PHASE3 = "phase3"


PARTNER_TIERS = {
    Tier.PHASE1: {
        "price": 100000,  # RM 1000 in cents
        "initialPoints": 2000,
        "initialTokens": 1,
        "displayName": "Phase 1 - 启航经营人"
    },
    Tier.PHASE2: {
        "price": 130000,  # RM 1300
        "initialPoints": 2600,
        "initialTokens": 1,
        "displayName": "Phase 2 - 成长经营人"
    },
    Tier.PHASE3: {
        "price": 150000,  # RM 1500
        "initialPoints": 3000,
        "initialTokens": 1,
        "displayName": "Phase 3 - 卓越经营人"
    }
}


class Account:
    POINTS = "points"
    TOKENS = "tokens"
    CASH = "cash"

    ALL = (POINTS, TOKENS, CASH)


class EntryType:
    EARN = "earn"
    SPEND = "spend"
    REFUND = "refund"
    BONUS_POOL_PAYOUT = "bonus_pool_payout"
    COMMISSION = "commission"
    TIER_GRANT = "tier_grant"
    TOKEN_ADJUSTMENT = "token_adjustment"
    REFERRAL_BONUS = "referral_bonus"


# Bonus pool
BONUS_POOL_CONTRIBUTION_RATE = Decimal("0.30")  # 30% of each paid order
BONUS_POOL_CYCLE_DAYS = 10
PER_TOKEN_VALUE_PLACES = Decimal("0.00000001")

# Order commission, one rate per referral level starting at the payer's referrer.
# A single entry keeps commission single-level.
REFERRAL_COMMISSION_RATES = [Decimal("0.10")]
REFERRAL_COMMISSION_ACCOUNT = Account.CASH

# Partner upgrade referral bonus
PARTNER_REFERRAL_DIRECT_RATE = Decimal("0.10")  # 直推
PARTNER_REFERRAL_INDIRECT_RATE = Decimal("0.05")  # 间推

# Referral codes
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 6

# Checkout selection key -> inventory SKU
SELECTION_SKU_MAP = {
    "original": "BN-ORIG-75",
    "redDate": "BN-RDAT-75",
    "snowPear": "BN-SPEA-75",
    "peachGum": "BN-PGUM-75",
    "coconut": "BN-COCO-75",
    "mango": "BN-MANG-75",
    "cocoaOat": "BN-COAT-75",
    "matchaOat": "BN-MOAT-75",
    "purpleRiceOat": "BN-POAT-75",
    "peachGumLongan": "BN-PGLN-75",
    "dateGoji": "BN-DGOJ-75",
    "papaya": "BN-PAPY-75",
}
