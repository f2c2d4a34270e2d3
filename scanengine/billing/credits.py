"""
Credit pricing.

A scan costs ceil(accounts x range multiplier x model multiplier) credits.
Model multipliers are relative to the Sonnet tier.
"""

import math
from dataclasses import dataclass
from typing import Optional

# (max range_days, multiplier), checked in order
RANGE_MULTIPLIERS = [
    (1, 1),
    (3, 2),
    (7, 3),
    (14, 5),
    (30, 8),
]
RANGE_MULTIPLIER_MAX = 10

MODEL_CREDIT_MULTIPLIERS = {
    "haiku": 0.25,
    "sonnet": 1,
    "opus": 5,
}


@dataclass(frozen=True)
class CreditPack:
    id: str
    name: str
    credits: int
    price_cents: int


CREDIT_PACKS = {
    "starter": CreditPack("starter", "Starter", 1000, 900),
    "standard": CreditPack("standard", "Standard", 5000, 3900),
    "pro": CreditPack("pro", "Pro", 15000, 9900),
    "max": CreditPack("max", "Max", 40000, 19900),
}


def range_multiplier(range_days: int) -> int:
    for max_days, multiplier in RANGE_MULTIPLIERS:
        if range_days <= max_days:
            return multiplier
    return RANGE_MULTIPLIER_MAX


def model_multiplier(model: Optional[str]) -> float:
    model_id = (model or "").lower()
    for tier, multiplier in MODEL_CREDIT_MULTIPLIERS.items():
        if tier in model_id:
            return multiplier
    return 1


def calculate_scan_credits(accounts_count: int, range_days: int, model: Optional[str] = None) -> int:
    return math.ceil(accounts_count * range_multiplier(range_days) * model_multiplier(model))


def describe_pack_purchase(pack_id: Optional[str], credits: int, renewal: bool = False) -> str:
    pack = CREDIT_PACKS.get(pack_id or "")
    if pack:
        suffix = " renewal" if renewal else ""
        return f"{pack.name} pack{suffix} ({credits:,} credits)"
    return f"{credits:,} credits (renewal)" if renewal else f"{credits:,} credits"
