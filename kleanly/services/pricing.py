# kleanly/services/pricing.py
"""
Area-based monthly pricing.

    monthly = max(minimum, area_km2 * rate)

rounded half-up to the currency's minor unit. Rate and minimum come from
config, optionally overridden per "<category_id>:<slot>" tier.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

# ISO currencies Stripe treats as having no minor unit
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}


def _dec(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class PriceTier:
    rate: Decimal
    minimum: Decimal


class PricingEngine:
    def __init__(
        self,
        rate_per_km2: Any = 15,
        minimum: Any = 5,
        currency: str = "gbp",
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ):
        self.default_tier = PriceTier(rate=_dec(rate_per_km2), minimum=_dec(minimum))
        if self.default_tier.rate < 0 or self.default_tier.minimum < 0:
            raise ValueError("rate and minimum must be non-negative")
        self.currency = (currency or "gbp").lower()
        self.overrides = {}
        for key, tier in (overrides or {}).items():
            self.overrides[str(key)] = PriceTier(
                rate=_dec(tier.get("rate", self.default_tier.rate)),
                minimum=_dec(tier.get("min", tier.get("minimum", self.default_tier.minimum))),
            )

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PricingEngine":
        return cls(
            rate_per_km2=config.get("RATE_PER_KM2_PER_MONTH", 15),
            minimum=config.get("MIN_PRICE_PER_MONTH", 5),
            currency=config.get("SPONSOR_CURRENCY", "gbp"),
            overrides=config.get("SPONSOR_PRICING_OVERRIDES") or {},
        )

    @property
    def quantum(self) -> Decimal:
        return Decimal("1") if self.currency in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")

    def tier_for(self, category_id: Optional[str] = None, slot: Optional[int] = None) -> PriceTier:
        keys = []
        if category_id is not None and slot is not None:
            keys.append(f"{category_id}:{slot}")
        if category_id is not None:
            keys.append(f"{category_id}:*")
        if slot is not None:
            keys.append(f"*:{slot}")
        for key in keys:
            if key in self.overrides:
                return self.overrides[key]
        return self.default_tier

    def monthly_price(self, area_km2: Any, category_id: Optional[str] = None, slot: Optional[int] = None) -> Decimal:
        area = float(area_km2 or 0.0)
        if math.isnan(area) or math.isinf(area):
            raise ValueError(f"area must be finite, got {area_km2!r}")
        tier = self.tier_for(category_id, slot)
        raw = _dec(max(0.0, area)) * tier.rate
        return max(tier.minimum, raw).quantize(self.quantum, rounding=ROUND_HALF_UP)

    def total_price(self, monthly: Decimal, months: int = 1) -> Decimal:
        if months < 1:
            raise ValueError("months must be >= 1")
        return (_dec(monthly) * months).quantize(self.quantum, rounding=ROUND_HALF_UP)

    def to_minor_units(self, amount: Any) -> int:
        amount = _dec(amount)
        if self.currency in ZERO_DECIMAL_CURRENCIES:
            return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
