"""Tier, price and fee derivation from grid position."""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property

from pixelgrid.config import GridConfig, PricingConfig
from pixelgrid.models import TIER_ORDER, Action, Cell, CellId, Tier


@dataclass(frozen=True)
class FeeQuote:
    action: Action
    tier: Tier
    fee: int
    platform_fee: int = 0

    @property
    def total(self) -> int:
        return self.fee + self.platform_fee


class TierPricingEngine:
    """Pure mapping of coordinates to tier, price and fees.

    Everything here is fixed for the lifetime of the grid: the same
    coordinates always give the same tier and price.
    """

    def __init__(self, grid: GridConfig | None = None, pricing: PricingConfig | None = None):
        self.grid = grid or GridConfig()
        self.pricing = pricing or PricingConfig()
        self.side = self.grid.side
        self.center = tuple(self.grid.center) if self.grid.center else (self.side // 2, self.side // 2)
        # Bands sorted nearest-first so tier_of can stop at the first match.
        self._bands = [
            (self.grid.thresholds[tier.value], tier)
            for tier in TIER_ORDER[:-1]
        ]

    @property
    def total_cells(self) -> int:
        return self.side * self.side

    def in_bounds(self, x, y) -> bool:
        return (
            isinstance(x, int) and isinstance(y, int)
            and not isinstance(x, bool) and not isinstance(y, bool)
            and 0 <= x < self.side and 0 <= y < self.side
        )

    def distance(self, x: int, y: int) -> int:
        cx, cy = self.center
        return abs(x - cx) + abs(y - cy)

    def tier_of(self, x: int, y: int) -> Tier:
        d = self.distance(x, y)
        for limit, tier in self._bands:
            if d <= limit:
                return tier
        return Tier.COMMON

    def price_of(self, tier: Tier) -> int:
        return self.pricing.prices[Tier(tier).value]

    def platform_fee_of(self, tier: Tier) -> int:
        return self.pricing.platform_fees[Tier(tier).value]

    def fee_of(self, action: Action, tier: Tier) -> int:
        """Claim costs the tier price; transfer and melt are flat."""
        action = Action(action)
        if action is Action.CLAIM:
            return self.price_of(tier)
        if action is Action.TRANSFER:
            return self.pricing.transfer_fee
        return self.pricing.melt_fee

    def quote(self, action: Action, tier: Tier) -> FeeQuote:
        action = Action(action)
        platform = self.platform_fee_of(tier) if action is Action.CLAIM else 0
        return FeeQuote(action, Tier(tier), self.fee_of(action, tier), platform)

    def genesis_cell(self, x: int, y: int, created_at: float | None = None) -> Cell:
        tier = self.tier_of(x, y)
        return Cell(x=x, y=y, tier=tier, price=self.price_of(tier), created_at=created_at)

    def cells(self, created_at: float | None = None) -> list[Cell]:
        """Every cell of the grid, unclaimed, in row order (y, then x)."""
        return [
            self.genesis_cell(x, y, created_at)
            for y in range(self.side)
            for x in range(self.side)
        ]

    def cell_ids(self) -> list[CellId]:
        return [(x, y) for y in range(self.side) for x in range(self.side)]

    @cached_property
    def _tier_totals(self) -> dict[Tier, int]:
        totals = {tier: 0 for tier in TIER_ORDER}
        for x, y in self.cell_ids():
            totals[self.tier_of(x, y)] += 1
        return totals

    def tier_totals(self) -> dict[Tier, int]:
        """Cells per tier; fixed by geometry and computed once."""
        return dict(self._tier_totals)
