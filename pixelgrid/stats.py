"""Grid-wide summary statistics derived from the cell view."""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Iterable

from pixelgrid.models import TIER_ORDER, CanvasStats, Cell, CellId
from pixelgrid.store import PixelStateStore
from pixelgrid.tiers import TierPricingEngine


class StatsAggregator:
    """Computes CanvasStats, either from scratch or incrementally.

    `compute` is a pure full scan. `attach` subscribes to a store and keeps
    running counters updated from changed identities only; `current()`
    returns the same result `compute(store.get_all())` would.
    """

    def __init__(self, engine: TierPricingEngine):
        self.engine = engine
        self.tier_totals = engine.tier_totals()
        self.total_pixels = engine.total_cells
        self._lock = threading.Lock()
        self._seen: dict[CellId, Cell] = {}
        self._tier_counts: Counter = Counter()
        self._owners: Counter = Counter()
        self._value_locked = 0

    def compute(self, cells: Iterable[Cell]) -> CanvasStats:
        claimed = [c for c in cells if c.claimed]
        tier_counts = Counter(c.tier for c in claimed)
        return CanvasStats(
            total_pixels=self.total_pixels,
            claimed_pixels=len(claimed),
            remaining_pixels=self.total_pixels - len(claimed),
            total_value_locked=sum(c.price for c in claimed),
            active_owners=len({c.holder for c in claimed}),
            tier_counts={tier: tier_counts.get(tier, 0) for tier in TIER_ORDER},
            tier_totals=dict(self.tier_totals),
        )

    def _remove(self, cell: Cell):
        if not cell.claimed:
            return
        self._tier_counts[cell.tier] -= 1
        self._value_locked -= cell.price
        self._owners[cell.holder] -= 1
        if self._owners[cell.holder] <= 0:
            del self._owners[cell.holder]

    def _add(self, cell: Cell):
        if not cell.claimed:
            return
        self._tier_counts[cell.tier] += 1
        self._value_locked += cell.price
        self._owners[cell.holder] += 1

    def reset(self, cells: Iterable[Cell]):
        with self._lock:
            self._seen.clear()
            self._tier_counts.clear()
            self._owners.clear()
            self._value_locked = 0
            for cell in cells:
                self._seen[cell.id] = cell
                self._add(cell)

    def update(self, changed: Iterable[Cell]):
        """Fold in the new records for cells that changed."""
        with self._lock:
            for cell in changed:
                old = self._seen.get(cell.id)
                if old is not None:
                    self._remove(old)
                self._seen[cell.id] = cell
                self._add(cell)

    def attach(self, store: PixelStateStore):
        """Track `store` incrementally. Returns the unsubscribe function."""
        self.reset(store.get_all())

        def on_change(ids: frozenset):
            cells = [store.get(cid) for cid in ids]
            self.update(c for c in cells if c is not None)

        return store.subscribe(on_change)

    def current(self) -> CanvasStats:
        with self._lock:
            claimed = sum(self._tier_counts.values())
            return CanvasStats(
                total_pixels=self.total_pixels,
                claimed_pixels=claimed,
                remaining_pixels=self.total_pixels - claimed,
                total_value_locked=self._value_locked,
                active_owners=len(self._owners),
                tier_counts={tier: self._tier_counts.get(tier, 0) for tier in TIER_ORDER},
                tier_totals=dict(self.tier_totals),
            )
