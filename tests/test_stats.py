"""Tests for canvas statistics, full scan and incremental."""

from dataclasses import replace

from pixelgrid.models import Tier
from pixelgrid.stats import StatsAggregator
from pixelgrid.store import PixelStateStore
from pixelgrid.tiers import TierPricingEngine


def _claim(store, cell_id, owner):
    cell = store.get(cell_id)
    store.apply_update(replace(cell, claimed=True, owner=owner, minter=owner))


def test_empty_grid():
    engine = TierPricingEngine()
    stats = StatsAggregator(engine).compute(engine.cells())
    assert stats.total_pixels == 2500
    assert stats.claimed_pixels == 0
    assert stats.remaining_pixels == 2500
    assert stats.total_value_locked == 0
    assert stats.active_owners == 0
    assert stats.tier_counts == {t: 0 for t in Tier}
    assert sum(stats.tier_totals.values()) == 2500


def test_compute_counts_claimed_cells():
    engine = TierPricingEngine()
    store = PixelStateStore(engine.cells())
    _claim(store, (25, 25), "alice")
    _claim(store, (0, 0), "alice")
    _claim(store, (25, 32), "bob")
    stats = StatsAggregator(engine).compute(store.get_all())
    assert stats.claimed_pixels == 3
    assert stats.remaining_pixels == 2497
    assert stats.total_value_locked == 100000 + 5000 + 50000
    assert stats.active_owners == 2
    assert stats.tier_counts[Tier.LEGENDARY] == 1
    assert stats.tier_counts[Tier.EPIC] == 1
    assert stats.tier_counts[Tier.COMMON] == 1


def test_incremental_matches_full_scan():
    engine = TierPricingEngine()
    store = PixelStateStore(engine.cells())
    agg = StatsAggregator(engine)
    agg.attach(store)

    _claim(store, (25, 25), "alice")
    _claim(store, (10, 10), "bob")
    store.apply_update({"x": 10, "y": 10, "owner": "alice"})
    store.apply_update({"x": 25, "y": 25, "claimed": False, "owner": None})
    _claim(store, (49, 49), "carol")

    assert agg.current() == agg.compute(store.get_all())
    assert agg.current().active_owners == 2


def test_incremental_after_snapshot():
    engine = TierPricingEngine()
    store = PixelStateStore(engine.cells())
    agg = StatsAggregator(engine)
    agg.attach(store)
    _claim(store, (1, 1), "alice")

    snapshot = [replace(c, claimed=True, owner="dave") if c.x == 0 else c for c in engine.cells()]
    store.replace_all(snapshot)
    current = agg.current()
    assert current == agg.compute(store.get_all())
    assert current.claimed_pixels == 50
    assert current.remaining_pixels + current.claimed_pixels == current.total_pixels


def test_owners_known_only_by_server_id_are_counted():
    engine = TierPricingEngine()
    store = PixelStateStore(engine.cells())
    agg = StatsAggregator(engine)
    agg.attach(store)
    store.apply_update(replace(store.get((0, 0)), claimed=True, owner_id="uuid-1"))
    store.apply_update(replace(store.get((1, 0)), claimed=True, owner_id="uuid-2"))
    store.apply_update(replace(store.get((2, 0)), claimed=True, owner_id="uuid-1"))
    assert agg.current().active_owners == 2
    assert agg.compute(store.get_all()) == agg.current()
