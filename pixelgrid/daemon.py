# pixelgrid/daemon.py
"""Pixel grid client: watch the canvas or act on it from the command line."""

import argparse
import logging
import sys
import threading
from pathlib import Path

from pixelgrid.authority import Authority, LocalAuthority
from pixelgrid.config import AppConfig, load_config
from pixelgrid.errors import PixelGridError
from pixelgrid.models import TIER_ORDER, CanvasStats, Transaction
from pixelgrid.remote import HttpAuthority
from pixelgrid.renderer import render_canvas
from pixelgrid.stats import StatsAggregator
from pixelgrid.store import PixelStateStore
from pixelgrid.sync import Connectivity, SyncCoordinator
from pixelgrid.tiers import TierPricingEngine
from pixelgrid.users import compute_users, leaderboard
from pixelgrid.workflow import ClaimWorkflow


def format_stats(stats: CanvasStats) -> str:
    """One status line: claimed/total, value locked, owners, per-tier fill."""
    tiers = " ".join(
        f"{tier.value[0].upper()}:{stats.tier_counts.get(tier, 0)}/{stats.tier_totals.get(tier, 0)}"
        for tier in TIER_ORDER
    )
    return (
        f"{stats.claimed_pixels}/{stats.total_pixels} claimed, "
        f"{stats.remaining_pixels} left, {stats.total_value_locked:,} locked, "
        f"{stats.active_owners} owners | {tiers}"
    )


def format_transaction(tx: Transaction) -> str:
    where = f"({tx.cell_id[0]}, {tx.cell_id[1]})" if tx.cell_id else "?"
    parties = " -> ".join(p for p in (tx.from_user, tx.to_user) if p)
    return f"{tx.action.value:8} {where} {parties}  {tx.amount:,}"


class PixelGridClient:
    """Main application class."""

    def __init__(self, config: AppConfig, authority: Authority | None = None,
                 verbose: bool = False):
        self.config = config
        self.verbose = verbose
        self.engine = TierPricingEngine(config.grid, config.pricing)
        self.authority = authority or HttpAuthority(
            self.engine,
            config.authority.base_url,
            timeout=config.authority.timeout,
            confirm_timeout=config.authority.confirm_timeout,
        )
        self.store = PixelStateStore(self.engine.cells())
        self.stats = StatsAggregator(self.engine)
        self.coordinator = SyncCoordinator(
            self.store, self.authority, config.sync, on_status=self._on_status,
        )
        self.workflow = ClaimWorkflow(
            self.store, self.authority, self.engine,
            on_unresolved=lambda cell_id: self.coordinator.request_refetch([cell_id]),
        )
        self._unsubscribe: list = []

    def start(self, watch: bool = True):
        """Attach stats, take a first snapshot, optionally keep polling."""
        self._unsubscribe.append(self.stats.attach(self.store))
        if watch:
            self._unsubscribe.append(self.store.subscribe(self._on_change))
            self.coordinator.start()
        else:
            self.coordinator.poll_now()

    def stop(self):
        """Shutdown cleanly."""
        self.coordinator.stop()
        self.workflow.close()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def _on_change(self, changed: frozenset):
        if self.verbose:
            print(f"{len(changed)} cells changed")
        print(format_stats(self.stats.current()))

    def _on_status(self, status: Connectivity):
        print(f"Connectivity: {status.value}")

    def snapshot(self, path: Path):
        pending = [p.cell_id for p in self.store.pending_changes()]
        img = render_canvas(self.store.get_all(), self.engine.side, pending=pending)
        img.save(path)

    def top_users(self, limit: int = 10):
        return leaderboard(compute_users(self.store.get_all()).values(), limit)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pixel grid client")
    parser.add_argument("--config", default="config.yaml", help="Config file path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--local", action="store_true",
                        help="Use an in-memory authority instead of the server")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("watch", help="Follow the canvas and print stats on change")
    snap = sub.add_parser("snapshot", help="Write the current canvas to a PNG")
    snap.add_argument("path", type=Path)
    sub.add_parser("leaderboard", help="Print the top wallets by influence")
    history = sub.add_parser("history", help="Print the ownership history of a cell")
    history.add_argument("x", type=int)
    history.add_argument("y", type=int)
    activity = sub.add_parser("activity", help="Print the most recent actions on the grid")
    activity.add_argument("--limit", type=int, default=20)
    claim = sub.add_parser("claim", help="Claim a cell")
    claim.add_argument("x", type=int)
    claim.add_argument("y", type=int)
    claim.add_argument("address")
    transfer = sub.add_parser("transfer", help="Transfer a cell")
    transfer.add_argument("x", type=int)
    transfer.add_argument("y", type=int)
    transfer.add_argument("from_address")
    transfer.add_argument("to_address")
    transfer.add_argument("--tx", default=None, help="Transaction reference")
    melt = sub.add_parser("melt", help="Melt a cell back into the pool")
    melt.add_argument("x", type=int)
    melt.add_argument("y", type=int)
    melt.add_argument("address")
    melt.add_argument("--tx", default=None, help="Transaction reference")
    return parser


def run_command(app: PixelGridClient, args) -> int:
    """Execute a one-shot command against a synced client. Returns exit code."""
    try:
        if args.command == "snapshot":
            app.snapshot(args.path)
            print(f"Wrote {args.path}")
        elif args.command == "leaderboard":
            for i, user in enumerate(app.top_users(), start=1):
                print(f"{i:2}. {user.address}  influence={user.influence} cells={user.pixel_count}")
        elif args.command == "history":
            for tx in app.authority.fetch_history((args.x, args.y)):
                print(format_transaction(tx))
        elif args.command == "activity":
            for tx in app.authority.recent_transactions(args.limit):
                print(format_transaction(tx))
        elif args.command == "claim":
            quote = app.workflow.quote("claim", (args.x, args.y))
            print(f"Claiming ({args.x}, {args.y}) as {quote.tier.value}: fee {quote.total:,}")
            result = app.workflow.claim(args.x, args.y, args.address)
            print(f"Claimed: {result.cell.tier.value} #{result.cell.tier_mint_sequence}")
        elif args.command == "transfer":
            result = app.workflow.transfer((args.x, args.y), args.from_address,
                                           args.to_address, args.tx)
            print(f"Transferred to {result.cell.owner}, fee {result.quote.total:,}")
        elif args.command == "melt":
            result = app.workflow.melt((args.x, args.y), args.address, args.tx)
            print(f"Melted, fee {result.quote.total:,}")
    except PixelGridError as e:
        print(f"Rejected: {e}")
        return 1
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config_path = Path(args.config)
    if config_path.exists():
        config = load_config(config_path)
    elif args.config != parser.get_default("config"):
        print(f"Config not found: {config_path}")
        sys.exit(1)
    else:
        config = AppConfig()

    authority = None
    if args.local:
        authority = LocalAuthority(TierPricingEngine(config.grid, config.pricing))
    app = PixelGridClient(config=config, authority=authority, verbose=args.verbose)

    command = args.command or "watch"
    if command != "watch":
        app.start(watch=False)
        try:
            sys.exit(run_command(app, args))
        finally:
            app.stop()

    print(f"Watching {config.authority.base_url if not args.local else 'local grid'}, "
          f"poll every {config.sync.poll_interval}s")
    app.start()
    try:
        # Block main thread
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        app.stop()
        print("Done.")


if __name__ == "__main__":
    main()
