"""Claim, transfer and melt with optimistic local feedback.

Each action is a two-phase transition on the store: `begin` shows the
tentative record, then the authority's answer either confirms it or rolls it
back. The authority is the only arbiter of races.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass

from pixelgrid.authority import Authority
from pixelgrid.errors import (
    AuthorityTimeout,
    ConflictError,
    PixelGridError,
    Rejection,
    ValidationError,
)
from pixelgrid.models import Action, Cell, CellId, TokenRef
from pixelgrid.store import PixelStateStore
from pixelgrid.tiers import FeeQuote, TierPricingEngine

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Submission:
    """A confirmed action and what it cost the initiator."""

    action: Action
    cell: Cell
    quote: FeeQuote


class ClaimWorkflow:
    def __init__(self, store: PixelStateStore, authority: Authority, engine: TierPricingEngine,
                 clock: Callable[[], float] = time.time,
                 confirm_timeout: float | None = None,
                 on_unresolved: Callable[[CellId], None] | None = None):
        self.store = store
        self.authority = authority
        self.engine = engine
        self.clock = clock
        self.confirm_timeout = confirm_timeout
        # Typically SyncCoordinator.request_refetch for a single cell.
        self.on_unresolved = on_unresolved
        self._executor = (
            ThreadPoolExecutor(max_workers=4, thread_name_prefix="pixelgrid-submit")
            if confirm_timeout is not None else None
        )

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    def _cell(self, cell_id) -> Cell:
        try:
            x, y = cell_id
        except (TypeError, ValueError):
            raise ValidationError(f"Malformed cell id {cell_id!r}") from None
        if not self.engine.in_bounds(x, y):
            raise ValidationError(f"Invalid coordinates ({x}, {y})", cell_id=cell_id)
        cell = self.store.get((x, y))
        if cell is None:
            raise ValidationError(f"Unknown cell ({x}, {y})", Rejection.UNKNOWN_CELL, (x, y))
        return cell

    def _unresolved(self, cell_id: CellId):
        if self.on_unresolved is not None:
            self.on_unresolved(cell_id)

    def _refetch(self, cell_id: CellId) -> Cell | None:
        try:
            return self.authority.fetch_cell(cell_id)
        except PixelGridError as e:
            log.warning("Could not refetch %s after rejection: %s", cell_id, e)
            self._unresolved(cell_id)
            return None

    def _holds(self, cell: Cell, address: str) -> bool:
        """Compare like with like: wallet to wallet, or server id to server id."""
        if not cell.claimed or not address:
            return False
        if cell.owner is not None:
            return cell.owner == address
        return cell.owner_id is not None and self.authority.user_id(address) == cell.owner_id

    def _stale_conflict(self, cell: Cell, message: str, reason: Rejection) -> ConflictError:
        """A local precondition failed; the view may be stale, so ask for the truth."""
        self._unresolved(cell.id)
        return ConflictError(message, reason, cell.id)

    def quote(self, action: Action, cell_id: CellId) -> FeeQuote:
        """What the initiator pays for `action` on this cell."""
        return self.engine.quote(action, self._cell(cell_id).tier)

    def _call(self, cell_id: CellId, submit: Callable[[], Cell]) -> Cell:
        if self._executor is None:
            return submit()
        future = self._executor.submit(submit)
        try:
            return future.result(timeout=self.confirm_timeout)
        except FutureTimeout:
            # Marker must exist before the late answer can clear it.
            self.store.mark_unconfirmed(cell_id)
            future.add_done_callback(lambda f: self._late_answer(cell_id, f))
            raise AuthorityTimeout(
                f"No confirmation for {cell_id} within {self.confirm_timeout}s", cell_id=cell_id
            ) from None

    def _late_answer(self, cell_id: CellId, future: Future):
        """The authority answered after we gave up; its answer is still the truth."""
        if future.exception() is None:
            log.info("Late confirmation for %s", cell_id)
            self.store.apply_update(future.result())
        else:
            self._unresolved(cell_id)

    def _submit(self, action: Action, cell_id: CellId, quote: FeeQuote,
                submit: Callable[[], Cell]) -> Submission:
        try:
            confirmed = self._call(cell_id, submit)
        except ConflictError as e:
            current = self._refetch(cell_id)
            self.store.revert(cell_id, current)
            log.warning("%s on %s rejected (%s), adopted authoritative owner %s",
                        action.value, cell_id, e.reason.value, current.holder if current else "?")
            raise
        except AuthorityTimeout:
            self.store.mark_unconfirmed(cell_id)
            log.warning("%s on %s unconfirmed, waiting for the next sync", action.value, cell_id)
            self._unresolved(cell_id)
            raise
        except Exception:
            self.store.revert(cell_id)
            raise
        cell = self.store.confirm(cell_id, confirmed)
        log.info("%s on %s confirmed, fee %d", action.value, cell_id, quote.total)
        return Submission(action, cell, quote)

    def claim(self, x: int, y: int, claimant: str, token_ref: TokenRef | None = None) -> Submission:
        cell = self._cell((x, y))
        if not claimant:
            raise ValidationError("Wallet address is required", cell_id=cell.id)
        if cell.claimed:
            raise self._stale_conflict(cell, f"Cell {cell.id} already claimed by {cell.holder}",
                                       Rejection.ALREADY_CLAIMED)

        quote = self.engine.quote(Action.CLAIM, cell.tier)
        now = self.clock()
        self.store.begin(cell.id, Action.CLAIM, {
            "claimed": True,
            "owner": claimant,
            "owner_id": None,
            "owned_since": now,
            "claimed_at": now,
            "token_ref": token_ref,
        }, now)
        return self._submit(Action.CLAIM, cell.id, quote,
                            lambda: self.authority.claim(x, y, claimant, token_ref))

    def transfer(self, cell_id: CellId, from_owner: str, to_owner: str,
                 tx_ref: str | None = None) -> Submission:
        cell = self._cell(cell_id)
        if not to_owner or to_owner == from_owner:
            raise ValidationError("Transfer needs a different recipient", cell_id=cell.id)
        if not self._holds(cell, from_owner):
            raise self._stale_conflict(cell, f"{from_owner} does not own cell {cell.id}",
                                       Rejection.NOT_OWNER)

        quote = self.engine.quote(Action.TRANSFER, cell.tier)
        now = self.clock()
        self.store.begin(cell.id, Action.TRANSFER,
                         {"owner": to_owner, "owner_id": None, "owned_since": now}, now)
        return self._submit(Action.TRANSFER, cell.id, quote,
                            lambda: self.authority.transfer(cell.id, from_owner, to_owner, tx_ref))

    def melt(self, cell_id: CellId, owner: str, tx_ref: str | None = None) -> Submission:
        cell = self._cell(cell_id)
        if not self._holds(cell, owner):
            raise self._stale_conflict(cell, f"{owner} does not own cell {cell.id}",
                                       Rejection.NOT_OWNER)

        quote = self.engine.quote(Action.MELT, cell.tier)
        now = self.clock()
        self.store.begin(cell.id, Action.MELT, {
            "claimed": False,
            "owner": None,
            "owner_id": None,
            "owned_since": None,
            "token_ref": None,
        }, now)
        return self._submit(Action.MELT, cell.id, quote,
                            lambda: self.authority.melt(cell.id, owner, tx_ref))
