"""The authoritative side: query, submission and push contract.

`Authority` is what the client consumes. `LocalAuthority` is an in-memory
implementation of the same observable contract, used by the CLI demo mode
and the tests.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from pixelgrid.errors import ConflictError, FeeConfirmationError, Rejection, ValidationError
from pixelgrid.models import Action, CanvasStats, Cell, CellId, TokenRef, Transaction
from pixelgrid.stats import StatsAggregator
from pixelgrid.tiers import TierPricingEngine

log = logging.getLogger(__name__)


class Authority(Protocol):
    def fetch_cells(self) -> list[Cell]: ...

    def fetch_cell(self, cell_id: CellId) -> Cell: ...

    def fetch_stats(self) -> CanvasStats: ...

    def claim(self, x: int, y: int, claimant: str, token_ref: TokenRef | None = None) -> Cell: ...

    def transfer(self, cell_id: CellId, from_owner: str, to_owner: str,
                 tx_ref: str | None = None) -> Cell: ...

    def melt(self, cell_id: CellId, owner: str, tx_ref: str | None = None) -> Cell: ...

    def fetch_history(self, cell_id: CellId) -> list[Transaction]: ...

    def recent_transactions(self, limit: int = 20) -> list[Transaction]: ...

    def user_id(self, address: str) -> str | None: ...


class LocalAuthority:
    """In-memory authority with atomic mint counters and push broadcast.

    one_mint_per_wallet: a wallet may hold at most one claimed cell it
        minted; melting frees the slot, transferring does not.
    require_payment_proof: claims must carry a token_ref with a tx_ref.
    """

    def __init__(self, engine: TierPricingEngine, clock: Callable[[], float] = time.time,
                 one_mint_per_wallet: bool = False, require_payment_proof: bool = False):
        self.engine = engine
        self.clock = clock
        self.one_mint_per_wallet = one_mint_per_wallet
        self.require_payment_proof = require_payment_proof
        self._cells: dict[CellId, Cell] = {
            c.id: replace(c, revision=0) for c in engine.cells(created_at=clock())
        }
        self._tier_counters: Counter = Counter()
        self._global_counter = 0
        self._lock = threading.Lock()
        self._listeners: list[Callable[[dict], None]] = []
        self._history: list[Transaction] = []
        self._tx_refs: set[str] = set()

    def subscribe(self, listener: Callable[[dict], None]) -> Callable[[], None]:
        """Receive every push message this authority emits."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _broadcast(self, message: dict):
        for listener in list(self._listeners):
            listener(message)

    def _record(self, action: Action, cell: Cell, from_user: str | None = None,
                to_user: str | None = None, tx_ref: str | None = None):
        """Append to the history. Caller holds the lock. A tx_ref is recorded once."""
        if tx_ref:
            if tx_ref in self._tx_refs:
                return
            self._tx_refs.add(tx_ref)
        self._history.append(Transaction(
            action, cell.id, from_user, to_user, cell.price, tx_ref, self.clock(), cell.tier,
        ))

    def _get(self, cell_id) -> Cell:
        try:
            return self._cells[tuple(cell_id)]
        except (KeyError, TypeError):
            raise ValidationError(f"Unknown cell {cell_id}", Rejection.UNKNOWN_CELL, cell_id) from None

    def fetch_cells(self) -> list[Cell]:
        with self._lock:
            return list(self._cells.values())

    def fetch_cell(self, cell_id: CellId) -> Cell:
        with self._lock:
            return self._get(cell_id)

    def fetch_stats(self) -> CanvasStats:
        return StatsAggregator(self.engine).compute(self.fetch_cells())

    def fetch_history(self, cell_id: CellId) -> list[Transaction]:
        """Every recorded action on one cell, newest first."""
        with self._lock:
            cell = self._get(cell_id)
            return [t for t in reversed(self._history) if t.cell_id == cell.id]

    def recent_transactions(self, limit: int = 20) -> list[Transaction]:
        with self._lock:
            return list(reversed(self._history[-limit:])) if limit > 0 else []

    def user_id(self, address: str) -> str | None:
        # Wallet addresses are the only user identity here.
        return address or None

    def claim(self, x: int, y: int, claimant: str, token_ref: TokenRef | None = None) -> Cell:
        if not self.engine.in_bounds(x, y):
            raise ValidationError(f"Invalid coordinates ({x}, {y})", cell_id=(x, y))
        if not claimant:
            raise ValidationError("Wallet address is required", cell_id=(x, y))

        with self._lock:
            cell = self._get((x, y))
            if cell.claimed:
                raise ConflictError(f"Cell ({x}, {y}) already claimed by {cell.owner}",
                                    Rejection.ALREADY_CLAIMED, cell.id)
            if self.require_payment_proof and not (token_ref and token_ref.tx_ref):
                raise FeeConfirmationError("Payment transaction reference required", cell_id=cell.id)
            if self.one_mint_per_wallet and any(
                c.claimed and c.minter == claimant for c in self._cells.values()
            ):
                raise ConflictError(f"{claimant} already minted a cell", Rejection.MINT_LIMIT, cell.id)

            now = self.clock()
            changes = dict(
                claimed=True,
                owner=claimant,
                owned_since=now,
                claimed_at=now,
                token_ref=token_ref,
                revision=cell.revision + 1,
            )
            # History is assigned once and survives melts.
            if cell.tier_mint_sequence is None:
                self._tier_counters[cell.tier] += 1
                self._global_counter += 1
                changes.update(
                    minter=claimant,
                    tier_mint_sequence=self._tier_counters[cell.tier],
                    global_mint_sequence=self._global_counter,
                )
            updated = replace(cell, **changes)
            self._cells[cell.id] = updated
            self._record(Action.CLAIM, updated, to_user=claimant,
                         tx_ref=token_ref.tx_ref if token_ref else None)

        log.info("Cell (%d, %d) claimed by %s [%s #%s, global #%s]", x, y, claimant,
                 updated.tier.value, updated.tier_mint_sequence, updated.global_mint_sequence)
        self._broadcast({"type": "cellClaimed", "cellId": [x, y], "toUser": claimant})
        return updated

    def _owned(self, cell_id, owner: str) -> Cell:
        cell = self._get(cell_id)
        if not cell.claimed or cell.owner != owner:
            raise ConflictError(f"{owner} does not own cell {cell.id}", Rejection.NOT_OWNER, cell.id)
        return cell

    def transfer(self, cell_id: CellId, from_owner: str, to_owner: str,
                 tx_ref: str | None = None) -> Cell:
        if not to_owner or to_owner == from_owner:
            raise ValidationError("Transfer needs a different recipient", cell_id=cell_id)
        with self._lock:
            cell = self._owned(cell_id, from_owner)
            token = cell.token_ref
            if tx_ref:
                token = replace(token or TokenRef(), tx_ref=tx_ref)
            updated = replace(
                cell,
                owner=to_owner,
                owned_since=self.clock(),
                token_ref=token,
                revision=cell.revision + 1,
            )
            self._cells[cell.id] = updated
            self._record(Action.TRANSFER, updated, from_owner, to_owner, tx_ref)

        self._broadcast({"type": "cellTransferred", "cellId": list(updated.id),
                         "fromUser": from_owner, "toUser": to_owner})
        return updated

    def melt(self, cell_id: CellId, owner: str, tx_ref: str | None = None) -> Cell:
        with self._lock:
            cell = self._owned(cell_id, owner)
            updated = replace(
                cell,
                claimed=False,
                owner=None,
                owned_since=None,
                token_ref=None,
                revision=cell.revision + 1,
            )
            self._cells[cell.id] = updated
            self._record(Action.MELT, updated, from_user=owner, tx_ref=tx_ref)

        self._broadcast({"type": "cellMelted", "cellId": list(updated.id), "fromUser": owner})
        return updated
