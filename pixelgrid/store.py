"""Client-side cache of every cell, with optimistic pending markers.

All mutation goes through `apply_update`, `replace_all` and the two-phase
`begin` / `confirm` / `revert` / `mark_unconfirmed` calls. Each mutation
notifies subscribers with the identities whose visible record changed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from pixelgrid.errors import ConflictError, Rejection, ValidationError
from pixelgrid.models import CELL_FIELDS, Action, Cell, CellId

log = logging.getLogger(__name__)

Listener = Callable[[frozenset], None]


class PendingStatus(str, Enum):
    IN_FLIGHT = "in_flight"
    UNCONFIRMED = "unconfirmed"


@dataclass
class PendingChange:
    """A tentative local transition awaiting the authority's verdict.

    `base` is the latest authoritative record for the cell; a revert goes
    back to it. `tentative` is what the user sees meanwhile.
    """

    cell_id: CellId
    action: Action
    base: Cell
    tentative: Cell
    started_at: float
    status: PendingStatus = PendingStatus.IN_FLIGHT


class PixelStateStore:
    def __init__(self, cells: Iterable[Cell]):
        self._cells: dict[CellId, Cell] = {c.id: c for c in cells}
        self._pending: dict[CellId, PendingChange] = {}
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()
        # Bumped by every completed snapshot; targeted updates requested
        # against an older epoch are dropped.
        self.snapshot_epoch = 0

    def __len__(self) -> int:
        return len(self._cells)

    def __contains__(self, cell_id) -> bool:
        return cell_id in self._cells

    # -- subscriptions -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, changed: set[CellId]):
        if not changed:
            return
        with self._lock:
            listeners = list(self._listeners)
        ids = frozenset(changed)
        for listener in listeners:
            listener(ids)

    # -- reads ---------------------------------------------------------------

    def get_all(self) -> list[Cell]:
        with self._lock:
            return list(self._cells.values())

    def get(self, cell_id: CellId) -> Cell | None:
        with self._lock:
            return self._cells.get(tuple(cell_id))

    def pending(self, cell_id: CellId) -> PendingChange | None:
        with self._lock:
            return self._pending.get(tuple(cell_id))

    def pending_changes(self) -> list[PendingChange]:
        with self._lock:
            return list(self._pending.values())

    # -- authoritative writes ------------------------------------------------

    def _candidate(self, current: Cell, update: Cell | dict) -> Cell:
        if isinstance(update, Cell):
            changes = {name: getattr(update, name) for name in CELL_FIELDS}
        else:
            unknown = set(update) - CELL_FIELDS
            if unknown:
                raise ValidationError(f"Unknown cell fields: {sorted(unknown)}", cell_id=current.id)
            changes = update
        return current.merged(changes)

    def _accept_authoritative(self, cell_id: CellId, candidate: Cell) -> bool:
        """Record `candidate` as the authoritative state. Caller holds the lock."""
        pending = self._pending.get(cell_id)
        if pending is not None:
            pending.base = candidate
            if pending.status is PendingStatus.UNCONFIRMED:
                log.info("Unconfirmed %s on %s resolved by authority", pending.action.value, cell_id)
                del self._pending[cell_id]
        if self._cells[cell_id] == candidate:
            return False
        self._cells[cell_id] = candidate
        return True

    def apply_update(self, update: Cell | dict, based_on_epoch: int | None = None) -> bool:
        """Merge a (partial) authoritative record into the stored cell.

        Only the fields present are overwritten. Records logically older
        than what is stored are ignored, as are results of targeted fetches
        that a newer snapshot has already superseded. Returns True when the
        visible record changed.
        """
        if isinstance(update, Cell):
            cell_id = update.id
        else:
            try:
                cell_id = (update["x"], update["y"])
            except KeyError:
                raise ValidationError("Update carries no cell identity") from None

        with self._lock:
            if based_on_epoch is not None and based_on_epoch < self.snapshot_epoch:
                log.debug("Dropping targeted update for %s: superseded by snapshot", cell_id)
                return False
            current = self._cells.get(cell_id)
            if current is None:
                raise ValidationError(f"Unknown cell {cell_id}", Rejection.UNKNOWN_CELL, cell_id)
            pending = self._pending.get(cell_id)
            reference = pending.base if pending else current
            candidate = self._candidate(reference, update)
            if candidate.is_older_than(reference):
                log.debug("Ignoring stale update for %s", cell_id)
                return False
            changed = self._accept_authoritative(cell_id, candidate)

        if changed:
            self._notify({cell_id})
        return changed

    def replace_all(self, cells: Iterable[Cell]) -> set[CellId]:
        """Install a full authoritative snapshot. Always wins over earlier updates."""
        changed: set[CellId] = set()
        with self._lock:
            for cell in cells:
                current = self._cells.get(cell.id)
                if current is None:
                    log.warning("Snapshot contains cell %s outside the grid", cell.id)
                    continue
                candidate = self._candidate(current, cell)
                if self._accept_authoritative(cell.id, candidate):
                    changed.add(cell.id)
            self.snapshot_epoch += 1
        log.debug("Snapshot %d applied, %d cells changed", self.snapshot_epoch, len(changed))
        self._notify(changed)
        return changed

    # -- optimistic two-phase writes -----------------------------------------

    def begin(self, cell_id: CellId, action: Action, changes: dict, now: float) -> PendingChange:
        """Show a tentative transition until the authority answers."""
        cell_id = tuple(cell_id)
        with self._lock:
            current = self._cells.get(cell_id)
            if current is None:
                raise ValidationError(f"Unknown cell {cell_id}", Rejection.UNKNOWN_CELL, cell_id)
            existing = self._pending.get(cell_id)
            if existing is not None:
                raise ConflictError(
                    f"A {existing.action.value} on {cell_id} is still {existing.status.value}",
                    Rejection.PENDING, cell_id,
                )
            tentative = self._candidate(current, changes)
            pending = PendingChange(cell_id, Action(action), current, tentative, now)
            self._pending[cell_id] = pending
            self._cells[cell_id] = tentative
        self._notify({cell_id})
        return pending

    def confirm(self, cell_id: CellId, confirmed: Cell) -> Cell:
        """Replace the tentative record with the authority's confirmed one."""
        cell_id = tuple(cell_id)
        with self._lock:
            pending = self._pending.pop(cell_id, None)
            current = self._cells[cell_id]
            base = pending.base if pending else current
            candidate = self._candidate(base, confirmed)
            # The answer to our own submission is authoritative; only a
            # strictly newer revision seen meanwhile overrides it.
            if (candidate.revision is not None and base.revision is not None
                    and candidate.revision < base.revision):
                candidate = base
            changed = current != candidate
            self._cells[cell_id] = candidate
        if changed:
            self._notify({cell_id})
        return candidate

    def revert(self, cell_id: CellId, authoritative: Cell | None = None) -> Cell:
        """Drop the tentative record, falling back to the authoritative one."""
        cell_id = tuple(cell_id)
        with self._lock:
            pending = self._pending.pop(cell_id, None)
            current = self._cells[cell_id]
            target = pending.base if pending else current
            if authoritative is not None:
                candidate = self._candidate(target, authoritative)
                if not candidate.is_older_than(target):
                    target = candidate
            changed = current != target
            self._cells[cell_id] = target
        if changed:
            self._notify({cell_id})
        return target

    def mark_unconfirmed(self, cell_id: CellId) -> PendingChange | None:
        """Roll back the visible record but keep a marker until the authority speaks."""
        cell_id = tuple(cell_id)
        with self._lock:
            pending = self._pending.get(cell_id)
            if pending is None:
                return None
            pending.status = PendingStatus.UNCONFIRMED
            changed = self._cells[cell_id] != pending.base
            self._cells[cell_id] = pending.base
        if changed:
            self._notify({cell_id})
        return pending
