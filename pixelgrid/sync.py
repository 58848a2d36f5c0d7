"""Keeps the store in step with the authority using polling plus push."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from enum import Enum

from pixelgrid.authority import Authority
from pixelgrid.config import SyncConfig
from pixelgrid.errors import TransientNetworkError, ValidationError
from pixelgrid.models import CellId, PushEvent, parse_push_message
from pixelgrid.store import PixelStateStore

log = logging.getLogger(__name__)


class Connectivity(str, Enum):
    ONLINE = "online"
    POLL_ONLY = "poll_only"
    PUSH_ONLY = "push_only"
    RECONNECTING = "reconnecting"
    DEGRADED = "degraded"


class SyncCoordinator:
    """Merges periodic snapshots and push notifications into one refresh policy.

    Poll channel: a background thread fetches the whole grid every
    `poll_interval` seconds, skipping ticks while the last snapshot is
    younger than `stale_window`, and backing off exponentially on failure.

    Push channel: whatever transport carries push messages hands them to
    `on_push` and reports link state through `set_push_connected`. Pushes
    only mark cells dirty; a single debounced flush refetches them after
    `coalesce_window`. At most one flush runs at a time, and triggers that
    arrive meanwhile join the next one.
    """

    def __init__(self, store: PixelStateStore, authority: Authority,
                 config: SyncConfig | None = None,
                 clock: Callable[[], float] = time.monotonic,
                 timer_factory: Callable = threading.Timer,
                 on_status: Callable[[Connectivity], None] | None = None):
        self.store = store
        self.authority = authority
        self.config = config or SyncConfig()
        self.clock = clock
        self.timer_factory = timer_factory
        self.on_status = on_status

        self._lock = threading.Lock()
        # cell -> push sequence number of the latest trigger for it
        self._dirty: dict[CellId, int] = {}
        self._push_seq = 0
        self._covered_seq = 0  # pushes up to here are covered by the last snapshot
        self._timer = None
        self._in_flight = False

        self.last_snapshot_at: float | None = None
        self.poll_failures = 0
        self._poll_ok = True
        self._push_connected = False
        self._both_down_since: float | None = None
        self._status = Connectivity.POLL_ONLY

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Take an initial snapshot and start the poll thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="pixelgrid-poll", daemon=True)
        self._thread.start()

    def stop(self):
        """Signal the poll thread to stop and drop any pending flush."""
        self._stop_event.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def _run(self):
        self.poll_now()
        while not self._stop_event.wait(self.next_delay()):
            self.tick()

    def next_delay(self) -> float:
        """Seconds until the next poll: the interval, or backoff after failures."""
        if self.poll_failures:
            backoff = self.config.backoff_base * 2 ** (self.poll_failures - 1)
            return min(backoff, self.config.backoff_max)
        return self.config.poll_interval

    def is_fresh(self) -> bool:
        if self.last_snapshot_at is None:
            return False
        return self.clock() - self.last_snapshot_at < self.config.stale_window

    def tick(self) -> bool:
        """Timer-driven poll. Skipped while the last snapshot is still fresh."""
        if self.is_fresh():
            log.debug("Snapshot still fresh, skipping poll")
            return False
        return self.poll_now()

    def poll_now(self) -> bool:
        """Fetch and install a full snapshot. Returns False on network failure."""
        with self._lock:
            seq_at_start = self._push_seq
        try:
            cells = self.authority.fetch_cells()
        except TransientNetworkError as e:
            with self._lock:
                self.poll_failures += 1
                self._poll_ok = False
            log.warning("Snapshot fetch failed (%d in a row): %s", self.poll_failures, e)
            self._update_status()
            return False

        changed = self.store.replace_all(cells)
        with self._lock:
            self.last_snapshot_at = self.clock()
            self.poll_failures = 0
            self._poll_ok = True
            self._covered_seq = max(self._covered_seq, seq_at_start)
            # The snapshot already covers pushes that arrived before it was requested.
            superseded = [cid for cid, seq in self._dirty.items() if seq <= seq_at_start]
            for cid in superseded:
                del self._dirty[cid]
            if not self._dirty and self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if superseded:
            log.debug("Snapshot superseded %d pending refetches", len(superseded))
        log.info("Snapshot installed: %d cells changed", len(changed))
        self._update_status()
        return True

    def on_push(self, message) -> PushEvent | None:
        """Handle one push message (dict, JSON text, or PushEvent)."""
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except ValueError:
                log.warning("Failed to parse push message: %r", message)
                return None
        event = message if isinstance(message, PushEvent) else parse_push_message(message)
        if event is None:
            return None
        if event.cell_id not in self.store:
            log.warning("Push event for unknown cell %s", event.cell_id)
            return None
        self.request_refetch([event.cell_id])
        return event

    def request_refetch(self, cell_ids: Iterable[CellId]):
        """Mark cells dirty; they are refetched in the next debounced flush."""
        with self._lock:
            for cid in cell_ids:
                self._push_seq += 1
                self._dirty[tuple(cid)] = self._push_seq
            if self._timer is None and not self._in_flight and self._dirty:
                self._schedule()

    def _schedule(self):
        """Arm the coalescing timer. Caller holds the lock."""
        self._timer = self.timer_factory(self.config.coalesce_window, self.flush)
        self._timer.daemon = True
        self._timer.start()

    @property
    def pending_refetches(self) -> set[CellId]:
        with self._lock:
            return set(self._dirty)

    def flush(self):
        """Refetch every dirty cell once and merge the results."""
        with self._lock:
            self._timer = None
            if self._in_flight or not self._dirty:
                return
            batch = dict(self._dirty)
            self._dirty.clear()
            self._in_flight = True
            epoch = self.store.snapshot_epoch

        retry: dict[CellId, int] = {}
        failed: dict[CellId, int] = {}
        try:
            for cid, seq in batch.items():
                try:
                    cell = self.authority.fetch_cell(cid)
                except TransientNetworkError as e:
                    log.warning("Refetch of %s failed, leaving it to the next snapshot: %s", cid, e)
                    failed[cid] = seq
                    continue
                except ValidationError as e:
                    log.warning("Authority rejected refetch of %s: %s", cid, e)
                    continue
                applied = self.store.apply_update(cell, based_on_epoch=epoch)
                if not applied and self.store.snapshot_epoch != epoch:
                    with self._lock:
                        covered = seq <= self._covered_seq
                    if not covered:
                        retry[cid] = seq
        finally:
            with self._lock:
                self._in_flight = False
                for cid, seq in {**failed, **retry}.items():
                    if seq > self._covered_seq:
                        self._dirty.setdefault(cid, seq)
                # Failed cells wait for the poll channel or the next push.
                if self._timer is None and (set(self._dirty) - set(failed)):
                    self._schedule()

    @property
    def push_connected(self) -> bool:
        return self._push_connected

    def set_push_connected(self, connected: bool):
        """Report push link state. Reconnecting forces one reconciliation snapshot."""
        with self._lock:
            was = self._push_connected
            self._push_connected = connected
        if connected and not was:
            log.info("Push channel connected, reconciling with a full snapshot")
            self._update_status()
            self.poll_now()
        elif was and not connected:
            log.warning("Push channel lost, polling is now the only source")
            self._update_status()

    @property
    def connectivity(self) -> Connectivity:
        self._update_status()
        return self._status

    def _update_status(self):
        now = self.clock()
        with self._lock:
            push, poll = self._push_connected, self._poll_ok
            if push and poll:
                status = Connectivity.ONLINE
            elif poll:
                status = Connectivity.POLL_ONLY
            elif push:
                status = Connectivity.PUSH_ONLY
            else:
                status = Connectivity.RECONNECTING
            if push or poll:
                self._both_down_since = None
            else:
                if self._both_down_since is None:
                    self._both_down_since = now
                if now - self._both_down_since >= self.config.degraded_grace:
                    status = Connectivity.DEGRADED
            changed = status is not self._status
            self._status = status
        if changed:
            if status is Connectivity.DEGRADED:
                log.warning("Both channels down for %.0fs, connectivity degraded",
                            self.config.degraded_grace)
            if self.on_status:
                self.on_status(status)
