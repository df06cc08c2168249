"""
Coalescing state-change notifications.

Animation ticks request notifications at frame rate.  The notifier merges
everything requested within one window into a single dispatch carrying the
union of affected cameras and the latest snapshot.

A window that mixes cached and confirmed requests dispatches a confirmed
snapshot, but cameras with a cached request in the window are passed to the
snapshot builder as ``live`` so their in-flight geometry is not replaced by
the persisted one.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, List, Optional, Union

from .scheduler import Debouncer
from .state import diff_snapshots

LOG = logging.getLogger(__name__)

ALL_CAMERAS = "all"

Cameras = Union[str, FrozenSet[str]]
SnapshotBuilder = Callable[[bool, Cameras], Awaitable[dict]]
Sink = Callable[[dict, bool, Cameras], Any]

DEFAULT_WINDOW = 0.05


def _accumulate(target: Optional[set], cameras: Union[str, Iterable[str]]) -> Optional[set]:
    """Add ``cameras`` to ``target``; ``None`` stands for every camera."""
    if target is None or cameras == ALL_CAMERAS:
        return None
    if isinstance(cameras, str):
        target.add(cameras)
    else:
        target.update(cameras)
    return target


def _frozen(cameras: Optional[set]) -> Cameras:
    return ALL_CAMERAS if cameras is None else frozenset(cameras)


class StateNotifier:
    def __init__(
        self,
        build_snapshot: Optional[SnapshotBuilder] = None,
        *,
        window: float = DEFAULT_WINDOW,
    ) -> None:
        self._build = build_snapshot
        self._sinks: List[Sink] = []
        self._cameras: Optional[set] = set()
        self._live: Optional[set] = set()
        self._cached = True
        self._last_snapshot: Optional[dict] = None
        self._debouncer = Debouncer(self._fire, window, name="state-notify")
        self.dispatched = 0

    def bind(self, build_snapshot: SnapshotBuilder) -> None:
        self._build = build_snapshot

    def add_sink(self, sink: Sink) -> None:
        if not callable(sink):
            raise TypeError("sink must be callable")
        self._sinks.append(sink)

    def remove_sink(self, sink: Sink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def notify(self, cached: bool = False, cameras: Union[str, Iterable[str]] = ALL_CAMERAS) -> None:
        cameras = cameras if isinstance(cameras, str) else list(cameras)
        self._cameras = _accumulate(self._cameras, cameras)
        if cached:
            self._live = _accumulate(self._live, cameras)
        self._cached = self._cached and bool(cached)
        self._debouncer.trigger()

    async def flush(self) -> None:
        await self._debouncer.flush()
        await self._debouncer.drain()

    def shutdown(self) -> None:
        self._debouncer.cancel()

    async def _fire(self) -> None:
        cameras = _frozen(self._cameras)
        live = _frozen(self._live)
        cached = self._cached
        self._cameras = set()
        self._live = set()
        self._cached = True

        if self._build is None:
            LOG.warning("State notification dropped: no snapshot builder bound")
            return
        snapshot = await self._build(cached, live)
        if LOG.isEnabledFor(logging.DEBUG):
            changed = diff_snapshots(self._last_snapshot or {}, snapshot)
            LOG.debug("Dispatching %s state (%d changed field(s))", "cached" if cached else "confirmed", len(changed))
        self._last_snapshot = snapshot
        self.dispatched += 1

        for sink in list(self._sinks):
            try:
                result = sink(snapshot, cached, cameras)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOG.exception("State notification sink failed")
